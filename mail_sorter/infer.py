"""Interactive inference — type an email, see which label the sorter picks.

Usage:
    mail-sorter-infer                      # loads the model/ bundle
    mail-sorter-infer --model-dir my_model
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .config import get_settings
from .errors import ArtifactError, EmptyContent
from .gmail import document_text
from .predictor import Prediction, Predictor, ReadyClassifier

# ---------------------------------------------------------------------------
# ANSI helpers
# ---------------------------------------------------------------------------

def _ansi(code: str, t: str) -> str: return f"\033[{code}m{t}\033[0m"
def _bold(t: str)   -> str: return _ansi("1",  t)
def _dim(t: str)    -> str: return _ansi("2",  t)
def _green(t: str)  -> str: return _ansi("92", t)
def _grey(t: str)   -> str: return _ansi("90", t)


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------

def _bar(score: float, width: int = 20) -> str:
    filled = round(score * width)
    return "█" * filled + _dim("░" * (width - filled))


def format_prediction(prediction: Prediction) -> list[str]:
    width = max(len(label) for label in prediction.scores)
    lines = []
    for label, score in prediction.scores.items():
        name = label.ljust(width)
        if label == prediction.label:
            name = _green(_bold(name))
        lines.append(f"  {name}  {_bar(score)}  {score:.2f}")
    return lines


def _print_prediction(prediction: Prediction) -> None:
    print()
    print(_bold(f"  Label: {prediction.label}"))
    print(_grey("  " + "─" * 52))
    for line in format_prediction(prediction):
        print(line)
    print(_grey("  " + "─" * 52))
    print()


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

def _prompt(label: str, hint: str = "") -> str:
    suffix = _grey(f"  ({hint})") if hint else ""
    try:
        return input(f"  {_bold(label)}{suffix}: ").strip()
    except (EOFError, KeyboardInterrupt):
        print()
        sys.exit(0)


def _prompt_body() -> str:
    """Read a multi-line body. Two blank lines end input."""
    print(f"  {_bold('Body')} {_grey('(two blank lines to finish)')}")
    lines: list[str] = []
    try:
        while True:
            line = input("  > ")
            if line == "" and lines and lines[-1] == "":
                break
            lines.append(line)
    except (EOFError, KeyboardInterrupt):
        print()
    return "\n".join(lines).strip()


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(ready: ReadyClassifier) -> None:
    print(_bold("\nMail sorter — interactive inference"))
    print(_grey(f"Labels: {', '.join(ready.labels)}"))
    print(_grey("Press Ctrl+C or leave all fields blank to exit.\n"))

    while True:
        print(_grey("─" * 56))
        subject = _prompt("Subject", "e.g. Flash sale ends tonight")
        body = _prompt_body()

        if not subject and not body:
            print(_grey("Nothing entered — exiting."))
            break

        try:
            prediction = ready.classify(document_text(subject, body))
        except EmptyContent:
            print(_grey("  No words to classify.\n"))
            continue
        _print_prediction(prediction)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main() -> None:
    if sys.platform == "win32":
        import os; os.system("")  # enable ANSI in Windows terminal

    settings = get_settings()
    parser = argparse.ArgumentParser(description="Interactive mail sorter inference.")
    parser.add_argument(
        "--model-dir", type=Path, default=settings.MODEL_DIR,
        help=f"Trained bundle directory (default: {settings.MODEL_DIR})",
    )
    args = parser.parse_args()

    print("Loading model…", end=" ", flush=True)
    try:
        ready = Predictor(args.model_dir).load()
    except ArtifactError as e:
        print()
        sys.exit(f"{e.message}\nRun mail-sorter-train first.")
    print(f"done  [{args.model_dir}]")

    run(ready)


if __name__ == "__main__":
    main()
