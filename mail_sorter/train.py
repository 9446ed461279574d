"""Train the mail sorter on mail you have already filed under Gmail labels.

Builds the vocabulary, encodes every document, fits MailSorterNet with early
stopping on validation loss and writes the (model, vocabulary, labels)
bundle in one atomic step.

Usage:
    mail-sorter-train                              # fetch Primary/Promotions/Social from Gmail
    mail-sorter-train --labels Work Receipts --per-label 300
    mail-sorter-train --data documents.json        # [{"text": "...", "label": "..."}]
    mail-sorter-train --watch                      # also register the Gmail push subscription
"""

from __future__ import annotations

import argparse
import gc
import json
import random
import sys
from dataclasses import dataclass, replace
from pathlib import Path

import structlog
import torch
import torch.nn as nn
from torch.utils.data import DataLoader, TensorDataset

from .bundle import ArtifactBundle, save_bundle
from .config import get_settings
from .encoding import MAX_SEQUENCE_LENGTH, encode_batch
from .errors import NoTrainingData
from .logging_config import configure_logging
from .model import MailSorterNet, ModelConfig
from .vocabulary import VOCAB_SIZE, Vocabulary, tokenize

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Document:
    text: str
    label: str | None = None


@dataclass(frozen=True)
class TrainingConfig:
    max_epochs: int = 15
    batch_size: int = 32
    learning_rate: float = 1e-3
    val_split: float = 0.2
    patience: int = 3
    """Epochs without a validation-loss improvement before training stops."""
    seed: int = 42
    """Seeds the shuffle before the train/validation split and the batch order."""
    verbose: bool = True


@dataclass(frozen=True)
class TrainingResult:
    model_dir: Path
    labels: tuple[str, ...]
    vocab_size: int
    n_train: int
    n_val: int
    epochs_run: int
    best_loss: float
    stopped_early: bool


# ---------------------------------------------------------------------------
# Corpus preparation
# ---------------------------------------------------------------------------

def usable_documents(documents: list[Document]) -> list[Document]:
    """Drop documents without a label or without any token after normalization."""
    kept: list[Document] = []
    for doc in documents:
        if not doc.label:
            logger.warning("document_skipped", reason="missing_label")
        elif not tokenize(doc.text):
            logger.warning("document_skipped", reason="empty_content", label=doc.label)
        else:
            kept.append(doc)
    return kept


def label_set(labels: list[str]) -> tuple[str, ...]:
    """Distinct labels in first-occurrence order."""
    return tuple(dict.fromkeys(labels))


def split_indices(n: int, val_split: float, seed: int) -> tuple[list[int], list[int]]:
    """Shuffle 0..n-1 with seed and return (train, val) index lists.

    The validation share is rounded down but kept to at least one document
    whenever that still leaves one for training.
    """
    order = list(range(n))
    random.Random(seed).shuffle(order)
    n_val = min(int(n * val_split), max(n - 1, 0))
    if n_val == 0 and val_split > 0 and n >= 2:
        n_val = 1
    return order[n_val:], order[:n_val]


# ---------------------------------------------------------------------------
# Training loop
# ---------------------------------------------------------------------------

def train(
    documents: list[Document],
    model_dir: str | Path,
    training: TrainingConfig | None = None,
    model_config: ModelConfig | None = None,
) -> TrainingResult:
    """Fit a new model on documents and persist the bundle to model_dir.

    Raises:
        NoTrainingData: no document survives normalization; nothing is written.
    """
    training = training or TrainingConfig()
    model_config = model_config or ModelConfig()
    say = print if training.verbose else (lambda *a, **k: None)

    docs = usable_documents(documents)
    if not docs:
        raise NoTrainingData(
            "No usable training documents; check that the configured labels exist and contain mail.",
            details={"received": len(documents)},
        )
    skipped = len(documents) - len(docs)
    say(f"Training on {len(docs)} documents (skipped {skipped} empty or unlabelled).")

    texts = [d.text for d in docs]
    vocabulary = Vocabulary.build(texts, max_size=model_config.vocab_size)
    labels = label_set([d.label for d in docs])
    say(f"Vocabulary: {len(vocabulary)} tokens.  Labels: {', '.join(labels)}")

    label_index = {label: i for i, label in enumerate(labels)}
    X = encode_batch(texts, vocabulary, model_config.max_sequence_length)
    Y = nn.functional.one_hot(
        torch.tensor([label_index[d.label] for d in docs], dtype=torch.long),
        num_classes=len(labels),
    ).float()

    train_idx, val_idx = split_indices(len(docs), training.val_split, training.seed)
    train_rows = torch.tensor(train_idx, dtype=torch.long)
    val_rows = torch.tensor(val_idx, dtype=torch.long)
    X_train, Y_train = X[train_rows], Y[train_rows]
    X_val, Y_val = X[val_rows], Y[val_rows]
    say(f"Split: {len(train_idx)} train / {len(val_idx)} val\n")

    model_config = replace(model_config, vocab_size=len(vocabulary), num_labels=len(labels))
    model = MailSorterNet(model_config)
    device = "cuda" if torch.cuda.is_available() else "cpu"
    model.to(device)
    X_train, Y_train = X_train.to(device), Y_train.to(device)
    X_val, Y_val = X_val.to(device), Y_val.to(device)

    loader = DataLoader(
        TensorDataset(X_train, Y_train),
        batch_size=training.batch_size,
        shuffle=True,
        generator=torch.Generator().manual_seed(training.seed),
    )
    optimizer = torch.optim.Adam(model.parameters(), lr=training.learning_rate)
    criterion = nn.CrossEntropyLoss()  # soft (one-hot) targets: categorical cross-entropy

    # without a validation set, early stopping watches the training loss
    monitor = "val" if len(val_idx) else "train"
    best_loss = float("inf")
    best_state: dict | None = None
    stale_epochs = 0
    epoch = 0

    say(f"Training for up to {training.max_epochs} epochs  "
        f"(lr={training.learning_rate}, batch={training.batch_size}, "
        f"patience={training.patience}, device={device})\n")

    torch.manual_seed(training.seed)  # dropout masks

    for epoch in range(1, training.max_epochs + 1):
        model.train()
        running_loss = 0.0
        for X_batch, Y_batch in loader:
            optimizer.zero_grad()
            loss = criterion(model(X_batch), Y_batch)
            loss.backward()
            optimizer.step()
            running_loss += loss.item() * len(X_batch)
        train_loss = running_loss / len(X_train)

        model.eval()
        with torch.no_grad():
            val_loss = criterion(model(X_val), Y_val).item() if len(val_idx) else float("nan")

        current = val_loss if monitor == "val" else train_loss
        improved = current < best_loss
        marker = "  <- best" if improved else ""
        say(f"  epoch {epoch:3d}/{training.max_epochs}  "
            f"train={train_loss:.4f}  val={val_loss:.4f}{marker}")
        logger.debug("epoch_complete", epoch=epoch, train_loss=train_loss, val_loss=val_loss)

        if improved:
            best_loss = current
            best_state = {k: v.detach().clone() for k, v in model.state_dict().items()}
            stale_epochs = 0
        else:
            stale_epochs += 1
            if stale_epochs >= training.patience:
                say(f"\nNo improvement for {training.patience} epochs; stopping early.")
                break

    stopped_early = stale_epochs >= training.patience
    if best_state is not None:
        model.load_state_dict(best_state)
    model.eval()

    bundle = ArtifactBundle(model=model, vocabulary=vocabulary, labels=labels)
    save_bundle(bundle, model_dir)
    say(f"\nSaved best model ({monitor}_loss={best_loss:.4f}) -> {model_dir}")

    result = TrainingResult(
        model_dir=Path(model_dir),
        labels=labels,
        vocab_size=len(vocabulary),
        n_train=len(train_idx),
        n_val=len(val_idx),
        epochs_run=epoch,
        best_loss=best_loss,
        stopped_early=stopped_early,
    )

    # training tensors can be large next to the model; free them before returning
    del X, Y, X_train, Y_train, X_val, Y_val, loader, optimizer, best_state, bundle, model
    gc.collect()
    if torch.cuda.is_available():
        torch.cuda.empty_cache()
    return result


# ---------------------------------------------------------------------------
# Per-label accuracy report
# ---------------------------------------------------------------------------

def accuracy_report(model_dir: Path, documents: list[Document]) -> dict[str, tuple[int, int]]:
    """Print and return {label: (correct, total)} for the reloaded bundle."""
    from .predictor import Predictor

    ready = Predictor(model_dir).load()
    tally: dict[str, list[int]] = {label: [0, 0] for label in ready.labels}
    for doc in usable_documents(documents):
        if doc.label not in tally:
            continue
        tally[doc.label][1] += 1
        if ready.predict(doc.text) == doc.label:
            tally[doc.label][0] += 1

    print("\nAccuracy on the training documents:")
    for label, (correct, total) in tally.items():
        pct = 100.0 * correct / total if total else 0.0
        print(f"  {label:<22s}  {correct:4d}/{total:<4d}  ({pct:.1f}%)")
    return {label: (c, t) for label, (c, t) in tally.items()}


# ---------------------------------------------------------------------------
# Data sources
# ---------------------------------------------------------------------------

def load_documents(path: Path) -> list[Document]:
    """Read [{"text": ..., "label": ...}, ...] from a JSON file."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        sys.exit(f"{path}: expected a JSON list of {{\"text\", \"label\"}} objects")
    docs = [Document(text=str(e.get("text", "")), label=e.get("label")) for e in raw]
    print(f"Loaded {len(docs)} documents from {path}.")
    return docs


def fetch_documents(labels: list[str], per_label: int, client) -> list[Document]:
    docs: list[Document] = []
    for label in labels:
        print(f"Fetching up to {per_label} emails for \"{label}\"…")
        fetched = client.list_documents_by_category(label, per_label)
        print(f"  {len(fetched)} usable emails.")
        docs.extend(fetched)
    return docs


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Train the mail sorter on labelled Gmail mail.")
    parser.add_argument(
        "--data", type=Path, default=None,
        help="Train from a JSON file of {text, label} objects instead of fetching from Gmail",
    )
    parser.add_argument(
        "--labels", nargs="+", default=settings.LABELS_TO_TRAIN,
        help=f"Gmail labels/categories to learn (default: {' '.join(settings.LABELS_TO_TRAIN)})",
    )
    parser.add_argument(
        "--per-label", type=int, default=settings.EMAILS_PER_LABEL,
        help=f"Emails fetched per label (default: {settings.EMAILS_PER_LABEL})",
    )
    parser.add_argument(
        "--output", type=Path, default=settings.MODEL_DIR,
        help=f"Bundle directory (default: {settings.MODEL_DIR})",
    )
    parser.add_argument("--epochs", type=int, default=TrainingConfig.max_epochs,
                        help=f"Maximum epochs (default: {TrainingConfig.max_epochs})")
    parser.add_argument("--batch-size", type=int, default=TrainingConfig.batch_size,
                        help=f"Batch size (default: {TrainingConfig.batch_size})")
    parser.add_argument("--lr", type=float, default=TrainingConfig.learning_rate,
                        help=f"Learning rate (default: {TrainingConfig.learning_rate})")
    parser.add_argument("--val-split", type=float, default=TrainingConfig.val_split,
                        help=f"Fraction held out for validation (default: {TrainingConfig.val_split})")
    parser.add_argument("--patience", type=int, default=TrainingConfig.patience,
                        help=f"Early-stopping patience in epochs (default: {TrainingConfig.patience})")
    parser.add_argument("--seed", type=int, default=TrainingConfig.seed,
                        help=f"Shuffle/split seed (default: {TrainingConfig.seed})")
    parser.add_argument("--vocab-size", type=int, default=VOCAB_SIZE,
                        help=f"Maximum vocabulary size (default: {VOCAB_SIZE})")
    parser.add_argument("--max-length", type=int, default=MAX_SEQUENCE_LENGTH,
                        help=f"Tokens kept per email (default: {MAX_SEQUENCE_LENGTH})")
    parser.add_argument(
        "--watch", action="store_true",
        help="Register the Gmail INBOX push subscription on MAIL_SORTER_PUBSUB_TOPIC",
    )
    parser.add_argument("--no-report", action="store_true",
                        help="Skip the per-label accuracy report after training")
    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL, settings.ENVIRONMENT)

    client = None
    if args.data is None or args.watch:
        from .gmail import GmailClient

        client = GmailClient.from_settings(settings)

    if args.watch:
        if not settings.PUBSUB_TOPIC:
            sys.exit("--watch needs MAIL_SORTER_PUBSUB_TOPIC (projects/<project>/topics/<topic>).")
        client.watch(settings.PUBSUB_TOPIC)
        print(f"Gmail watch registered on {settings.PUBSUB_TOPIC}")

    if args.data is not None:
        documents = load_documents(args.data)
    else:
        documents = fetch_documents(args.labels, args.per_label, client)
    print(f"Total documents: {len(documents)}\n")

    training = TrainingConfig(
        max_epochs=args.epochs,
        batch_size=args.batch_size,
        learning_rate=args.lr,
        val_split=args.val_split,
        patience=args.patience,
        seed=args.seed,
    )
    model_config = ModelConfig(vocab_size=args.vocab_size, max_sequence_length=args.max_length)

    try:
        train(documents, args.output, training, model_config)
    except NoTrainingData as e:
        sys.exit(f"Error: {e.message}")

    if not args.no_report:
        accuracy_report(args.output, documents)


if __name__ == "__main__":
    main()
