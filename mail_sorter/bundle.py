"""The persisted (model, vocabulary, label set) bundle.

Layout of a bundle directory::

    model/
        model.pt           state_dict + ModelConfig + label list + vocabulary digest
        vocabulary.json    {"<PAD>": 0, "<UNK>": 1, "the": 2, ...}
        labels.json        ["Primary", "Promotions", "Social"]

save_bundle() writes all three into a staging directory next to the target
and renames it into place, so readers see either the old bundle or the new
one. load_bundle() refuses any set of files that were not written together.
"""

from __future__ import annotations

import json
import pickle
import shutil
import tempfile
import uuid
from dataclasses import dataclass, fields
from pathlib import Path

import structlog
import torch

from .errors import ArtifactMismatch, ArtifactMissing
from .model import MailSorterNet, ModelConfig
from .vocabulary import Vocabulary

logger = structlog.get_logger(__name__)

MODEL_FILE = "model.pt"
VOCAB_FILE = "vocabulary.json"
LABELS_FILE = "labels.json"
_FORMAT_VERSION = 1


@dataclass(frozen=True)
class ArtifactBundle:
    model: MailSorterNet
    vocabulary: Vocabulary
    labels: tuple[str, ...]

    @property
    def config(self) -> ModelConfig:
        return self.model.config


def save_bundle(bundle: ArtifactBundle, model_dir: str | Path) -> Path:
    """Atomically replace model_dir with the given bundle. Returns the directory."""
    model_dir = Path(model_dir)
    parent = model_dir.parent
    parent.mkdir(parents=True, exist_ok=True)

    checkpoint = {
        "format_version": _FORMAT_VERSION,
        "state_dict": {k: v.detach().cpu() for k, v in bundle.model.state_dict().items()},
        "config": bundle.config.to_dict(),
        "labels": list(bundle.labels),
        "vocab_digest": bundle.vocabulary.digest(),
    }

    staging = Path(tempfile.mkdtemp(prefix=f".{model_dir.name}-staging-", dir=parent))
    try:
        torch.save(checkpoint, staging / MODEL_FILE)
        bundle.vocabulary.save(staging / VOCAB_FILE)
        (staging / LABELS_FILE).write_text(
            json.dumps(list(bundle.labels), ensure_ascii=False), encoding="utf-8"
        )
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    previous: Path | None = None
    if model_dir.exists():
        previous = parent / f".{model_dir.name}-old-{uuid.uuid4().hex[:8]}"
        model_dir.rename(previous)
    try:
        staging.rename(model_dir)
    except OSError:
        if previous is not None:
            previous.rename(model_dir)
        shutil.rmtree(staging, ignore_errors=True)
        raise
    if previous is not None:
        shutil.rmtree(previous, ignore_errors=True)

    logger.info("bundle_saved", model_dir=str(model_dir), labels=list(bundle.labels),
                vocab_size=len(bundle.vocabulary))
    return model_dir


def _read_labels(path: Path) -> tuple[str, ...]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list) or not all(isinstance(x, str) for x in data):
        raise ValueError(f"{path}: expected a JSON list of label names")
    if not data or len(set(data)) != len(data):
        raise ValueError(f"{path}: label list must be non-empty and de-duplicated")
    return tuple(data)


def load_bundle(model_dir: str | Path, device: str | None = None) -> ArtifactBundle:
    """Load and cross-check a bundle written by save_bundle().

    Raises:
        ArtifactMissing: a file is absent or cannot be parsed.
        ArtifactMismatch: the files disagree with each other.
    """
    model_dir = Path(model_dir)
    paths = {name: model_dir / name for name in (MODEL_FILE, VOCAB_FILE, LABELS_FILE)}
    missing = [name for name, p in paths.items() if not p.is_file()]
    if missing:
        raise ArtifactMissing(
            f"Model bundle at '{model_dir}' is incomplete; run training first.",
            details={"model_dir": str(model_dir), "missing": missing},
        )

    device = device or ("cuda" if torch.cuda.is_available() else "cpu")
    try:
        vocabulary = Vocabulary.load(paths[VOCAB_FILE])
        labels = _read_labels(paths[LABELS_FILE])
        # weights_only=True avoids arbitrary pickle execution on deserialization
        ckpt = torch.load(paths[MODEL_FILE], map_location=device, weights_only=True)
        known = {f.name for f in fields(ModelConfig)}
        config = ModelConfig(**{k: v for k, v in ckpt["config"].items() if k in known})
        saved_labels = tuple(ckpt["labels"])
        saved_digest = ckpt["vocab_digest"]
        state_dict = ckpt["state_dict"]
    except (OSError, EOFError, ValueError, KeyError, TypeError, AttributeError, IndexError,
            RuntimeError, pickle.UnpicklingError) as e:
        raise ArtifactMissing(
            f"Model bundle at '{model_dir}' is unreadable: {e}",
            details={"model_dir": str(model_dir)},
        ) from e

    problems: list[str] = []
    if saved_labels != labels:
        problems.append(f"{LABELS_FILE} differs from the labels the model was trained on")
    if saved_digest != vocabulary.digest():
        problems.append(f"{VOCAB_FILE} differs from the vocabulary the model was trained on")
    if config.vocab_size != len(vocabulary):
        problems.append(f"model expects {config.vocab_size} tokens, vocabulary has {len(vocabulary)}")
    if config.num_labels != len(labels):
        problems.append(f"model has {config.num_labels} outputs, label set has {len(labels)}")
    if problems:
        raise ArtifactMismatch(
            f"Model bundle at '{model_dir}' is inconsistent: " + "; ".join(problems),
            details={"model_dir": str(model_dir), "problems": problems},
        )

    model = MailSorterNet(config)
    try:
        model.load_state_dict(state_dict)
    except RuntimeError as e:
        raise ArtifactMismatch(
            f"Model weights in '{model_dir}' do not fit the saved config: {e}",
            details={"model_dir": str(model_dir)},
        ) from e
    model.to(device)
    model.eval()
    return ArtifactBundle(model=model, vocabulary=vocabulary, labels=labels)
