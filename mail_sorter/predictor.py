"""Inference over a loaded model bundle.

Predictor.load() returns a ReadyClassifier: the only object that can
classify. It holds the bundle read-only, so one instance can serve any
number of concurrent requests.

Example::

    from mail_sorter.predictor import Predictor

    ready = Predictor("model").load()          # raises ArtifactMissing / ArtifactMismatch
    ready.predict("Sale! Buy now")             # "Promotions"
    ready.classify("Sale! Buy now").scores     # {"Primary": 0.03, "Promotions": 0.95, ...}
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import structlog
import torch

from .bundle import ArtifactBundle, load_bundle
from .encoding import encode
from .errors import EmptyContent, NotReady
from .vocabulary import tokenize

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Prediction:
    label: str
    """Highest-probability label; ties go to the earlier label in the label set."""

    scores: dict[str, float]
    """Probability per label, summing to 1."""

    @property
    def confidence(self) -> float:
        return self.scores[self.label]


class ReadyClassifier:
    """A successfully loaded bundle, ready to classify."""

    def __init__(self, bundle: ArtifactBundle) -> None:
        self._bundle = bundle
        self._device = next(bundle.model.parameters()).device

    @property
    def labels(self) -> tuple[str, ...]:
        return self._bundle.labels

    def classify(self, text: str) -> Prediction:
        """Encode text, run one forward pass and return the full distribution.

        Raises:
            EmptyContent: text has no tokens after normalization.
        """
        if not tokenize(text):
            raise EmptyContent("Cannot classify a document with no words in it.")
        config = self._bundle.config
        ids = encode(text, self._bundle.vocabulary, config.max_sequence_length)
        x = torch.tensor([ids], dtype=torch.long, device=self._device)
        with torch.inference_mode():
            probs: list[float] = self._bundle.model.probabilities(x).squeeze(0).tolist()

        best = max(range(len(probs)), key=probs.__getitem__)  # first index on ties
        return Prediction(
            label=self._bundle.labels[best],
            scores=dict(zip(self._bundle.labels, probs)),
        )

    def predict(self, text: str) -> str | None:
        """Return the predicted label, or None if the forward pass itself failed.

        Raises:
            EmptyContent: text has no tokens after normalization.
        """
        try:
            return self.classify(text).label
        except EmptyContent:
            raise
        except (RuntimeError, ValueError, IndexError):
            logger.exception("prediction_failed")
            return None


class Predictor:
    """Loads the bundle from model_dir and guards predict() until it has.

    Args:
        model_dir: Directory written by mail_sorter.train.
        device: Target device. Auto-detected if None.
    """

    def __init__(self, model_dir: str | Path = Path("model"), device: str | None = None) -> None:
        self._model_dir = Path(model_dir)
        self._device = device
        self._ready: ReadyClassifier | None = None

    @property
    def ready(self) -> ReadyClassifier | None:
        return self._ready

    def load(self) -> ReadyClassifier:
        """Read the bundle. On failure the predictor stays (or becomes) not ready.

        Raises:
            ArtifactMissing: a bundle file is absent or unreadable.
            ArtifactMismatch: the bundle files were not written together.
        """
        self._ready = None
        bundle = load_bundle(self._model_dir, self._device)
        self._ready = ReadyClassifier(bundle)
        logger.info("classifier_loaded", model_dir=str(self._model_dir),
                    labels=list(bundle.labels), vocab_size=len(bundle.vocabulary))
        return self._ready

    def predict(self, text: str) -> str | None:
        if self._ready is None:
            raise NotReady("Classifier not loaded; call load() first.")
        return self._ready.predict(text)
