"""Exception types for the mail sorter.

Training, loading and inference raise these. Per-event dispatch failures are
not raised; the dispatcher reports them as outcomes (see dispatcher.py).
"""

from __future__ import annotations


class SorterError(Exception):
    """Base exception for all mail sorter errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NoTrainingData(SorterError):
    """Raised when a training run has no usable documents. No artifact is written."""


class EmptyContent(SorterError):
    """Raised when a text normalizes to zero tokens."""


class ArtifactError(SorterError):
    """Base for failures loading the (model, vocabulary, labels) bundle."""


class ArtifactMissing(ArtifactError):
    """Raised when a bundle file is absent or unreadable."""


class ArtifactMismatch(ArtifactError):
    """Raised when the bundle files were not written by the same training run."""


class NotReady(SorterError):
    """Raised when predict is called before a successful load."""


class InvalidEvent(SorterError):
    """Raised when a push notification payload cannot be decoded."""


class GmailError(SorterError):
    """Raised when Gmail credentials cannot be obtained."""
