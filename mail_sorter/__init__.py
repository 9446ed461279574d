"""mail_sorter: learns your Gmail labels and files new mail as it arrives.

Typical use::

    from mail_sorter import Predictor, train

    train(documents, "model")
    ready = Predictor("model").load()
    ready.predict("Subject: Sale! Buy now")
"""

from .dispatcher import Dispatcher, DispatchOutcome, DispatchState, FailureReason, PushEvent
from .encoding import MAX_SEQUENCE_LENGTH, encode
from .model import MailSorterNet, ModelConfig
from .predictor import Prediction, Predictor, ReadyClassifier
from .train import Document, TrainingConfig, TrainingResult, train
from .vocabulary import OOV_ID, PAD_ID, VOCAB_SIZE, Vocabulary, normalize, tokenize

__all__ = [
    "Dispatcher",
    "DispatchOutcome",
    "DispatchState",
    "Document",
    "FailureReason",
    "MAX_SEQUENCE_LENGTH",
    "MailSorterNet",
    "ModelConfig",
    "OOV_ID",
    "PAD_ID",
    "Prediction",
    "Predictor",
    "PushEvent",
    "ReadyClassifier",
    "TrainingConfig",
    "TrainingResult",
    "VOCAB_SIZE",
    "Vocabulary",
    "encode",
    "normalize",
    "tokenize",
    "train",
]
