"""Shared fixtures: synthetic corpora and small trained bundles.

Training runs once per session; each bundle is a couple of seconds on CPU.
"""

from __future__ import annotations

import random
from pathlib import Path

import pytest

from mail_sorter.model import ModelConfig
from mail_sorter.train import Document, TrainingConfig, train

SMALL_MODEL = ModelConfig(
    max_sequence_length=12,
    embedding_dim=16,
    lstm_units=16,
    hidden_units=16,
)

FAST_TRAINING = TrainingConfig(
    max_epochs=25,
    batch_size=16,
    learning_rate=1e-2,
    patience=5,
    verbose=False,
)


def fruit_corpus(n_per_label: int = 80, seed: int = 0) -> list[Document]:
    """Label A documents contain only "apple", label B only "banana"."""
    rng = random.Random(seed)
    docs = []
    for _ in range(n_per_label):
        docs.append(Document(text=" ".join(["apple"] * rng.randint(1, 6)), label="A"))
        docs.append(Document(text=" ".join(["banana"] * rng.randint(1, 6)), label="B"))
    return docs


_PROMO_WORDS = ["sale", "buy", "now", "discount", "offer", "deal", "coupon", "shop", "save", "limited"]
_PERSONAL_WORDS = ["lunch", "tomorrow", "mom", "dinner", "weekend", "thanks", "see", "you", "call", "love"]


def mail_corpus(n_per_label: int = 80, seed: int = 0) -> list[Document]:
    """Promotional vs personal subjects/bodies drawn from disjoint word lists."""
    rng = random.Random(seed)
    docs = []
    for _ in range(n_per_label):
        promo = " ".join(rng.choice(_PROMO_WORDS) for _ in range(rng.randint(3, 8)))
        personal = " ".join(rng.choice(_PERSONAL_WORDS) for _ in range(rng.randint(3, 8)))
        docs.append(Document(text=f"Subject: {promo.title()}!", label="Promotions"))
        docs.append(Document(text=f"Subject: {personal}", label="Personal"))
    return docs


@pytest.fixture(scope="session")
def fruit_model_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    model_dir = tmp_path_factory.mktemp("fruit") / "model"
    train(fruit_corpus(), model_dir, FAST_TRAINING, SMALL_MODEL)
    return model_dir


@pytest.fixture(scope="session")
def mail_model_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    model_dir = tmp_path_factory.mktemp("mail") / "model"
    train(mail_corpus(), model_dir, FAST_TRAINING, SMALL_MODEL)
    return model_dir
