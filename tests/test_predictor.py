"""Tests for loading bundles and classifying documents."""

import json
import shutil
from dataclasses import replace
from pathlib import Path

import pytest
import torch

from mail_sorter.bundle import LABELS_FILE, MODEL_FILE, VOCAB_FILE, ArtifactBundle
from mail_sorter.errors import ArtifactMismatch, ArtifactMissing, EmptyContent, NotReady
from mail_sorter.model import MailSorterNet, ModelConfig
from mail_sorter.predictor import Predictor, ReadyClassifier
from mail_sorter.train import train
from mail_sorter.vocabulary import Vocabulary
from tests.conftest import FAST_TRAINING, SMALL_MODEL, fruit_corpus


@pytest.fixture
def bundle_copy(tmp_path: Path, fruit_model_dir: Path) -> Path:
    model_dir = tmp_path / "model"
    shutil.copytree(fruit_model_dir, model_dir)
    return model_dir


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


def test_predict_before_load_raises_not_ready(fruit_model_dir):
    with pytest.raises(NotReady):
        Predictor(fruit_model_dir).predict("apple")


def test_predict_after_failed_load_raises_not_ready(tmp_path):
    predictor = Predictor(tmp_path / "nowhere")
    with pytest.raises(ArtifactMissing):
        predictor.load()
    assert predictor.ready is None
    with pytest.raises(NotReady):
        predictor.predict("apple")


@pytest.mark.parametrize("missing", [MODEL_FILE, VOCAB_FILE, LABELS_FILE])
def test_load_requires_every_bundle_file(bundle_copy, missing):
    (bundle_copy / missing).unlink()
    with pytest.raises(ArtifactMissing) as exc_info:
        Predictor(bundle_copy).load()
    assert exc_info.value.details["missing"] == [missing]


def test_load_rejects_unreadable_file(bundle_copy):
    (bundle_copy / VOCAB_FILE).write_text("{not json")
    with pytest.raises(ArtifactMissing):
        Predictor(bundle_copy).load()


@pytest.mark.parametrize("keep_bytes", [0, 1, 100])
def test_load_rejects_truncated_model(bundle_copy, keep_bytes):
    model_path = bundle_copy / MODEL_FILE
    model_path.write_bytes(model_path.read_bytes()[:keep_bytes])
    predictor = Predictor(bundle_copy)
    with pytest.raises(ArtifactMissing):
        predictor.load()
    assert predictor.ready is None


def test_load_rejects_labels_from_another_run(bundle_copy):
    (bundle_copy / LABELS_FILE).write_text(json.dumps(["B", "A"]))
    with pytest.raises(ArtifactMismatch):
        Predictor(bundle_copy).load()


def test_load_rejects_vocabulary_from_another_run(bundle_copy):
    # same size as the trained vocabulary, different tokens
    Vocabulary.build(["cherry plum"]).save(bundle_copy / VOCAB_FILE)
    with pytest.raises(ArtifactMismatch):
        Predictor(bundle_copy).load()


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("text", ["apple", "Apple!", "apple apple apple", "APPLE apple."])
def test_apple_is_a(fruit_model_dir, text):
    assert Predictor(fruit_model_dir).load().predict(text) == "A"


@pytest.mark.parametrize("text", ["banana", "Banana?", "banana banana"])
def test_banana_is_b(fruit_model_dir, text):
    assert Predictor(fruit_model_dir).load().predict(text) == "B"


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_separable_corpus_round_trip_across_runs(tmp_path, seed):
    config = replace(SMALL_MODEL, seed=seed)
    train(fruit_corpus(seed=seed), tmp_path / "model", FAST_TRAINING, config)
    ready = Predictor(tmp_path / "model").load()
    held_out = ["apple " * n for n in range(1, 11)]
    correct = sum(ready.predict(text) == "A" for text in held_out)
    assert correct / len(held_out) >= 0.9


def test_predictions_stay_inside_label_set(fruit_model_dir):
    ready = Predictor(fruit_model_dir).load()
    for text in ["apple", "totally unrelated words", "zzz", "banana apple", "x " * 300]:
        assert ready.predict(text) in ready.labels


def test_classify_returns_distribution(fruit_model_dir):
    prediction = Predictor(fruit_model_dir).load().classify("apple")
    assert set(prediction.scores) == {"A", "B"}
    assert sum(prediction.scores.values()) == pytest.approx(1.0, abs=1e-5)
    assert prediction.confidence == max(prediction.scores.values())


def test_empty_text_raises_empty_content(fruit_model_dir):
    ready = Predictor(fruit_model_dir).load()
    with pytest.raises(EmptyContent):
        ready.predict("")
    with pytest.raises(EmptyContent):
        ready.predict("?!")


def test_ties_go_to_first_label():
    vocab = Vocabulary.build(["apple banana"])
    model = MailSorterNet(ModelConfig(vocab_size=len(vocab), num_labels=3, max_sequence_length=5,
                                      embedding_dim=4, lstm_units=4, hidden_units=4)).eval()
    with torch.no_grad():
        model.output.weight.zero_()
        model.output.bias.zero_()
    ready = ReadyClassifier(ArtifactBundle(model=model, vocabulary=vocab, labels=("X", "Y", "Z")))
    prediction = ready.classify("apple")
    assert prediction.label == "X"
    assert prediction.scores == pytest.approx({"X": 1 / 3, "Y": 1 / 3, "Z": 1 / 3})


def test_forward_failure_returns_none(fruit_model_dir, monkeypatch):
    ready = Predictor(fruit_model_dir).load()

    def boom(ids):
        raise RuntimeError("out of memory")

    monkeypatch.setattr(ready._bundle.model, "probabilities", boom)
    assert ready.predict("apple") is None
