"""Tests for text normalization and vocabulary construction."""

import pytest

from mail_sorter.errors import NoTrainingData
from mail_sorter.vocabulary import OOV_ID, PAD_ID, Vocabulary, normalize, tokenize


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def test_normalize_lowercases_strips_punctuation_and_collapses_whitespace():
    assert normalize("  Sale!!  Buy\tNOW,\n please ") == "sale buy now please"


def test_normalize_keeps_word_characters():
    assert normalize("order_id 42 café") == "order_id 42 café"


def test_tokenize_discards_empty_tokens():
    assert tokenize("!!! ... ???") == []
    assert tokenize("") == []
    assert tokenize("a  -  b") == ["a", "b"]


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------


def test_build_reserves_padding_and_oov():
    vocab = Vocabulary.build(["apple banana"])
    assert vocab.id_for("<PAD>") == PAD_ID == 0
    assert vocab.id_for("<UNK>") == OOV_ID == 1
    assert {vocab.id_for("apple"), vocab.id_for("banana")} == {2, 3}


def test_build_orders_by_frequency_then_token():
    vocab = Vocabulary.build(["b a c", "c a", "c"])
    # c:3, a:2, b:1
    assert vocab.tokens() == ["<PAD>", "<UNK>", "c", "a", "b"]

    tied = Vocabulary.build(["zeta alpha mid"])
    assert tied.tokens()[2:] == ["alpha", "mid", "zeta"]


def test_build_ignores_document_order():
    texts = ["promo sale sale", "meeting notes", "lunch today", "sale ends today"]
    forward = Vocabulary.build(texts)
    backward = Vocabulary.build(list(reversed(texts)))
    assert forward == backward
    assert forward.digest() == backward.digest()


def test_cap_keeps_alphabetically_first_of_tied_tokens():
    vocab = Vocabulary.build(["d c b a"], max_size=4)
    assert vocab.tokens()[2:] == ["a", "b"]
    assert vocab.id_for("d") == OOV_ID


def test_build_caps_size():
    texts = [" ".join(f"w{i}" for i in range(50))]
    vocab = Vocabulary.build(texts, max_size=10)
    assert len(vocab) == 10
    assert vocab.id_for("w49") == OOV_ID


def test_build_is_deterministic():
    texts = ["the cat sat", "the dog sat down", "a cat and a dog"]
    assert Vocabulary.build(texts) == Vocabulary.build(list(texts))
    assert Vocabulary.build(texts).digest() == Vocabulary.build(texts).digest()


def test_build_rejects_empty_corpus():
    with pytest.raises(NoTrainingData):
        Vocabulary.build([])


def test_unknown_token_maps_to_oov():
    vocab = Vocabulary.build(["apple"])
    assert vocab.id_for("kiwi") == OOV_ID
    assert "kiwi" not in vocab


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def test_save_and_load(tmp_path):
    vocab = Vocabulary.build(["hello world", "hello there"])
    path = tmp_path / "vocabulary.json"
    vocab.save(path)
    assert Vocabulary.load(path) == vocab


def test_rejects_mapping_without_reserved_ids():
    with pytest.raises(ValueError):
        Vocabulary({"apple": 0, "<UNK>": 1})
    with pytest.raises(ValueError):
        Vocabulary({"<PAD>": 0, "<UNK>": 1, "apple": 5})
