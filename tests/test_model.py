"""Tests for MailSorterNet."""

import torch

from mail_sorter.model import MailSorterNet, ModelConfig

CONFIG = ModelConfig(vocab_size=20, num_labels=3, max_sequence_length=8,
                     embedding_dim=8, lstm_units=4, hidden_units=6)


def _batch() -> torch.Tensor:
    return torch.tensor([
        [2, 3, 4, 0, 0, 0, 0, 0],
        [5, 1, 1, 1, 6, 7, 8, 9],
        [0, 0, 0, 0, 0, 0, 0, 0],
    ])


def test_output_shape_and_distribution():
    model = MailSorterNet(CONFIG).eval()
    with torch.no_grad():
        probs = model.probabilities(_batch())
    assert probs.shape == (3, 3)
    assert torch.all(probs >= 0)
    assert torch.allclose(probs.sum(dim=1), torch.ones(3))


def test_initialization_is_seeded():
    a = MailSorterNet(CONFIG).state_dict()
    b = MailSorterNet(CONFIG).state_dict()
    assert all(torch.equal(a[k], b[k]) for k in a)


def test_construction_leaves_global_rng_untouched():
    torch.manual_seed(1234)
    expected = torch.rand(3)

    torch.manual_seed(1234)
    MailSorterNet(CONFIG)
    assert torch.equal(torch.rand(3), expected)


def test_different_seed_gives_different_weights():
    a = MailSorterNet(CONFIG).state_dict()
    b = MailSorterNet(ModelConfig(**{**CONFIG.to_dict(), "seed": 7})).state_dict()
    assert not torch.equal(a["output.weight"], b["output.weight"])


def test_trailing_padding_does_not_change_prediction():
    model = MailSorterNet(CONFIG).eval()
    short = torch.tensor([[2, 3, 4, 0, 0, 0, 0, 0]])
    longer_pad = torch.tensor([[2, 3, 4, 0, 0, 0, 0, 0, 0, 0, 0, 0]])
    with torch.no_grad():
        assert torch.allclose(model(short), model(longer_pad), atol=1e-6)


def test_padding_embedding_starts_at_zero():
    model = MailSorterNet(CONFIG)
    assert torch.count_nonzero(model.embedding.weight[0]) == 0
