"""PyTorch bidirectional-LSTM mail classifier with single-label softmax output."""

from __future__ import annotations

from dataclasses import asdict, dataclass

import torch
import torch.nn as nn
from torch.nn.utils.rnn import pack_padded_sequence

from .encoding import MAX_SEQUENCE_LENGTH
from .vocabulary import PAD_ID, VOCAB_SIZE


@dataclass(frozen=True)
class ModelConfig:
    """Shape and regularization of MailSorterNet.

    Built once before the network is created and saved inside the model
    checkpoint, so a loaded model always matches the shape it was trained with.
    """

    vocab_size: int = VOCAB_SIZE
    """Rows in the embedding table; the actual vocabulary length after training."""

    num_labels: int = 2
    """Output units, one per entry of the label set."""

    max_sequence_length: int = MAX_SEQUENCE_LENGTH
    """Length every encoded document is padded/truncated to."""

    embedding_dim: int = 32
    lstm_units: int = 32
    """Hidden size of each LSTM direction; the merged state is twice this."""

    dropout: float = 0.5
    hidden_units: int = 24
    seed: int = 42
    """Seeds weight initialization (and dropout masks during training)."""

    def to_dict(self) -> dict:
        return asdict(self)


class MailSorterNet(nn.Module):
    """Sequence classifier over vocabulary ids.

    Architecture:
        Embedding(vocab_size, embedding_dim)
        -> BiLSTM(lstm_units), final forward + backward states concatenated
        -> Dropout(dropout)
        -> Linear(2 * lstm_units, hidden_units) -> ReLU
        -> Linear(hidden_units, num_labels)

    forward() returns logits; probabilities() applies the softmax. Padding
    (id 0) at the tail of each sequence is packed away so the LSTM's final
    states are taken at the last real token.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()
        self.config = config

        # seeded init on a forked RNG, the caller's global stream is left alone
        with torch.random.fork_rng(devices=[]):
            torch.manual_seed(config.seed)
            self.embedding = nn.Embedding(config.vocab_size, config.embedding_dim, padding_idx=PAD_ID)
            self.lstm = nn.LSTM(
                input_size=config.embedding_dim,
                hidden_size=config.lstm_units,
                batch_first=True,
                bidirectional=True,
            )
            self.dropout = nn.Dropout(config.dropout)
            self.hidden = nn.Linear(2 * config.lstm_units, config.hidden_units)
            self.output = nn.Linear(config.hidden_units, config.num_labels)
            self._init_weights()

    def _init_weights(self) -> None:
        nn.init.xavier_normal_(self.embedding.weight)
        with torch.no_grad():
            self.embedding.weight[PAD_ID].zero_()
        for name, param in self.lstm.named_parameters():
            if name.startswith("weight_ih"):
                nn.init.xavier_normal_(param)
            elif name.startswith("weight_hh"):
                nn.init.orthogonal_(param)
            else:
                nn.init.zeros_(param)
        for layer in (self.hidden, self.output):
            nn.init.xavier_normal_(layer.weight)
            nn.init.zeros_(layer.bias)

    def forward(self, ids: torch.Tensor) -> torch.Tensor:
        # all-padding rows still get one step so pack_padded_sequence accepts them
        lengths = (ids != PAD_ID).sum(dim=1).clamp(min=1).cpu()
        packed = pack_padded_sequence(
            self.embedding(ids), lengths, batch_first=True, enforce_sorted=False
        )
        _, (h_n, _) = self.lstm(packed)  # h_n: (2, batch, lstm_units)
        merged = torch.cat([h_n[0], h_n[1]], dim=1)
        x = torch.relu(self.hidden(self.dropout(merged)))
        return self.output(x)

    def probabilities(self, ids: torch.Tensor) -> torch.Tensor:
        return torch.softmax(self.forward(ids), dim=-1)
