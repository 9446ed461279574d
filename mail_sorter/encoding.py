"""Text -> fixed-length id sequence."""

from __future__ import annotations

from collections.abc import Sequence

import torch

from .vocabulary import PAD_ID, Vocabulary, tokenize

MAX_SEQUENCE_LENGTH: int = 100


def pad_sequence(ids: Sequence[int], max_length: int, pad_id: int = PAD_ID) -> list[int]:
    """Right-truncate or right-pad ids to exactly max_length."""
    if len(ids) >= max_length:
        return list(ids[:max_length])
    return list(ids) + [pad_id] * (max_length - len(ids))


def encode(
    text: str,
    vocabulary: Vocabulary,
    max_length: int = MAX_SEQUENCE_LENGTH,
) -> list[int]:
    """Encode text as max_length vocabulary ids. Unknown tokens map to OOV_ID."""
    return pad_sequence([vocabulary.id_for(t) for t in tokenize(text)], max_length)


def encode_batch(
    texts: Sequence[str],
    vocabulary: Vocabulary,
    max_length: int = MAX_SEQUENCE_LENGTH,
) -> torch.Tensor:
    """Encode texts into a (N, max_length) int64 tensor."""
    rows = [encode(t, vocabulary, max_length) for t in texts]
    if not rows:
        return torch.empty((0, max_length), dtype=torch.long)
    return torch.tensor(rows, dtype=torch.long)
