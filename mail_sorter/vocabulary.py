"""Text normalization and the fixed-size token vocabulary.

normalize()/tokenize() are the only text cleaning used anywhere in the
package; training and inference must tokenize identically.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections import Counter
from collections.abc import Iterable
from pathlib import Path

from .errors import NoTrainingData

VOCAB_SIZE: int = 5000

PAD_TOKEN: str = "<PAD>"
OOV_TOKEN: str = "<UNK>"
PAD_ID: int = 0
OOV_ID: int = 1
_N_RESERVED: int = 2

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, drop punctuation/symbols and collapse whitespace."""
    text = _NON_WORD.sub("", (text or "").lower())
    return _WHITESPACE.sub(" ", text).strip()


def tokenize(text: str) -> list[str]:
    normalized = normalize(text)
    return normalized.split(" ") if normalized else []


class Vocabulary:
    """Immutable token -> id mapping.

    Id 0 is padding, id 1 is out-of-vocabulary; learned tokens take ids
    2..len-1 in descending corpus frequency, equal counts in token order, so
    the ids do not depend on the order the documents arrive in.

    Usage::

        vocab = Vocabulary.build(texts, max_size=5000)
        vocab.id_for("apple")      # 2
        vocab.id_for("zzz")        # OOV_ID
        vocab.save(model_dir / "vocabulary.json")
    """

    def __init__(self, token_to_id: dict[str, int]) -> None:
        if token_to_id.get(PAD_TOKEN) != PAD_ID or token_to_id.get(OOV_TOKEN) != OOV_ID:
            raise ValueError("vocabulary must reserve id 0 for <PAD> and id 1 for <UNK>")
        if sorted(token_to_id.values()) != list(range(len(token_to_id))):
            raise ValueError("vocabulary ids must be exactly 0..len-1")
        self._token_to_id: dict[str, int] = dict(token_to_id)

    @classmethod
    def build(cls, texts: Iterable[str], max_size: int = VOCAB_SIZE) -> "Vocabulary":
        """Count tokens over the whole corpus and keep the max_size - 2 most frequent.

        Raises:
            NoTrainingData: if texts is empty.
        """
        if max_size < _N_RESERVED:
            raise ValueError(f"max_size must be at least {_N_RESERVED}, got {max_size}")

        counts: Counter[str] = Counter()
        n_texts = 0
        for text in texts:
            counts.update(tokenize(text))
            n_texts += 1
        if n_texts == 0:
            raise NoTrainingData("cannot build a vocabulary from an empty corpus")

        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        token_to_id = {PAD_TOKEN: PAD_ID, OOV_TOKEN: OOV_ID}
        for i, (token, _) in enumerate(ranked[: max_size - _N_RESERVED]):
            token_to_id[token] = i + _N_RESERVED
        return cls(token_to_id)

    def id_for(self, token: str) -> int:
        return self._token_to_id.get(token, OOV_ID)

    def __len__(self) -> int:
        return len(self._token_to_id)

    def __contains__(self, token: object) -> bool:
        return token in self._token_to_id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Vocabulary):
            return NotImplemented
        return self._token_to_id == other._token_to_id

    def tokens(self) -> list[str]:
        """All tokens ordered by id."""
        return sorted(self._token_to_id, key=self._token_to_id.__getitem__)

    def to_json(self) -> str:
        ordered = {token: self._token_to_id[token] for token in self.tokens()}
        return json.dumps(ordered, ensure_ascii=False)

    def digest(self) -> str:
        """SHA-256 of the serialized mapping; ties the vocabulary to a saved model."""
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()

    def save(self, path: str | Path) -> None:
        Path(path).write_text(self.to_json(), encoding="utf-8")

    @classmethod
    def load(cls, path: str | Path) -> "Vocabulary":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object of token -> id")
        return cls({str(token): int(idx) for token, idx in data.items()})
