"""Token vocabularies and corpus loading.

A vocabulary maps whitespace tokens to integer ids. Id 0 is always the
end-of-sequence sentinel ``<s>``; it is inserted before any file content is
read, so real tokens start at 1 in order of first appearance.

Corpora are never stored with the sentinel: the minibatch generator inserts
it when it pads and frames sequences.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)

EOS_TOKEN = "<s>"
EOS_ID = 0


class Vocabulary:
    """Growable token <-> id bijection with the sentinel pre-seeded at id 0."""

    def __init__(self, tokens: Iterable[str] = ()) -> None:
        """Create a vocabulary.

        :param tokens: Optional tokens to add after the sentinel, in order.
        """
        self._ids: dict[str, int] = {EOS_TOKEN: EOS_ID}
        self._tokens: list[str] = [EOS_TOKEN]
        for tok in tokens:
            self.add(tok)

    def add(self, token: str) -> int:
        """Return the id of `token`, assigning the next free id on first sight."""
        idx = self._ids.get(token)
        if idx is None:
            idx = len(self._tokens)
            self._ids[token] = idx
            self._tokens.append(token)
        return idx

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, token: object) -> bool:
        return token in self._ids

    def __getitem__(self, token: str) -> int:
        return self._ids[token]

    def token(self, idx: int) -> str:
        return self._tokens[idx]

    def encode(self, tokens: Iterable[str]) -> list[int]:
        return [self.add(t) for t in tokens]

    def decode(self, ids: Iterable[int]) -> list[str]:
        return [self._tokens[int(i)] for i in ids]

    def to_json(self, path: str | Path) -> None:
        """Write tokens in id order as a JSON list."""
        Path(path).write_text(json.dumps(self._tokens, ensure_ascii=False, indent=0), encoding="utf-8")

    @classmethod
    def from_json(cls, path: str | Path) -> Vocabulary:
        """Load a vocabulary written by `to_json`.

        :raises ValueError: If the file does not start with the sentinel.
        """
        tokens = json.loads(Path(path).read_text(encoding="utf-8"))
        if not tokens or tokens[0] != EOS_TOKEN:
            raise ValueError(f"{path}: vocabulary must start with {EOS_TOKEN!r}")
        return cls(tokens[1:])


def load_sequences(path: str | Path, vocab: Vocabulary) -> list[list[int]]:
    """Read one whitespace-tokenized sequence per line, growing `vocab`.

    Blank lines are kept as empty sequences so line numbers stay aligned with
    the parallel file.

    :param path: UTF-8 text file.
    :param Vocabulary vocab: Vocabulary to look up and extend.
    :return list[list[int]]: One id sequence per line.
    """
    path = Path(path)
    data: list[list[int]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            data.append(vocab.encode(line.split()))
    nwords = sum(len(s) for s in data)
    logger.info("Read %s [ns=%d, nw=%d, nd=%d]", path, len(data), nwords, len(vocab))
    return data
