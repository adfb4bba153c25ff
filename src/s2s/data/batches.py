"""Minibatch generator for encoder-decoder training.

The generator turns two parallel corpora into a flat stream of per-token steps:

  source [a b c], target [x y z], batch_size=1 yields
    (<s>, NO_TARGET) (c, NO_TARGET) (b, NO_TARGET) (a, NO_TARGET)
    (<s>, x) (x, y) (y, z) (z, <s>)

Transformations:
- both corpora are stable-sorted by source length (less padding per window)
- sequences are minibatched `batch_size` at a time and padded with the
  sentinel to the window's own max length + 1
- source tokens are emitted in reverse, sentinel first
- target tokens are emitted as (previous, next) pairs wrapped in `Target`

The model switches between encoding and decoding purely from the presence or
absence of a target, so the stream itself carries the phase structure.

Buffer contract: `x` and the `Target` value are the generator's own arrays and
are overwritten in place on every step. Copy anything you keep.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from s2s.types import NO_TARGET, StreamItem, Target

from .vocab import EOS_ID, Vocabulary, load_sequences

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CursorState:
    """JSON-serializable cursor position.

    batch_index: number of windows fully emitted
    position:    steps emitted in the current phase of the current window
    decoding:    whether the current window is in its target phase
    """

    batch_index: int = 0
    position: int = 0
    decoding: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_index": int(self.batch_index),
            "position": int(self.position),
            "decoding": bool(self.decoding),
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> CursorState:
        return CursorState(
            batch_index=int(d["batch_index"]),
            position=int(d["position"]),
            decoding=bool(d["decoding"]),
        )


class MinibatchGenerator:
    """Sorted, padded, source-reversed minibatch stream over parallel corpora.

    Iterating creates a fresh `BatchCursor`; the generator itself is never
    rewound. Buffers are allocated when a cursor starts and reused until the
    vocabulary size, batch size or representation changes.
    """

    def __init__(
        self,
        source: Sequence[Sequence[int]],
        target: Sequence[Sequence[int]],
        *,
        source_vocab: Vocabulary,
        target_vocab: Vocabulary,
        batch_size: int = 20,
        dense: bool = False,
        dtype: str = "float32",
        stop: int | None = None,
    ) -> None:
        """Build the generator from already-encoded corpora.

        :param source: Source sequences (token ids, no sentinel).
        :param target: Target sequences, parallel to `source`.
        :param Vocabulary source_vocab: Vocabulary the source ids come from.
        :param Vocabulary target_vocab: Vocabulary the target ids come from.
        :param int batch_size: Sequences per window.
        :param bool dense: Emit one-hot [B, V] buffers instead of [B] ids.
        :param str dtype: Float dtype of dense buffers.
        :param stop: Optional cap on sequences consumed per pass.
        :raises ValueError: If the corpora differ in length or batch_size < 1.
        """
        if len(source) != len(target):
            raise ValueError(
                f"Source and target corpora must be parallel: {len(source)} source lines "
                f"vs {len(target)} target lines"
            )
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        order = sorted(range(len(source)), key=lambda i: len(source[i]))
        self.source: list[list[int]] = [list(source[i]) for i in order]
        self.target: list[list[int]] = [list(target[i]) for i in order]
        self.source_vocab = source_vocab
        self.target_vocab = target_vocab
        self.batch_size = int(batch_size)
        self.dense = bool(dense)
        self.dtype = np.dtype(dtype)
        self.stop = stop

        self.x: np.ndarray | None = None
        self.y: np.ndarray | None = None
        self._warned_skip = False

    @classmethod
    def from_files(
        cls,
        source_file: str | Path,
        target_file: str | Path,
        *,
        source_vocab: Vocabulary | None = None,
        target_vocab: Vocabulary | None = None,
        **kwargs: Any,
    ) -> MinibatchGenerator:
        """Load both corpora, growing (or creating) the two vocabularies.

        Pass the vocabularies of a training generator to build an evaluation
        generator over the same id space.
        """
        source_vocab = source_vocab if source_vocab is not None else Vocabulary()
        target_vocab = target_vocab if target_vocab is not None else Vocabulary()
        source = load_sequences(source_file, source_vocab)
        target = load_sequences(target_file, target_vocab)
        return cls(source, target, source_vocab=source_vocab, target_vocab=target_vocab, **kwargs)

    def __len__(self) -> int:
        return len(self.source)

    @property
    def vocab_size(self) -> int:
        """Width of dense buffers: the larger of the two vocabularies."""
        return max(len(self.source_vocab), len(self.target_vocab))

    @property
    def limit(self) -> int:
        """Sequences available to one pass after applying `stop`."""
        if self.stop is None:
            return len(self.source)
        return min(len(self.source), int(self.stop))

    @property
    def num_batches(self) -> int:
        return self.limit // self.batch_size

    def _allocate(self) -> None:
        """(Re)allocate the x/y buffers if their shape or kind is stale."""
        if self.dense:
            shape: tuple[int, ...] = (self.batch_size, self.vocab_size)
            dtype = self.dtype
        else:
            shape = (self.batch_size,)
            dtype = np.dtype(np.int32)
        if self.x is None or self.x.shape != shape or self.x.dtype != dtype:
            self.x = np.zeros(shape, dtype=dtype)
            self.y = np.zeros(shape, dtype=dtype)

    def _write(self, buf: np.ndarray, tokens: np.ndarray) -> None:
        """Overwrite `buf` in place with one token per row."""
        if self.dense:
            buf.fill(0)
            buf[np.arange(self.batch_size), tokens] = 1
        else:
            buf[:] = tokens

    def exhausted(self, batch_index: int) -> bool:
        """True once another full window no longer fits.

        Trailing sequences that cannot fill a window are dropped; this is
        reported once per generator instance.
        """
        if (batch_index + 1) * self.batch_size <= self.limit:
            return False
        skipped = len(self.source) - batch_index * self.batch_size
        if skipped != 0 and not self._warned_skip:
            logger.warning("Skipping %d lines at the end.", skipped)
            self._warned_skip = True
        return True

    def window(self, batch_index: int) -> tuple[list[list[int]], list[list[int]]]:
        """Source and target sequences of one window, in sorted order."""
        s1 = batch_index * self.batch_size
        s2 = s1 + self.batch_size
        return self.source[s1:s2], self.target[s1:s2]

    def __iter__(self) -> BatchCursor:
        self._allocate()
        return BatchCursor(self)


def _encode_tokens(window: list[list[int]], position: int) -> tuple[np.ndarray, int]:
    """Reversed source tokens at `position`, plus the window length.

    With slen = 1 + max length, row `s` gets s[slen - position] (1-based) when
    that index is within the sequence and the sentinel otherwise. The first
    step is therefore all sentinels and the last step the first real tokens.
    """
    slen = 1 + max(len(s) for s in window)
    k = slen - position
    tokens = np.array([s[k - 1] if 1 <= k <= len(s) else EOS_ID for s in window], dtype=np.int64)
    return tokens, slen


def _decode_tokens(window: list[list[int]], position: int) -> tuple[np.ndarray, np.ndarray, int]:
    """(previous, next) target tokens at `position`, plus the window length."""
    slen = 1 + max(len(s) for s in window)
    prev = [s[position - 1] if 1 <= position <= len(s) else EOS_ID for s in window]
    nxt = [s[position] if 1 <= position + 1 <= len(s) else EOS_ID for s in window]
    return np.array(prev, dtype=np.int64), np.array(nxt, dtype=np.int64), slen


class BatchCursor:
    """Forward-only iterator over one pass of a `MinibatchGenerator`."""

    def __init__(self, gen: MinibatchGenerator, state: CursorState | None = None) -> None:
        self.gen = gen
        self.state = state if state is not None else CursorState()

    def __iter__(self) -> BatchCursor:
        return self

    def __next__(self) -> StreamItem:
        gen = self.gen
        st = self.state
        if gen.exhausted(st.batch_index):
            raise StopIteration
        assert gen.x is not None and gen.y is not None

        sources, targets = gen.window(st.batch_index)
        if not st.decoding:
            tokens, slen = _encode_tokens(sources, st.position)
            gen._write(gen.x, tokens)
            position = st.position + 1
            if position == slen:
                self.state = CursorState(st.batch_index, 0, True)
            else:
                self.state = CursorState(st.batch_index, position, False)
            return gen.x, NO_TARGET

        prev, nxt, slen = _decode_tokens(targets, st.position)
        gen._write(gen.x, prev)
        gen._write(gen.y, nxt)
        position = st.position + 1
        if position == slen:
            self.state = CursorState(st.batch_index + 1, 0, False)
        else:
            self.state = CursorState(st.batch_index, position, True)
        return gen.x, Target(gen.y)

    def get_state(self) -> dict[str, Any]:
        return self.state.to_dict()

    def set_state(self, state: dict[str, Any]) -> None:
        self.state = CursorState.from_dict(state)
