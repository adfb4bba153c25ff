"""Data loading for s2s.

- `vocab`: growable vocabularies (sentinel at id 0) + corpus loader
- `batches`: the minibatch generator that produces the `(x, y)` step stream

Public contract: iterating a `MinibatchGenerator` yields `(x, NO_TARGET)`
encoder steps followed by `(x, Target(y))` decoder steps, window by window.
"""

from __future__ import annotations

from .batches import BatchCursor, CursorState, MinibatchGenerator
from .vocab import EOS_ID, EOS_TOKEN, Vocabulary, load_sequences

__all__ = [
    "BatchCursor",
    "CursorState",
    "EOS_ID",
    "EOS_TOKEN",
    "MinibatchGenerator",
    "Vocabulary",
    "load_sequences",
]
