"""s2s: Sutskever-style sequence-to-sequence training on JAX/Equinox.

Two pieces carry the weight here:
- `s2s.data.batches.MinibatchGenerator` turns parallel corpora into a sorted,
  padded, source-reversed stream of `(x, y)` steps.
- `s2s.model.SequenceModel` + `s2s.train` drive an encoder graph and a decoder
  graph through encode -> decode -> BPTT cycles, one token step at a time.

Everything else (config, logging, CLI) is the usual harness around them.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
