"""CLI entrypoints for s2s.

Invoked via ``pyproject.toml`` entrypoints::

    s2s train <config.yaml> -o train.epochs=5
    s2s gradcheck <config.yaml>

Thin wrappers: parse arguments, set up logging, call into library code.
"""

from __future__ import annotations

__all__ = ["cli"]

from s2s.cli.main import cli
