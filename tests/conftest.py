"""Test session configuration."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

# Tests run on CPU; set before anything imports JAX.
os.environ.setdefault("JAX_PLATFORMS", "cpu")
os.environ.setdefault("XLA_PYTHON_CLIENT_PREALLOCATE", "false")

import jax  # noqa: E402
import pytest  # noqa: E402

from s2s.config import Config, ModelConfig  # noqa: E402
from s2s.graph import build_cell_factory  # noqa: E402
from s2s.model import SequenceModel  # noqa: E402
from tests.helpers.config_factories import make_small_run_cfg  # noqa: E402
from tests.helpers.corpus import write_corpus  # noqa: E402


@pytest.fixture
def small_run_cfg_factory() -> Callable[..., tuple[Config, Path]]:
    """Expose the shared small-run config factory."""
    return make_small_run_cfg


@pytest.fixture
def small_run_cfg(tmp_path: Path) -> tuple[Config, Path]:
    """Provide a smoke-sized run config tuple for tests."""
    return make_small_run_cfg(tmp_path)


@pytest.fixture
def copy_corpus(tmp_path: Path) -> tuple[Path, Path]:
    """Source/target files of the toy copy task."""
    return write_corpus(tmp_path)


@pytest.fixture
def model_factory() -> Callable[..., SequenceModel]:
    """Build a tiny SequenceModel: ``model_factory(cell="rnn", vocab_size=6)``."""

    def make(
        *,
        cell: str = "lstm",
        hidden: int = 8,
        vocab_size: int = 6,
        init_scale: float = 0.08,
        seed: int = 0,
    ) -> SequenceModel:
        factory = build_cell_factory(ModelConfig(cell=cell, hidden=hidden, init_scale=init_scale))
        return SequenceModel(
            factory,
            vocab_size=vocab_size,
            embed_dim=hidden,
            key=jax.random.PRNGKey(seed),
            init_scale=init_scale,
        )

    return make
