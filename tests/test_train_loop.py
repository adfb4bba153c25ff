"""Train/test loop: phase transitions, gradient-check mode, clipping, learning."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import jax
import numpy as np
import optax
import pytest

import s2s.train as loop
from s2s.config import Config, OptimConfig
from s2s.data import MinibatchGenerator
from s2s.loss import softmax_loss
from s2s.model import SequenceModel
from s2s.types import NO_TARGET, NormTracker, Target
from s2s.utils.tree import tree_allclose, tree_sub

V = 5


class RecordingModel:
    """Stand-in that records the calls the loop makes, in order."""

    def __init__(self) -> None:
        self.events: list[str] = []
        self.decode_inputs: list[np.ndarray] = []
        self.finalize_kwargs: list[dict] = []

    def reset_state(self) -> None:
        self.events.append("reset")

    def encode_step(self, x, training=False):
        self.events.append("enc")

    def bridge_forward(self):
        self.events.append("bridge")

    def decode_step(self, x, ygold, training=False, loss_fn=None, stats=None):
        self.events.append("dec")
        self.decode_inputs.append(np.array(x, copy=True))
        if stats is not None:
            stats.add(1.0)
        # always predicts token 3
        return np.eye(V, dtype=np.float32)[np.full(len(x), 3)]

    def finalize_step(self, loss_fn, **kwargs) -> float:
        self.events.append("finalize")
        self.finalize_kwargs.append(kwargs)
        return 0.0


def _x(tok: int = 1) -> np.ndarray:
    return np.full((2,), tok, dtype=np.int32)


def _stream(*phases: str) -> list:
    """Build a stream from 'e' (encoder step) and 'd' (decoder step) markers."""
    return [(_x(), NO_TARGET) if p == "e" else (_x(), Target(_x(2))) for p in phases]


def test_transition_table_two_windows() -> None:
    model = RecordingModel()
    mean = loop.train(model, _stream("e", "e", "d", "d", "e", "d"), softmax_loss, tx=None)
    assert model.events == [
        "reset", "enc", "enc", "bridge", "dec", "dec", "finalize",
        "reset", "enc", "bridge", "dec", "finalize",
    ]  # fmt: skip
    assert mean == 1.0
    assert all(kw["training"] for kw in model.finalize_kwargs)


def test_gradient_check_runs_exactly_one_cycle() -> None:
    model = RecordingModel()
    loop.train(model, _stream("e", "d", "d", "e", "d", "e", "d"), softmax_loss, tx=None, gcheck=True)
    assert model.events == ["reset", "enc", "bridge", "dec", "dec", "finalize"]
    assert model.finalize_kwargs[0]["gcheck"] is True


def test_empty_stream_never_finalizes() -> None:
    model = RecordingModel()
    mean = loop.train(model, [], softmax_loss, tx=None)
    assert model.events == ["reset"]
    assert np.isnan(mean)


def test_stream_ending_during_encoding_is_flushed() -> None:
    model = RecordingModel()
    loop.train(model, _stream("e", "d", "e", "e"), softmax_loss, tx=None)
    assert model.events == ["reset", "enc", "bridge", "dec", "finalize", "reset", "enc", "enc", "finalize"]


def test_test_pass_finalizes_without_training() -> None:
    model = RecordingModel()
    mean = loop.test(model, _stream("e", "d", "d"), softmax_loss)
    assert model.events[-1] == "finalize"
    assert model.finalize_kwargs == [
        {"training": False, "tx": None, "gclip": 0.0, "maxnorm": None, "gcheck": False}
    ]
    assert mean == 1.0


def test_greedy_decoding_feeds_previous_prediction() -> None:
    model = RecordingModel()
    loop.test(model, _stream("e", "d", "d", "d"), softmax_loss, decode_input="greedy")
    first, *rest = model.decode_inputs
    assert first.tolist() == [1, 1]
    assert all(x.tolist() == [3, 3] for x in rest)


def test_greedy_decoding_with_dense_buffers() -> None:
    model = RecordingModel()
    onehot = np.eye(V, dtype=np.float32)[[1, 1]]
    stream = [(onehot, NO_TARGET), (onehot, Target(onehot)), (onehot, Target(onehot))]
    loop.test(model, stream, softmax_loss, decode_input="greedy")
    assert model.decode_inputs[1].argmax(axis=1).tolist() == [3, 3]
    assert model.decode_inputs[1].sum() == 2


def test_unknown_decode_input_raises() -> None:
    with pytest.raises(ValueError, match="decode_input"):
        loop.test(RecordingModel(), [], softmax_loss, decode_input="beam")


# ------------------------------ Real model ----------------------------------


def _copy_data(copy_corpus: tuple[Path, Path], **kwargs) -> MinibatchGenerator:
    src, tgt = copy_corpus
    return MinibatchGenerator.from_files(src, tgt, batch_size=4, **kwargs)


def test_gradient_check_mode_leaves_parameters_unchanged(
    model_factory: Callable[..., SequenceModel], copy_corpus: tuple[Path, Path]
) -> None:
    data = _copy_data(copy_corpus)
    model = model_factory(vocab_size=data.vocab_size)
    enc_before, dec_before = model.encoder.params, model.decoder.params

    loop.train(model, data, softmax_loss, tx=None, gcheck=True)

    assert tree_allclose(model.encoder.params, enc_before, rtol=0, atol=0)
    assert tree_allclose(model.decoder.params, dec_before, rtol=0, atol=0)
    assert model.gradient_norm() > 0


def test_gclip_bounds_the_update(
    model_factory: Callable[..., SequenceModel], copy_corpus: tuple[Path, Path]
) -> None:
    data = _copy_data(copy_corpus, stop=4)
    model = model_factory(vocab_size=data.vocab_size, init_scale=0.3)
    before = (model.encoder.params, model.decoder.params)
    tracker = NormTracker()

    gclip = 1e-2
    loop.train(model, data, softmax_loss, tx=optax.sgd(1.0), gclip=gclip, maxnorm=tracker)

    after = (model.encoder.params, model.decoder.params)
    step = float(optax.global_norm(tree_sub(after, before)))
    assert tracker.max_grad_norm > gclip
    assert 0 < step <= gclip * (1 + 1e-3)
    assert tracker.max_weight_norm > 0


def test_training_reduces_loss(
    model_factory: Callable[..., SequenceModel], copy_corpus: tuple[Path, Path]
) -> None:
    data = _copy_data(copy_corpus)
    model = model_factory(vocab_size=data.vocab_size, hidden=16)
    tx = optax.adam(0.05)

    initial = loop.test(model, data, softmax_loss)
    for _ in range(15):
        loop.train(model, data, softmax_loss, tx=tx, gclip=5.0)
    final = loop.test(model, data, softmax_loss)

    assert np.isfinite(initial) and np.isfinite(final)
    assert final < initial


@pytest.mark.parametrize("name", ["sgd", "adam", "adamw"])
def test_build_optimizer_variants(name: str) -> None:
    cfg = Config(optim=OptimConfig(name=name, lr=0.1, momentum=0.9, weight_decay=0.01))
    tx = loop.build_optimizer(cfg)
    params = {"w": jax.numpy.ones((2, 2)), "b": jax.numpy.ones((2,))}
    state = tx.init(params)
    updates, _ = tx.update(jax.tree_util.tree_map(jax.numpy.ones_like, params), state, params)
    assert set(updates) == {"w", "b"}


def test_build_optimizer_rejects_unknown_name() -> None:
    cfg = Config(optim=OptimConfig(name="lion"))  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="optim.name"):
        loop.build_optimizer(cfg)


def test_finite_check_rejects_nan_loss() -> None:
    with pytest.raises(RuntimeError, match="train_loss"):
        loop._check_finite_metrics({"epoch": 1, "train_loss": float("nan")})


def test_finite_check_rejects_inf_eval_loss() -> None:
    with pytest.raises(RuntimeError, match="eval_loss"):
        loop._check_finite_metrics({"epoch": 2, "train_loss": 1.0, "eval_loss": float("inf")})


def test_build_generators_rejects_tiny_corpus(
    small_run_cfg: tuple[Config, Path],
) -> None:
    cfg, _ = small_run_cfg
    cfg = replace(cfg, data=replace(cfg.data, batch_size=100))
    with pytest.raises(ValueError, match="fewer than data.batch_size"):
        loop.build_generators(cfg)
