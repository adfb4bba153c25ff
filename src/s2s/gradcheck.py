"""Numerical gradient check for the step-wise BPTT.

The check takes the first complete encode/decode cycle from a stream, runs it
once in training mode with `gcheck=True` (gradients are computed, no update is
applied), and compares a random sample of gradient entries against central
finite differences of the cycle's summed decode loss:

  dL/dw ~= (L(w + eps) - L(w - eps)) / (2 eps)

Run it on a tiny model: every probe costs two forward passes over the cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import jax
import numpy as np

from s2s.config import Config
from s2s.model import LossFn, SequenceModel, build_model
from s2s.train import build_generators, test, train
from s2s.types import NO_TARGET, NoTarget, StreamItem, Target
from s2s.utils.tree import leaf_entries, tree_add_at, tree_get_at

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GradMismatch:
    """One probed entry whose analytic and numeric gradients disagree."""

    graph: str
    leaf: int
    index: tuple[int, ...]
    analytic: float
    numeric: float


@dataclass
class GradCheckResult:
    checked: int = 0
    max_abs_error: float = 0.0
    failures: list[GradMismatch] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.checked > 0 and not self.failures


def first_cycle(data: Iterable[StreamItem]) -> list[StreamItem]:
    """Copy the steps of the first encode -> decode cycle out of a stream.

    Buffers are copied because the generator overwrites them on every step.
    """
    items: list[StreamItem] = []
    decoding = False
    for x, y in data:
        if isinstance(y, NoTarget):
            if decoding:
                break
            items.append((np.array(x, copy=True), NO_TARGET))
        else:
            decoding = True
            items.append((np.array(x, copy=True), Target(np.array(y.value, copy=True))))
    return items


def check_gradients(
    model: SequenceModel,
    data: Iterable[StreamItem],
    loss_fn: LossFn,
    *,
    samples: int = 10,
    eps: float = 1e-2,
    rtol: float = 5e-2,
    atol: float = 1e-3,
    seed: int = 0,
) -> GradCheckResult:
    """Compare BPTT gradients with finite differences on `samples` entries per graph.

    The model's parameters are restored and its gradients zeroed on return.

    :raises ValueError: If the stream has no decode step.
    :return GradCheckResult: Number of probes, worst error and mismatches.
    """
    items = first_cycle(data)
    n_decode = sum(1 for _, y in items if isinstance(y, Target))
    if n_decode == 0:
        raise ValueError("gradient check needs at least one decode step")

    def cycle_loss() -> float:
        return test(model, items, loss_fn) * n_decode

    model.zero_grad()
    train(model, items, loss_fn, tx=None, gcheck=True)

    rng = np.random.default_rng(seed)
    result = GradCheckResult()
    for graph in (model.encoder, model.decoder):
        entries = leaf_entries(graph.params)
        analytic_tree = graph.grads
        original = graph.params
        for _ in range(samples):
            leaf, shape = entries[int(rng.integers(len(entries)))]
            index = tuple(int(rng.integers(d)) for d in shape)

            graph.params = tree_add_at(original, leaf, index, eps)
            plus = cycle_loss()
            graph.params = tree_add_at(original, leaf, index, -eps)
            minus = cycle_loss()
            graph.params = original

            numeric = (plus - minus) / (2 * eps)
            analytic = tree_get_at(analytic_tree, leaf, index)
            err = abs(analytic - numeric)
            result.checked += 1
            result.max_abs_error = max(result.max_abs_error, err)
            if err > atol + rtol * max(abs(analytic), abs(numeric)):
                result.failures.append(GradMismatch(graph.name, leaf, index, analytic, numeric))

    model.zero_grad()
    return result


def run_gradcheck(cfg: Config) -> GradCheckResult:
    """Build data + model from config and check gradients on the first cycle."""
    from s2s.loss import softmax_loss

    train_data, _ = build_generators(cfg)
    model = build_model(cfg, vocab_size=train_data.vocab_size, key=jax.random.PRNGKey(cfg.train.seed))
    result = check_gradients(
        model,
        train_data,
        softmax_loss,
        samples=cfg.debug.gradcheck_samples,
        eps=cfg.debug.gradcheck_eps,
        rtol=cfg.debug.gradcheck_rtol,
        atol=cfg.debug.gradcheck_atol,
        seed=cfg.train.seed,
    )
    logger.info(
        "gradcheck: %d probes, %d mismatches, max abs error %.3g",
        result.checked,
        len(result.failures),
        result.max_abs_error,
    )
    for m in result.failures:
        logger.warning(
            "gradcheck mismatch %s leaf %d %s: analytic=%.6g numeric=%.6g",
            m.graph,
            m.leaf,
            m.index,
            m.analytic,
            m.numeric,
        )
    return result
