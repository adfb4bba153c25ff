"""Train/test loops over the `(x, y)` step stream.

This module is the heart of s2s.

The loop is a two-state machine driven only by whether a step has a target:

  state     y          action                               next
  ENCODING  NoTarget   encode_step(x)                       ENCODING
  ENCODING  Target     bridge_forward, decode_step(x, y)    DECODING
  DECODING  Target     decode_step(x, y)                    DECODING
  DECODING  NoTarget   finalize_step, reset_state, then     ENCODING
                       handle the step as ENCODING

Rules:
1) **One cycle per window.** A window's BPTT runs when the next window's first
   source step arrives, or when the stream ends.
2) **Gradient check runs exactly one cycle.** With `gcheck=True` the loop
   stops at the first cycle boundary; the final flush then runs BPTT without
   an optimizer update.
3) **Training uses gold inputs unless told otherwise.** `decode_input="greedy"`
   feeds the previous argmax prediction to every decode step after the first.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np
import optax
from tqdm import tqdm

from s2s.config import DECODE_INPUTS, Config, require_train_files
from s2s.data import MinibatchGenerator
from s2s.loss import softmax_loss
from s2s.model import LossFn, SequenceModel, build_model
from s2s.types import LossStats, NormTracker, NoTarget, Phase, StreamItem
from s2s.utils.io import MetricsWriter, add_file_logging, create_run_dir
from s2s.utils.tree import param_count

logger = logging.getLogger(__name__)


def _weight_decay_mask(params: Any) -> Any:
    """Decay matrices (ndim >= 2), not biases."""
    return jax.tree_util.tree_map(lambda x: x.ndim >= 2, params)


def build_optimizer(cfg: Config) -> optax.GradientTransformation:
    """Create the Optax transformation for `cfg.optim` (constant learning rate)."""
    o = cfg.optim
    if o.name == "sgd":
        tx = optax.sgd(o.lr, momentum=o.momentum if o.momentum > 0 else None)
    elif o.name == "adam":
        tx = optax.adam(o.lr, b1=o.adam_b1, b2=o.adam_b2, eps=o.adam_eps)
    elif o.name == "adamw":
        return optax.adamw(
            o.lr,
            b1=o.adam_b1,
            b2=o.adam_b2,
            eps=o.adam_eps,
            weight_decay=o.weight_decay,
            mask=_weight_decay_mask,
        )
    else:
        raise ValueError(f"Unknown optim.name: {o.name!r}")

    if o.weight_decay > 0:
        tx = optax.chain(optax.add_decayed_weights(o.weight_decay, mask=_weight_decay_mask), tx)
    return tx


def _greedy_input(ypred: jax.Array, like: np.ndarray) -> np.ndarray:
    """Argmax of the previous prediction, shaped like the stream's `x` buffer."""
    ids = np.asarray(jnp.argmax(ypred, axis=-1))
    if like.ndim == 1:
        return ids.astype(like.dtype)
    out = np.zeros_like(like)
    out[np.arange(out.shape[0]), ids] = 1
    return out


def _run_cycles(
    model: SequenceModel,
    data: Iterable[StreamItem],
    loss_fn: LossFn,
    *,
    training: bool,
    stats: LossStats,
    tx: optax.GradientTransformation | None = None,
    gclip: float = 0.0,
    maxnorm: NormTracker | None = None,
    gcheck: bool = False,
    decode_input: str = "gold",
) -> None:
    if decode_input not in DECODE_INPUTS:
        raise ValueError(f"decode_input must be one of {DECODE_INPUTS}, got {decode_input!r}")

    def finalize() -> None:
        model.finalize_step(loss_fn, training=training, tx=tx, gclip=gclip, maxnorm=maxnorm, gcheck=gcheck)

    phase = Phase.ENCODING
    in_flight = False
    ypred = None
    model.reset_state()
    for x, y in data:
        if phase is Phase.DECODING and isinstance(y, NoTarget):
            # next window started
            if gcheck:
                break
            finalize()
            model.reset_state()
            phase = Phase.ENCODING
            in_flight = False
            ypred = None

        if isinstance(y, NoTarget):
            model.encode_step(x, training)
        else:
            if phase is Phase.ENCODING:
                model.bridge_forward()
                phase = Phase.DECODING
            elif decode_input == "greedy" and ypred is not None:
                x = _greedy_input(ypred, x)
            ypred = model.decode_step(x, y.value, training, loss_fn, stats)
        in_flight = True

    if in_flight:
        finalize()


def train(
    model: SequenceModel,
    data: Iterable[StreamItem],
    loss_fn: LossFn,
    *,
    tx: optax.GradientTransformation | None,
    gclip: float = 0.0,
    maxnorm: NormTracker | None = None,
    gcheck: bool = False,
    decode_input: str = "gold",
) -> float:
    """One training pass over `data`.

    :param SequenceModel model: Model to train in place.
    :param data: `(x, y)` step stream, e.g. a `MinibatchGenerator`.
    :param loss_fn: Differentiable loss over decoder outputs.
    :param tx: Optax transformation (may be None only with gcheck=True).
    :param float gclip: Global-norm clip threshold, 0 disables.
    :param maxnorm: Optional tracker of max weight/gradient norms.
    :param bool gcheck: Run one cycle, compute gradients, skip the update.
    :param str decode_input: "gold" (teacher forcing) or "greedy".
    :return float: Mean loss over decode steps (NaN if there were none).
    """
    stats = LossStats()
    _run_cycles(
        model,
        data,
        loss_fn,
        training=True,
        stats=stats,
        tx=tx,
        gclip=gclip,
        maxnorm=maxnorm,
        gcheck=gcheck,
        decode_input=decode_input,
    )
    return stats.mean


def test(
    model: SequenceModel,
    data: Iterable[StreamItem],
    loss_fn: LossFn,
    *,
    decode_input: str = "gold",
) -> float:
    """Forward-only pass over `data`; returns mean loss per decode step."""
    stats = LossStats()
    _run_cycles(model, data, loss_fn, training=False, stats=stats, decode_input=decode_input)
    return stats.mean


# Not a pytest test despite the name.
test.__test__ = False  # type: ignore[attr-defined]


def _perplexity(loss: float) -> float:
    if math.isnan(loss):
        return math.nan
    return math.exp(loss) if loss < 700 else math.inf


def _check_finite_metrics(row: dict[str, Any]) -> None:
    """Raise if any loss in the metrics row is non-finite.

    :raises RuntimeError: On NaN/inf losses.
    """
    for key in ("train_loss", "eval_loss"):
        if key in row and not math.isfinite(float(row[key])):
            raise RuntimeError(f"Non-finite {key} at epoch {row['epoch']}: {row[key]}")


def build_generators(cfg: Config) -> tuple[MinibatchGenerator, MinibatchGenerator | None]:
    """Train generator plus an optional eval generator sharing its vocabularies.

    :raises ValueError: If a corpus cannot fill a single batch.
    """
    src, tgt = require_train_files(cfg)
    kwargs = {
        "batch_size": cfg.data.batch_size,
        "dense": cfg.data.dense,
        "dtype": cfg.data.dtype,
        "stop": cfg.data.stop,
    }
    train_data = MinibatchGenerator.from_files(src, tgt, **kwargs)
    if train_data.num_batches == 0:
        raise ValueError(
            f"{src} has {len(train_data)} usable lines, fewer than data.batch_size={cfg.data.batch_size}"
        )

    eval_data = None
    if cfg.data.eval_source_file and cfg.data.eval_target_file:
        eval_data = MinibatchGenerator.from_files(
            cfg.data.eval_source_file,
            cfg.data.eval_target_file,
            source_vocab=train_data.source_vocab,
            target_vocab=train_data.target_vocab,
            **kwargs,
        )
        if eval_data.num_batches == 0:
            raise ValueError(
                f"{cfg.data.eval_source_file} has {len(eval_data)} usable lines, "
                f"fewer than data.batch_size={cfg.data.batch_size}"
            )
    return train_data, eval_data


def run(cfg: Config, *, config_path: str | None = None) -> Path:
    """Run a training job and return the run directory.

    Writes `metrics.jsonl` (one row per epoch), the config snapshot, the two
    vocabularies and, if configured, `train.log`.
    """
    run_dir = create_run_dir(cfg, config_path=config_path)
    file_handler = None
    if cfg.logging.log_file:
        file_handler = add_file_logging(run_dir / cfg.logging.log_file, level=cfg.logging.level)

    try:
        train_data, eval_data = build_generators(cfg)
        # Eval files may have grown the shared vocabularies; size the model after both loads.
        vocab_size = train_data.vocab_size

        key = jax.random.PRNGKey(cfg.train.seed)
        model = build_model(cfg, vocab_size=vocab_size, key=key)
        logger.info(
            "params: %s (vocab=%d, cell=%s, hidden=%d)",
            f"{param_count(model.parameters()):,}",
            vocab_size,
            cfg.model.cell,
            cfg.model.hidden,
        )

        tx = build_optimizer(cfg)
        maxnorm = NormTracker() if cfg.train.track_maxnorm else None
        t0 = time.perf_counter()

        with MetricsWriter(run_dir / cfg.logging.metrics_file) as mw:
            for epoch in tqdm(range(1, cfg.train.epochs + 1), desc="train", dynamic_ncols=True):
                trn_loss = train(
                    model,
                    train_data,
                    softmax_loss,
                    tx=tx,
                    gclip=cfg.train.gclip,
                    maxnorm=maxnorm,
                    decode_input=cfg.train.decode_input,
                )
                row: dict[str, Any] = {
                    "epoch": epoch,
                    "train_loss": trn_loss,
                    "train_ppl": _perplexity(trn_loss),
                }
                if eval_data is not None:
                    tst_loss = test(model, eval_data, softmax_loss, decode_input=cfg.train.eval_decode_input)
                    row["eval_loss"] = tst_loss
                    row["eval_ppl"] = _perplexity(tst_loss)
                if maxnorm is not None:
                    row["max_wnorm"] = maxnorm.max_weight_norm
                    row["max_gnorm"] = maxnorm.max_grad_norm
                row["wall_time_s"] = time.perf_counter() - t0

                if cfg.debug.nan_check:
                    _check_finite_metrics(row)
                mw.write(row)
                logger.info(
                    "epoch %d: train_loss=%.4f%s",
                    epoch,
                    trn_loss,
                    f" eval_loss={row['eval_loss']:.4f}" if "eval_loss" in row else "",
                )

        train_data.source_vocab.to_json(run_dir / "vocab_source.json")
        train_data.target_vocab.to_json(run_dir / "vocab_target.json")
    finally:
        if file_handler is not None:
            logging.getLogger().removeHandler(file_handler)
            file_handler.close()

    return run_dir
