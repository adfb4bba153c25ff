"""Sequence-to-sequence model: one encoder graph, one decoder graph.

Sutskever, Vinyals & Le (2014), "Sequence to sequence learning with neural
networks". One cell template is instantiated twice with separate weights:

  encoder: token -> embedding -> cell                        (output: h)
  decoder: token -> embedding -> cell -> projection -> softmax (output: p)

A training cycle for one window of sequences is

  reset_state
  encode_step x L            (source tokens, reversed by the data stream)
  bridge_forward             (encoder final state -> decoder initial state)
  decode_step x L'           (gold targets pushed on the gold stack)
  finalize_step
    backpropagate_through_time
      decoder backward x L'  (gold stack popped LIFO)
      bridge_backward        (decoder initial-state grad -> encoder final step)
      encoder backward x L
    optimizer update

The bridge shares the encoder's state arrays with the decoder instead of
copying them. That sharing is only valid until the backward bridge of the same
cycle, so it is held by an explicit `BridgeHandle` and `encode_step` refuses to
run while a handle is active.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import jax
import numpy as np
import optax

from s2s.config import Config
from s2s.graph import CellFactory, DecoderNet, EncoderNet, RecurrentGraph, build_cell_factory
from s2s.types import LossStats, NormTracker

logger = logging.getLogger(__name__)

LossFn = Callable[[jax.Array, jax.Array], jax.Array]


@dataclass
class BridgeHandle:
    """Lifetime token for the encoder -> decoder state alias of one cycle."""

    slots: tuple[str, ...]
    active: bool = True

    def release(self) -> None:
        self.active = False


class SequenceModel:
    """Encoder/decoder pair driven one token step at a time."""

    def __init__(
        self,
        cell_factory: CellFactory,
        *,
        vocab_size: int,
        embed_dim: int,
        key: jax.Array,
        init_scale: float = 0.08,
    ) -> None:
        """Build two independently initialised graphs from one cell template.

        :param CellFactory cell_factory: `factory(input_size, *, key) -> cell`.
        :param int vocab_size: Token id space shared by inputs and outputs.
        :param int embed_dim: Embedding width (cell input size).
        :param jax.Array key: PRNG key; split between encoder and decoder.
        :param float init_scale: Uniform init range for embeddings/projection.
        """
        k_enc, k_dec = jax.random.split(key)
        enc = EncoderNet(
            cell_factory, vocab_size=vocab_size, embed_dim=embed_dim, init_scale=init_scale, key=k_enc
        )
        dec = DecoderNet(
            cell_factory, vocab_size=vocab_size, embed_dim=embed_dim, init_scale=init_scale, key=k_dec
        )
        self.encoder = RecurrentGraph(enc, name="encoder")
        self.decoder = RecurrentGraph(dec, name="decoder")
        self.vocab_size = vocab_size
        self.gold_stack: list[np.ndarray] = []
        self.bridge: BridgeHandle | None = None

    def parameters(self) -> list[jax.Array]:
        """Encoder parameters followed by decoder parameters."""
        return self.encoder.parameters() + self.decoder.parameters()

    # -- cycle -----------------------------------------------------------------

    def reset_state(self) -> None:
        """Start a new cycle: fresh recurrent state, empty gold stack, no bridge."""
        if self.bridge is not None:
            self.bridge.release()
        self.bridge = None
        self.encoder.reset()
        self.decoder.reset()
        self.gold_stack = []

    def encode_step(self, x: Any, training: bool = False) -> jax.Array:
        """Feed one source token batch to the encoder.

        :raises RuntimeError: If the encoder state is still aliased by an
            active bridge.
        """
        if self.bridge is not None and self.bridge.active:
            raise RuntimeError(
                "encoder state is shared with the decoder by an active bridge; "
                "finish the cycle (backpropagate_through_time) or reset_state() first"
            )
        return self.encoder.step_forward(x, training=training)

    def bridge_forward(self) -> BridgeHandle:
        """Alias the encoder's forward-referenced state into the decoder's initial state.

        :raises RuntimeError: If the encoder has not run, or a bridge is already active.
        """
        if self.bridge is not None and self.bridge.active:
            raise RuntimeError("bridge_forward called twice in one cycle")
        if self.encoder.state is None:
            raise RuntimeError("bridge_forward before any encode_step")
        slots = []
        for n, name in enumerate(self.encoder.quantities):
            if self.encoder.is_forward_referenced(n):
                self.decoder.initial_state[name] = self.encoder.state[name]
                slots.append(name)
        self.bridge = BridgeHandle(slots=tuple(slots))
        return self.bridge

    def bridge_backward(self) -> None:
        """Hand the decoder's initial-state gradient to the encoder's final step.

        A no-op when no bridge was opened this cycle (the stream ended before
        any target step).
        """
        if self.bridge is None or not self.bridge.active:
            return
        grads = self.decoder.state_grad or {}
        self.encoder.state_grad = {name: grads[name] for name in self.bridge.slots if name in grads}
        self.bridge.release()

    def decode_step(
        self,
        x: Any,
        ygold: Any,
        training: bool = False,
        loss_fn: LossFn | None = None,
        stats: LossStats | None = None,
    ) -> jax.Array:
        """Feed one target-side token batch to the decoder.

        :param x: Previous-token buffer.
        :param ygold: Next-token buffer (the generator's live buffer).
        :param bool training: Record the step and push a copy of `ygold`.
        :param loss_fn: Optional loss accumulated into `stats`.
        :param stats: Running loss statistic.
        :return jax.Array: Predicted distribution [B, V].
        """
        ypred = self.decoder.step_forward(x, training=training)
        if loss_fn is not None and stats is not None:
            stats.add(float(loss_fn(ypred, ygold)))
        if training:
            self.gold_stack.append(np.array(ygold, copy=True))
        return ypred

    def backpropagate_through_time(self, loss_fn: LossFn) -> None:
        """Backward through the decoder (LIFO over the gold stack), the bridge, then the encoder.

        :raises RuntimeError: If decode steps and gold targets do not balance.
        """
        while self.gold_stack:
            ygold = self.gold_stack.pop()
            self.decoder.step_backward(ygold, loss_fn)
        if self.decoder.step_pointer != 0:
            raise RuntimeError(
                f"decoder step_pointer is {self.decoder.step_pointer} after draining the gold "
                "stack; every decode step must have exactly one gold target"
            )
        self.bridge_backward()
        while self.encoder.step_pointer > 0:
            self.encoder.step_backward()

    # -- norms / update ----------------------------------------------------

    def weight_norm(self) -> float:
        return float(optax.global_norm((self.encoder.params, self.decoder.params)))

    def gradient_norm(self) -> float:
        return float(optax.global_norm((self.encoder.grads, self.decoder.grads)))

    def zero_grad(self) -> None:
        self.encoder.zero_grad()
        self.decoder.zero_grad()

    def update(self, scale: float | None, tx: optax.GradientTransformation) -> None:
        self.encoder.apply_update(scale, tx)
        self.decoder.apply_update(scale, tx)

    def finalize_step(
        self,
        loss_fn: LossFn,
        *,
        training: bool,
        tx: optax.GradientTransformation | None = None,
        gclip: float = 0.0,
        maxnorm: NormTracker | None = None,
        gcheck: bool = False,
    ) -> float:
        """Close a cycle: BPTT, optional clipping, optimizer update, norm tracking.

        With `gcheck` the gradients are computed but not applied, so they can be
        compared against finite differences.

        :return float: Global gradient norm (0.0 when it was not needed).
        """
        gnorm = 0.0
        if training:
            self.backpropagate_through_time(loss_fn)
            if gclip > 0 or maxnorm is not None:
                gnorm = self.gradient_norm()
            if not gcheck:
                if tx is None:
                    raise ValueError("training requires an optimizer (tx)")
                scale = None
                if gnorm > gclip > 0:
                    scale = gclip / gnorm
                    logger.debug("Clipping gradients: norm %.4f > %.4f (scale %.4g)", gnorm, gclip, scale)
                self.update(scale, tx)
        if maxnorm is not None:
            maxnorm.update(self.weight_norm(), gnorm)
        return gnorm


def build_model(cfg: Config, *, vocab_size: int, key: jax.Array) -> SequenceModel:
    """Build a `SequenceModel` from config.

    :param Config cfg: Configuration (uses cfg.model).
    :param int vocab_size: max(len(source_vocab), len(target_vocab)).
    :param jax.Array key: PRNG key for initialization.
    :return SequenceModel: Freshly initialised model.
    """
    return SequenceModel(
        build_cell_factory(cfg.model),
        vocab_size=vocab_size,
        embed_dim=cfg.model.hidden,
        key=key,
        init_scale=cfg.model.init_scale,
    )
