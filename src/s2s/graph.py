"""Recurrent computation graphs.

This file is the only place that knows how a recurrent step is computed. The
rest of the codebase talks to a `RecurrentGraph` through a small step-oriented
contract:

- `step_forward(x, training)` -> output, pushes one step
- `step_backward(target, loss_fn)` pops one step and accumulates gradients
- `step_pointer` counts forward steps not yet matched by a backward step
- `is_forward_referenced(n)` flags the quantities a step reads from the
  previous step (the recurrent state); these are what the encoder hands to the
  decoder at the bridge.

Networks are Equinox modules and are partitioned immediately into
`(params, static)`. Backprop-through-time is done one step at a time with
`jax.vjp`: each training forward step records its VJP closure on a tape, and
each backward step pops one closure, feeds it the output gradient plus the
state gradient carried from the step after it, and returns the state gradient
for the step before it.

Cell templates:
- `rnn`:  h' = tanh(W x + U h + b)
- `lstm`: standard LSTM with forget-gate bias 1
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import optax

from s2s.config import ModelConfig

State = dict[str, jax.Array]
CellFactory = Callable[..., eqx.Module]


def _uniform(key: jax.Array, shape: tuple[int, ...], scale: float) -> jax.Array:
    return jax.random.uniform(key, shape, dtype=jnp.float32, minval=-scale, maxval=scale)


# ------------------------------ Cell templates ------------------------------


class RNNCell(eqx.Module):
    """Elman cell with tanh activation. State: {"h"}."""

    w_in: jax.Array
    w_rec: jax.Array
    bias: jax.Array
    hidden: int = eqx.field(static=True)

    def __init__(self, input_size: int, hidden: int, *, init_scale: float, key: jax.Array):
        k1, k2 = jax.random.split(key)
        self.hidden = hidden
        self.w_in = _uniform(k1, (hidden, input_size), init_scale)
        self.w_rec = _uniform(k2, (hidden, hidden), init_scale)
        self.bias = jnp.zeros((hidden,), dtype=jnp.float32)

    @property
    def state_names(self) -> tuple[str, ...]:
        return ("h",)

    def init_state(self, batch_size: int) -> State:
        return {"h": jnp.zeros((batch_size, self.hidden), dtype=jnp.float32)}

    def __call__(self, state: State, x: jax.Array) -> tuple[State, jax.Array]:
        h = jnp.tanh(x @ self.w_in.T + state["h"] @ self.w_rec.T + self.bias)
        return {"h": h}, h


class LSTMCell(eqx.Module):
    """LSTM cell. Gates are packed as [input, forget, candidate, output]. State: {"h", "c"}."""

    w_in: jax.Array
    w_rec: jax.Array
    bias: jax.Array
    hidden: int = eqx.field(static=True)

    def __init__(self, input_size: int, hidden: int, *, init_scale: float, key: jax.Array):
        k1, k2 = jax.random.split(key)
        self.hidden = hidden
        self.w_in = _uniform(k1, (4 * hidden, input_size), init_scale)
        self.w_rec = _uniform(k2, (4 * hidden, hidden), init_scale)
        self.bias = jnp.zeros((4 * hidden,), dtype=jnp.float32).at[hidden : 2 * hidden].set(1.0)

    @property
    def state_names(self) -> tuple[str, ...]:
        return ("h", "c")

    def init_state(self, batch_size: int) -> State:
        z = jnp.zeros((batch_size, self.hidden), dtype=jnp.float32)
        return {"h": z, "c": z}

    def __call__(self, state: State, x: jax.Array) -> tuple[State, jax.Array]:
        gates = x @ self.w_in.T + state["h"] @ self.w_rec.T + self.bias
        i, f, g, o = jnp.split(gates, 4, axis=-1)
        c = jax.nn.sigmoid(f) * state["c"] + jax.nn.sigmoid(i) * jnp.tanh(g)
        h = jax.nn.sigmoid(o) * jnp.tanh(c)
        return {"h": h, "c": c}, h


_CELLS: dict[str, type[eqx.Module]] = {"rnn": RNNCell, "lstm": LSTMCell}


def build_cell_factory(cfg: ModelConfig) -> CellFactory:
    """Return `factory(input_size, *, key) -> cell` for the configured template.

    :param ModelConfig cfg: Model configuration.
    :raises ValueError: If cfg.cell is unknown.
    :return CellFactory: Callable building one independently initialised cell.
    """
    try:
        cls = _CELLS[cfg.cell]
    except KeyError:
        raise ValueError(f"Unknown model.cell: {cfg.cell!r}") from None

    def factory(input_size: int, *, key: jax.Array) -> eqx.Module:
        return cls(input_size, cfg.hidden, init_scale=cfg.init_scale, key=key)

    return factory


# ------------------------------ Networks ------------------------------------


def _embed(table: jax.Array, x: jax.Array) -> jax.Array:
    """Embed [B] token ids or [B, V] one-hot rows with a [V, E] table."""
    if x.ndim == 1:
        return table[x]
    return x.astype(table.dtype) @ table


class EncoderNet(eqx.Module):
    """Embedding followed by one cell. Output is the cell's hidden state."""

    embed: jax.Array
    cell: eqx.Module

    def __init__(
        self,
        cell_factory: CellFactory,
        *,
        vocab_size: int,
        embed_dim: int,
        init_scale: float,
        key: jax.Array,
    ):
        k1, k2 = jax.random.split(key)
        self.embed = _uniform(k1, (vocab_size, embed_dim), init_scale)
        self.cell = cell_factory(embed_dim, key=k2)

    @property
    def state_names(self) -> tuple[str, ...]:
        return self.cell.state_names

    @property
    def quantities(self) -> tuple[str, ...]:
        return ("wvec",) + self.cell.state_names

    def init_state(self, batch_size: int) -> State:
        return self.cell.init_state(batch_size)

    def __call__(self, state: State, x: jax.Array) -> tuple[State, jax.Array]:
        return self.cell(state, _embed(self.embed, x))


class DecoderNet(eqx.Module):
    """An `EncoderNet` core followed by an output projection and softmax."""

    core: EncoderNet
    proj_w: jax.Array
    proj_b: jax.Array

    def __init__(
        self,
        cell_factory: CellFactory,
        *,
        vocab_size: int,
        embed_dim: int,
        init_scale: float,
        key: jax.Array,
    ):
        k1, k2 = jax.random.split(key)
        self.core = EncoderNet(
            cell_factory, vocab_size=vocab_size, embed_dim=embed_dim, init_scale=init_scale, key=k1
        )
        self.proj_w = _uniform(k2, (vocab_size, self.core.cell.hidden), init_scale)
        self.proj_b = jnp.zeros((vocab_size,), dtype=jnp.float32)

    @property
    def state_names(self) -> tuple[str, ...]:
        return self.core.state_names

    @property
    def quantities(self) -> tuple[str, ...]:
        return self.core.quantities + ("tvec", "pvec")

    def init_state(self, batch_size: int) -> State:
        return self.core.init_state(batch_size)

    def __call__(self, state: State, x: jax.Array) -> tuple[State, jax.Array]:
        state, h = self.core(state, x)
        logits = h @ self.proj_w.T + self.proj_b
        return state, jax.nn.softmax(logits, axis=-1)


# ------------------------------ Step-oriented graph -------------------------


@dataclass
class _TapeEntry:
    """What one training forward step leaves behind for its backward step."""

    vjp: Callable[[Any], tuple[Any, State]]
    state: State
    output: jax.Array


class RecurrentGraph:
    """Stateful, step-at-a-time wrapper around a recurrent Equinox network.

    Mutable by design: it owns the current recurrent state, the VJP tape, the
    accumulated gradients and the optimizer state for its parameters.
    """

    def __init__(self, net: eqx.Module, *, name: str = "graph") -> None:
        self.name = name
        self.params, self.static = eqx.partition(net, eqx.is_array)
        self.quantities: tuple[str, ...] = tuple(net.quantities)
        self._forward_refs = frozenset(net.state_names)
        self.grads: Any = jax.tree_util.tree_map(jnp.zeros_like, self.params)
        self.opt_state: Any = None
        self.reset()

    # -- state ---------------------------------------------------------------

    def reset(self) -> None:
        """Return to the pre-sequence state and drop any recorded steps."""
        self.state: State | None = None
        # Slots set here (by the bridge) override the zero initial state.
        self.initial_state: State = {}
        # Gradient w.r.t. the state after the most recent un-popped step;
        # after the tape drains it is the gradient w.r.t. the initial state.
        self.state_grad: State | None = None
        self._tape: list[_TapeEntry] = []
        self._sp = 0

    @property
    def step_pointer(self) -> int:
        return self._sp

    def is_forward_referenced(self, n: int) -> bool:
        """Whether quantity `n` is read from the previous step."""
        return self.quantities[n] in self._forward_refs

    @property
    def net(self) -> eqx.Module:
        return eqx.combine(self.params, self.static)

    def _start_state(self, batch_size: int) -> State:
        state = dict(self.net.init_state(batch_size))
        state.update(self.initial_state)
        return state

    # -- forward / backward --------------------------------------------------

    def step_forward(self, x: Any, *, training: bool = False) -> jax.Array:
        """Run one step on the token batch `x` and return the step output.

        `x` is converted to a device array here, so the caller's buffer may be
        overwritten as soon as this returns.
        """
        x = jnp.asarray(x)
        if self.state is None:
            self.state = self._start_state(x.shape[0])
        static = self.static

        def fn(params: Any, state: State) -> tuple[State, jax.Array]:
            return eqx.combine(params, static)(state, x)

        if training:
            (new_state, out), vjp_fn = jax.vjp(fn, self.params, self.state)
            self._tape.append(_TapeEntry(vjp=vjp_fn, state=new_state, output=out))
        else:
            new_state, out = fn(self.params, self.state)
        self.state = new_state
        self._sp += 1
        return out

    def step_backward(self, target: Any = None, loss_fn: Callable[..., jax.Array] | None = None) -> None:
        """Pop the most recent step and accumulate its parameter gradients.

        :param target: Gold output for this step, or None when the step output
            carries no loss (encoder steps).
        :param loss_fn: `loss_fn(output, target) -> scalar`; required with a target.
        :raises RuntimeError: If there is no recorded step to pop.
        :raises ValueError: If a target is given without a loss function.
        """
        if not self._tape:
            raise RuntimeError(
                f"{self.name}: backward step with no recorded forward step "
                f"(step_pointer={self._sp}); was the forward pass run with training=True?"
            )
        entry = self._tape.pop()
        self._sp -= 1

        if target is None:
            d_out = jnp.zeros_like(entry.output)
        else:
            if loss_fn is None:
                raise ValueError("loss_fn is required when a target is given")
            d_out = jax.grad(loss_fn)(entry.output, jnp.asarray(target))

        carried = self.state_grad or {}
        d_state = {k: carried[k] if k in carried else jnp.zeros_like(v) for k, v in entry.state.items()}
        d_params, d_prev = entry.vjp((d_state, d_out))
        self.grads = jax.tree_util.tree_map(jnp.add, self.grads, d_params)
        self.state_grad = d_prev

    # -- parameters ----------------------------------------------------------

    def parameters(self) -> list[jax.Array]:
        return jax.tree_util.tree_leaves(self.params)

    def weight_norm(self) -> float:
        return float(optax.global_norm(self.params))

    def gradient_norm(self) -> float:
        return float(optax.global_norm(self.grads))

    def zero_grad(self) -> None:
        self.grads = jax.tree_util.tree_map(jnp.zeros_like, self.params)

    def apply_update(self, scale: float | None, tx: optax.GradientTransformation) -> None:
        """Apply one optimizer update from the accumulated gradients, then zero them.

        :param scale: Multiplier for the gradients (clipping), None for no scaling.
        :param tx: Optax transformation; its state is created on first use.
        """
        grads = self.grads
        if scale is not None:
            grads = jax.tree_util.tree_map(lambda g: g * scale, grads)
        if self.opt_state is None:
            self.opt_state = tx.init(self.params)
        updates, self.opt_state = tx.update(grads, self.opt_state, self.params)
        self.params = optax.apply_updates(self.params, updates)
        self.zero_grad()
