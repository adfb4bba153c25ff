"""Loss functions over decoder output distributions.

Contract: `loss_fn(ypred, ygold) -> scalar` where
  ypred: [B, V] probabilities (decoder softmax output)
  ygold: [B] token ids (sparse buffers) or [B, V] one-hot rows (dense buffers)

Losses must be differentiable in `ypred` with `jax.grad`; the decoder's
backward step uses that gradient as the output error.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

_EPS = 1e-12


def _gold_ids(ygold: jax.Array) -> jax.Array:
    if ygold.ndim == 1:
        return ygold.astype(jnp.int32)
    return jnp.argmax(ygold, axis=-1).astype(jnp.int32)


def softmax_loss(ypred: jax.Array, ygold: jax.Array) -> jax.Array:
    """Mean negative log-likelihood of the gold tokens over the batch.

    :param jax.Array ypred: Predicted distributions [B, V].
    :param jax.Array ygold: Gold ids [B] or one-hot [B, V].
    :return jax.Array: Scalar loss.
    """
    logp = jnp.log(ypred + _EPS)
    if ygold.ndim == 1:
        picked = jnp.take_along_axis(logp, ygold.astype(jnp.int32)[:, None], axis=-1)[:, 0]
    else:
        picked = jnp.sum(ygold.astype(logp.dtype) * logp, axis=-1)
    return -jnp.mean(picked)


def zero_one_loss(ypred: jax.Array, ygold: jax.Array) -> jax.Array:
    """Fraction of rows whose argmax differs from the gold token.

    Not differentiable; use for evaluation only.
    """
    pred = jnp.argmax(ypred, axis=-1)
    return jnp.mean((pred != _gold_ids(ygold)).astype(jnp.float32))
