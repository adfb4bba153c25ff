"""Loss functions over decoder distributions."""

from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np

from s2s.loss import softmax_loss, zero_one_loss


def test_softmax_loss_sparse_matches_dense() -> None:
    ypred = jax.nn.softmax(jnp.array([[1.0, 2.0, 0.5], [0.1, 0.2, 3.0]]), axis=-1)
    ids = jnp.array([1, 2])
    onehot = jax.nn.one_hot(ids, 3)
    sparse = float(softmax_loss(ypred, ids))
    dense = float(softmax_loss(ypred, onehot))
    expected = -np.mean(np.log(np.asarray(ypred)[[0, 1], [1, 2]]))
    np.testing.assert_allclose(sparse, expected, rtol=1e-5)
    np.testing.assert_allclose(dense, expected, rtol=1e-5)


def test_softmax_loss_is_differentiable_in_prediction() -> None:
    ypred = jnp.full((2, 4), 0.25)
    g = jax.grad(softmax_loss)(ypred, jnp.array([0, 3]))
    assert g.shape == (2, 4)
    assert float(g[0, 0]) < 0 and float(g[0, 1]) == 0.0


def test_zero_one_loss_counts_wrong_rows() -> None:
    ypred = jnp.array([[0.9, 0.1], [0.2, 0.8], [0.6, 0.4]])
    np.testing.assert_allclose(float(zero_one_loss(ypred, jnp.array([0, 0, 0]))), 1 / 3, rtol=1e-6)
