"""Pytree helpers used by training, gradient checks and tests.

Trees here come from `eqx.partition`, so they contain `None` where a module
field is static. `jax.tree_util` skips those, and so do these helpers.
"""

from __future__ import annotations

from typing import Any

import jax
import jax.numpy as jnp
import numpy as np


def param_count(params: Any) -> int:
    """Total number of scalar entries in a params pytree."""
    return sum(int(x.size) for x in jax.tree_util.tree_leaves(params) if hasattr(x, "size"))


def tree_allclose(a: Any, b: Any, *, rtol: float = 1e-6, atol: float = 1e-6) -> bool:
    """True if both trees have the same structure and element-wise close arrays."""
    la, ta = jax.tree_util.tree_flatten(a)
    lb, tb = jax.tree_util.tree_flatten(b)
    if ta != tb:
        return False
    return all(x.shape == y.shape and bool(jnp.allclose(x, y, rtol=rtol, atol=atol)) for x, y in zip(la, lb))


def tree_sub(a: Any, b: Any) -> Any:
    return jax.tree_util.tree_map(jnp.subtract, a, b)


def leaf_entries(tree: Any) -> list[tuple[int, tuple[int, ...]]]:
    """(leaf index, shape) for every array leaf, in flatten order."""
    return [(i, tuple(x.shape)) for i, x in enumerate(jax.tree_util.tree_leaves(tree))]


def tree_add_at(tree: Any, leaf: int, index: tuple[int, ...], delta: float) -> Any:
    """Return a copy of `tree` with `delta` added to one entry of one leaf."""
    leaves, treedef = jax.tree_util.tree_flatten(tree)
    leaves = list(leaves)
    leaves[leaf] = leaves[leaf].at[index].add(delta)
    return jax.tree_util.tree_unflatten(treedef, leaves)


def tree_get_at(tree: Any, leaf: int, index: tuple[int, ...]) -> float:
    return float(np.asarray(jax.tree_util.tree_leaves(tree)[leaf])[index])
