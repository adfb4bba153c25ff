"""Shared runtime types.

Keep this file small: it defines the **contracts** between the data stream, the
loop and the model.

**Stream contract**

The minibatch generator yields `(x, y)` pairs where:
  x: token buffer for one timestep, [B] int32 (sparse) or [B, V] one-hot (dense)
  y: `NO_TARGET` while the encoder consumes source tokens,
     `Target(buffer)` while the decoder consumes target tokens.

Buffers are reused in place by the generator. Anything that outlives the
current step must be copied.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Union

import numpy as np


class Phase(enum.Enum):
    """Which graph the loop is currently feeding."""

    ENCODING = "encoding"
    DECODING = "decoding"


@dataclass(frozen=True)
class NoTarget:
    """Marker for an encoder step (there is nothing to predict)."""

    def __repr__(self) -> str:
        return "NO_TARGET"


NO_TARGET = NoTarget()


@dataclass(frozen=True)
class Target:
    """A decoder step target. `value` is the generator's live buffer."""

    value: np.ndarray


TargetSlot = Union[Target, NoTarget]
StreamItem = tuple[np.ndarray, TargetSlot]


@dataclass
class LossStats:
    """Running (total, count) loss statistic."""

    total: float = 0.0
    count: int = 0

    def add(self, value: float) -> None:
        self.total += float(value)
        self.count += 1

    @property
    def mean(self) -> float:
        """Mean loss, NaN when nothing was accumulated."""
        if self.count == 0:
            return math.nan
        return self.total / self.count


@dataclass
class NormTracker:
    """Running maxima of weight norm and gradient norm across updates."""

    max_weight_norm: float = 0.0
    max_grad_norm: float = 0.0

    def update(self, weight_norm: float, grad_norm: float) -> None:
        self.max_weight_norm = max(self.max_weight_norm, float(weight_norm))
        self.max_grad_norm = max(self.max_grad_norm, float(grad_norm))
