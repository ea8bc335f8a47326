"""Tree weights and DART dropout bookkeeping.

Reference: Rashmi & Gilad-Bachrach, "DART: Dropouts meet Multiple Additive
Regression Trees" (AISTATS 2015).

Trees are grouped in base learners (units) of ``raw_size`` trees trained
together; dropout always removes whole units. Weights are kept per tree:

- GBTree: every new tree gets ``step_size``.
- DART, nothing dropped: every new tree gets ``1``.
- DART, ``k`` units dropped: every new tree gets ``1 / (k + step_size)`` and
  every dropped tree is scaled by ``k / (k + step_size)``. The scaling is
  permanent, so a tree dropped in several iterations is scaled several times.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    import numpy as np

    from .._config import BoostConfig
    from ._state import BoostingState
    from ._tree import TreeModel

logger = logging.getLogger(__name__)


def compute_num_drops(
    num_units: int,
    drop_rate: float,
    min_drop: int,
    max_drop: int,
) -> int:
    """Number of units to drop: ``ceil(num_units * drop_rate)`` clamped by
    ``min_drop``, then ``max_drop``, then ``num_units``.

    Example:
        >>> compute_num_drops(10, 0.25, 1, 5)
        3
        >>> compute_num_drops(2, 0.1, 4, 50)
        2
    """
    k = int(math.ceil(num_units * drop_rate))
    k = max(k, min_drop)
    k = min(k, max_drop)
    k = min(k, num_units)
    return k


def select_dropped(
    num_trees: int,
    raw_size: int,
    config: BoostConfig,
    rng: np.random.Generator,
) -> frozenset[int]:
    """Pick the trees excluded from this iteration's raw scores.

    With probability ``drop_skip`` nothing is dropped. Otherwise ``k`` units
    are chosen uniformly without replacement and all their trees returned.

    Args:
        num_trees: Trees built so far.
        raw_size: Trees per unit.
        config: Supplies ``drop_rate``, ``drop_skip``, ``min_drop``, ``max_drop``.
        rng: Dropout generator, advanced on every call.
    """
    if config.drop_skip >= 1 or rng.random() >= 1 - config.drop_skip:
        return frozenset()

    assert num_trees % raw_size == 0, (
        f"num_trees {num_trees} is not a multiple of raw_size {raw_size}"
    )
    num_units = num_trees // raw_size
    k = compute_num_drops(num_units, config.drop_rate, config.min_drop, config.max_drop)
    if k <= 0:
        return frozenset()

    units = rng.permutation(num_units)[:k]
    return frozenset(
        int(t) for u in units for t in range(raw_size * int(u), raw_size * (int(u) + 1))
    )


def append_trees(
    state: BoostingState,
    new_trees: Sequence[TreeModel],
    dropped: frozenset[int],
    config: BoostConfig,
) -> None:
    """Append ``new_trees`` to ``state`` with their weights and rescale dropped trees."""
    weights = state.weights
    state.trees.extend(new_trees)

    if not config.is_dart:
        weights.extend([config.step_size] * len(new_trees))
        return

    if not dropped:
        weights.extend([1.0] * len(new_trees))
        return

    assert len(dropped) % config.raw_size == 0, (
        f"{len(dropped)} dropped trees is not a multiple of raw_size {config.raw_size}"
    )
    k = len(dropped) // config.raw_size
    weights.extend([1.0 / (k + config.step_size)] * len(new_trees))

    scale = k / (k + config.step_size)
    updates = []
    for i in sorted(dropped):
        new_weight = weights[i] * scale
        updates.append(f"Tree {i}: {weights[i]:.6g} -> {new_weight:.6g}")
        weights[i] = new_weight
    logger.info("Weights updated: (%s)", ", ".join(updates))
