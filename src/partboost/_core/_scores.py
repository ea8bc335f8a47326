"""Raw score maintenance.

Every ``InstanceBlock`` is paired with a raw score block of shape
``(size, width)``:

- GBTree: ``width == raw_size``, the weighted running sum
  ``raw_base + sum_j weights[j] * tree_j(x)``.
- DART: ``width == raw_size + num_trees``. The first ``raw_size`` columns hold
  the weighted sum (prefix), the rest the unweighted prediction of every tree
  (suffix), so dropout can re-weight trees without re-traversing them.

Tree ``j`` contributes to raw dimension ``j % raw_size``.

Score blocks are values: updates always return new arrays.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._config import BoostConfig
    from .._distributed import PartitionedDataset
    from ._blocks import InstanceBlock
    from ._tree import TreeModel


# =============================================================================
# Per-block
# =============================================================================

def _base_block(raw_base: NDArray, size: int, width: int, dtype) -> NDArray:
    raw_size = raw_base.shape[0]
    out = np.zeros((size, width), dtype=dtype)
    out[:, :raw_size] = raw_base
    return out


def compute_raw_block(
    block: InstanceBlock,
    trees: Sequence[TreeModel],
    weights: Sequence[float],
    raw_base: NDArray,
    config: BoostConfig,
) -> NDArray:
    """Raw scores of one block from scratch."""
    raw_size = raw_base.shape[0]
    assert len(trees) == len(weights)
    assert len(trees) % raw_size == 0, (
        f"{len(trees)} trees is not a multiple of raw_size {raw_size}"
    )

    width = raw_size + len(trees) if config.is_dart else raw_size
    out = _base_block(raw_base, block.size, width, config.dtype)

    for j, tree in enumerate(trees):
        p = tree.predict_block(block.matrix)
        if config.is_dart:
            out[:, raw_size + j] = p
        out[:, j % raw_size] += p * weights[j]
    return out


def update_raw_block(
    block: InstanceBlock,
    raw: NDArray,
    new_trees: Sequence[TreeModel],
    weights: Sequence[float],
    raw_base: NDArray,
    config: BoostConfig,
    keep_weights: bool,
) -> NDArray:
    """Raw scores of one block after appending ``new_trees``.

    Args:
        raw: Previous raw scores of the block.
        new_trees: Trees appended this iteration.
        weights: Weights of all trees, old ones first.
        keep_weights: ``False`` when old weights changed (DART dropout); the
            prefix is then rebuilt from the stored suffix.
    """
    raw_size = raw_base.shape[0]
    num_old = len(weights) - len(new_trees)
    assert len(new_trees) % raw_size == 0
    assert len(weights) % raw_size == 0
    assert raw.shape[0] == block.size, (
        f"raw score block has {raw.shape[0]} rows, instance block has {block.size}"
    )

    if not config.is_dart:
        assert raw.shape[1] == raw_size
        out = np.array(raw, dtype=config.dtype)
        for j, tree in enumerate(new_trees):
            out[:, j % raw_size] += tree.predict_block(block.matrix) * weights[num_old + j]
        return out

    old_width = raw_size + num_old
    assert raw.shape[1] == old_width, (
        f"raw score block has width {raw.shape[1]}, expected {old_width}"
    )
    out = np.zeros((block.size, raw_size + len(weights)), dtype=config.dtype)
    out[:, :old_width] = raw
    for j, tree in enumerate(new_trees):
        out[:, old_width + j] = tree.predict_block(block.matrix)

    if keep_weights:
        for j in range(len(new_trees)):
            out[:, j % raw_size] += out[:, old_width + j] * weights[num_old + j]
    else:
        out[:, :raw_size] = raw_base
        for j in range(len(weights)):
            out[:, j % raw_size] += out[:, raw_size + j] * weights[j]
    return out


def active_raw_block(
    raw: NDArray,
    weights: Sequence[float],
    raw_base: NDArray,
    config: BoostConfig,
    dropped: frozenset[int],
) -> NDArray:
    """Raw scores the gradients are computed from, shape ``(size, raw_size)``.

    Under DART dropout this is the base plus every tree outside ``dropped``.
    """
    raw_size = raw_base.shape[0]
    if not config.is_dart:
        return raw
    if not dropped:
        return raw[:, :raw_size]

    out = np.empty((raw.shape[0], raw_size), dtype=raw.dtype)
    out[:] = raw_base
    for j in range(raw.shape[1] - raw_size):
        if j not in dropped:
            out[:, j % raw_size] += raw[:, raw_size + j] * weights[j]
    return out


# =============================================================================
# Per-dataset
# =============================================================================

def compute_raw_scores(
    blocks: PartitionedDataset,
    trees: Sequence[TreeModel],
    weights: Sequence[float],
    raw_base: NDArray,
    config: BoostConfig,
) -> PartitionedDataset:
    """Cold computation of the raw scores of every block."""
    trees = tuple(trees)
    weights = tuple(float(w) for w in weights)
    raw_base = np.array(raw_base, dtype=config.dtype)
    return blocks.map(
        lambda block: compute_raw_block(block, trees, weights, raw_base, config),
        name=f"{blocks.name} raw scores",
    )


def update_raw_scores(
    blocks: PartitionedDataset,
    raw_scores: PartitionedDataset,
    new_trees: Sequence[TreeModel],
    weights: Sequence[float],
    raw_base: NDArray,
    config: BoostConfig,
    keep_weights: bool,
) -> PartitionedDataset:
    """Incremental raw scores after appending ``new_trees``.

    ``weights`` is copied, so later rescaling does not leak into the lazily
    computed result.
    """
    new_trees = tuple(new_trees)
    weights = tuple(float(w) for w in weights)
    raw_base = np.array(raw_base, dtype=config.dtype)
    return blocks.zip(raw_scores).map(
        lambda pair: update_raw_block(
            pair[0], pair[1], new_trees, weights, raw_base, config, keep_weights
        ),
        name=f"{blocks.name} raw scores",
    )
