"""Gradient blocks and row sampling.

For every instance block the active raw scores are turned into interleaved
``[g0, h0, g1, h1, ...]`` rows scaled by the instance weight. Each base learner
(unit) samples rows independently:

- ``sub_sample == 1``: every row belongs to every unit.
- block sampling: a whole block is in or out for a unit.
- row sampling: each row is drawn per unit; rows in no unit are dropped.

Sampling draws come from ``default_rng([seed, iteration, partition, unit])``,
so recomputing a partition reproduces the same rows.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

import numpy as np

from ._blocks import ArrayBlock
from ._scores import active_raw_block

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._config import BoostConfig
    from .._distributed import PartitionedDataset
    from ._blocks import InstanceBlock


def unit_tree_ids(units: Sequence[int], raw_size: int) -> NDArray:
    """Tree ids of ``units``: unit ``u`` owns trees ``u*raw_size .. u*raw_size + raw_size - 1``."""
    units = np.asarray(units, dtype=np.int64)
    if raw_size == 1:
        return units
    return (units[:, None] * raw_size + np.arange(raw_size, dtype=np.int64)).ravel()


def compute_gradients(
    block: InstanceBlock,
    raw: NDArray,
    weights: Sequence[float],
    raw_base: NDArray,
    config: BoostConfig,
    dropped: frozenset[int],
) -> NDArray:
    """Weighted interleaved gradients of one block, shape ``(size, 2 * raw_size)``."""
    raw_size = raw_base.shape[0]
    assert raw.shape[0] == block.size, (
        f"raw score block has {raw.shape[0]} rows, instance block has {block.size}"
    )

    active = active_raw_block(raw, weights, raw_base, config, dropped)
    score = config.objective.transform(np.asarray(active, dtype=np.float64))
    grad, hess = config.objective.compute(block.label_matrix, score)
    grad = np.asarray(grad)
    hess = np.asarray(hess)
    assert grad.shape == (block.size, raw_size) and hess.shape == (block.size, raw_size), (
        f"objective returned grad {grad.shape} / hess {hess.shape}, "
        f"expected ({block.size}, {raw_size})"
    )

    out = np.empty((block.size, 2 * raw_size), dtype=config.dtype)
    out[:, 0::2] = grad * block.weights[:, None]
    out[:, 1::2] = hess * block.weights[:, None]
    return out


def compute_gradient_blocks(
    blocks: PartitionedDataset,
    raw_scores: PartitionedDataset,
    weights: Sequence[float],
    raw_base: NDArray,
    config: BoostConfig,
    iteration: int,
    dropped: frozenset[int],
) -> tuple[PartitionedDataset, PartitionedDataset]:
    """Sampled gradient rows for the tree trainer.

    Returns:
        rows: ``(bins, tree_ids, grads)`` per sampled row, rows without any
            tree filtered out.
        grad_blocks: Cached ``(tree_id_block, grad_block)`` per instance block.
            Release with ``unpersist()`` once the trees are grown.
    """
    weights = tuple(float(w) for w in weights)
    raw_base = np.array(raw_base, dtype=config.dtype)
    raw_size = raw_base.shape[0]
    num_units = config.base_model_parallelism
    all_units = np.arange(num_units, dtype=np.int64)
    all_trees = unit_tree_ids(all_units, raw_size)

    def _sample_partition(part_idx, pairs):
        rngs = [
            np.random.default_rng([config.seed, iteration, part_idx, i])
            for i in range(num_units)
        ]
        out = []
        for block, raw in pairs:
            if config.sub_sample == 1:
                grads = compute_gradients(block, raw, weights, raw_base, config, dropped)
                tree_ids = ArrayBlock(np.tile(all_trees, block.size),
                                      np.full(block.size, all_trees.shape[0]))
                out.append((tree_ids, _grad_block(grads)))

            elif config.sample_blocks:
                picked = np.array([rng.random() < config.sub_sample for rng in rngs], dtype=bool)
                units = all_units[picked]
                if units.shape[0] == 0:
                    out.append((ArrayBlock.empty(np.int64), ArrayBlock.empty(config.dtype)))
                    continue
                grads = compute_gradients(block, raw, weights, raw_base, config, dropped)
                ids = unit_tree_ids(units, raw_size)
                tree_ids = ArrayBlock(np.tile(ids, block.size), np.full(block.size, ids.shape[0]))
                out.append((tree_ids, _grad_block(grads)))

            else:
                # (size, num_units) membership, one column of draws per unit
                draws = np.column_stack([rng.random(block.size) for rng in rngs])
                member = draws < config.sub_sample
                grads = compute_gradients(block, raw, weights, raw_base, config, dropped)
                tree_ids = ArrayBlock.build(
                    (unit_tree_ids(all_units[m], raw_size) for m in member), dtype=np.int64
                )
                grad_rows = ArrayBlock.build(
                    (g if m.any() else g[:0] for g, m in zip(grads, member)),
                    dtype=config.dtype,
                )
                out.append((tree_ids, grad_rows))
        return out

    grad_blocks = blocks.zip(raw_scores).map_partitions(
        _sample_partition, name=f"Gradient blocks (iteration {iteration})"
    ).persist()

    def _rows(_, pairs):
        out = []
        for block, (tree_ids, grads) in pairs:
            if tree_ids.is_empty:
                assert grads.is_empty
                continue
            assert block.size == tree_ids.size == grads.size, (
                f"block size {block.size}, tree id rows {tree_ids.size}, gradient rows {grads.size}"
            )
            for bins, ids, g in zip(block.vector_iterator(), tree_ids.iterator(), grads.iterator()):
                if ids.shape[0] > 0:
                    out.append((bins, ids, g))
        return out

    rows = blocks.zip(grad_blocks).map_partitions(
        _rows, name=f"Gradients with tree ids (iteration {iteration})"
    )
    return rows, grad_blocks


def _grad_block(grads: NDArray) -> ArrayBlock:
    return ArrayBlock(grads.ravel(), np.full(grads.shape[0], grads.shape[1]))
