"""Structural tree growth.

The boosting loop never searches for splits itself: it hands the sampled
gradient rows of one iteration to a ``TreeTrainer`` and receives one finalized
tree (or ``None``) per requested tree id.

``HistogramTreeTrainer`` is the built-in trainer. It grows each tree
leaf-wise (best-first, LightGBM style) from per-node gradient histograms:

- Sequential columns try every threshold with missing values sent either way.
- Categorical columns sort the present categories by ``grad / (hess + lambda)``
  and try every prefix of that order as the left-hand category set.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

import numpy as np
from joblib import Parallel, delayed

from .._backends import build_histogram_cpu
from ._node import GrowingNode, Split
from ._tree import TreeModel

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._config import BoostConfig
    from .._distributed import PartitionedDataset

logger = logging.getLogger(__name__)


# =============================================================================
# Trainer contract
# =============================================================================

@dataclass(frozen=True)
class TrainerContext:
    """Per-iteration information passed to a tree trainer.

    Args:
        iteration: Zero-based boosting iteration.
        num_trees: Number of trees requested (``base_model_parallelism * raw_size``).
        raw_size: Raw score dimensions. Tree ``t`` fits dimension ``t % raw_size``.
        col_selectors: Per tree, the sorted column ids it may split on, or
            ``None`` for every column.
    """

    iteration: int
    num_trees: int
    raw_size: int
    col_selectors: tuple[NDArray | None, ...]

    def __post_init__(self):
        assert self.num_trees % self.raw_size == 0, (
            f"num_trees {self.num_trees} is not a multiple of raw_size {self.raw_size}"
        )
        assert len(self.col_selectors) == self.num_trees


@runtime_checkable
class TreeTrainer(Protocol):
    """Grows the trees of one boosting iteration.

    ``data`` holds ``(bins, tree_ids, grads)`` rows where ``grads`` interleaves
    ``[g0, h0, g1, h1, ...]`` over raw score dimensions and ``tree_ids`` lists
    the trees the row is sampled into.

    Returns a list of length ``context.num_trees``; ``None`` marks a tree for
    which no useful split was found.
    """

    def train(
        self, data: PartitionedDataset, context: TrainerContext
    ) -> list[TreeModel | None]:
        ...


def compute_leaf_value(
    sum_grad: float,
    sum_hess: float,
    reg_lambda: float = 1.0,
    reg_alpha: float = 0.0,
) -> float:
    """Optimal leaf value with L1/L2 regularization.

    Without L1: ``-G / (H + lambda)``. With L1 the gradient sum is
    soft-thresholded by ``alpha`` first.
    """
    if reg_alpha > 0.0:
        if abs(sum_grad) <= reg_alpha:
            return 0.0
        elif sum_grad > 0:
            return -(sum_grad - reg_alpha) / (sum_hess + reg_lambda)
        else:
            return -(sum_grad + reg_alpha) / (sum_hess + reg_lambda)
    return -sum_grad / (sum_hess + reg_lambda)


# =============================================================================
# Histogram trainer
# =============================================================================

class HistogramTreeTrainer:
    """Leaf-wise histogram tree trainer.

    Args:
        num_bins: Bins per column including the missing bin 0.
        max_depth: Maximum depth of a tree.
        max_leaves: Maximum number of leaves of a tree.
        min_gain: Minimum gain of an accepted split.
        min_node_hess: Minimum hessian sum on each side of a split.
        reg_alpha: L1 regularization.
        reg_lambda: L2 regularization.
        cat_cols: Column ids split by category sets instead of thresholds.
        n_jobs: Trees grown in parallel within one iteration.
    """

    def __init__(
        self,
        num_bins: int,
        max_depth: int = 5,
        max_leaves: int = 1000,
        min_gain: float = 0.0,
        min_node_hess: float = 1.0,
        reg_alpha: float = 0.0,
        reg_lambda: float = 1.0,
        cat_cols: Sequence[int] = (),
        n_jobs: int = 1,
    ):
        self.num_bins = num_bins
        self.max_depth = max_depth
        self.max_leaves = max_leaves
        self.min_gain = min_gain
        self.min_node_hess = min_node_hess
        self.reg_alpha = reg_alpha
        self.reg_lambda = reg_lambda
        self.cat_cols = frozenset(cat_cols)
        self.n_jobs = n_jobs

    @classmethod
    def from_config(cls, config: BoostConfig, num_bins: int) -> HistogramTreeTrainer:
        return cls(
            num_bins=num_bins,
            max_depth=config.max_depth,
            max_leaves=config.max_leaves,
            min_gain=config.min_gain,
            min_node_hess=config.min_node_hess,
            reg_alpha=config.reg_alpha,
            reg_lambda=config.reg_lambda,
            cat_cols=config.cat_cols,
            n_jobs=config.n_jobs,
        )

    def train(
        self, data: PartitionedDataset, context: TrainerContext
    ) -> list[TreeModel | None]:
        bins_rows, id_rows, grad_rows = [], [], []
        for bins, tree_ids, grads in data.iterate():
            bins_rows.append(bins)
            id_rows.append(tree_ids)
            grad_rows.append(grads)

        if not bins_rows:
            return [None] * context.num_trees

        matrix = np.ascontiguousarray(np.stack(bins_rows), dtype=np.int32)
        grads = np.stack(grad_rows).astype(np.float64)
        assert grads.shape[1] == 2 * context.raw_size, (
            f"gradient width {grads.shape[1]} does not match raw_size {context.raw_size}"
        )

        lengths = np.array([len(ids) for ids in id_rows], dtype=np.int64)
        row_of = np.repeat(np.arange(matrix.shape[0], dtype=np.int64), lengths)
        flat_ids = np.concatenate(id_rows).astype(np.int64)
        all_cols = np.arange(matrix.shape[1], dtype=np.int64)

        def _grow_one(t: int) -> TreeModel | None:
            rows = row_of[flat_ids == t]
            if rows.shape[0] == 0:
                return None
            k = t % context.raw_size
            cols = context.col_selectors[t]
            cols = all_cols if cols is None else np.asarray(cols, dtype=np.int64)
            return self.grow(matrix, rows, grads[:, 2 * k], grads[:, 2 * k + 1], cols)

        if self.n_jobs == 1 or context.num_trees == 1:
            return [_grow_one(t) for t in range(context.num_trees)]
        return Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(_grow_one)(t) for t in range(context.num_trees)
        )

    def grow(
        self,
        matrix: NDArray,
        rows: NDArray,
        grad: NDArray,
        hess: NDArray,
        cols: NDArray,
    ) -> TreeModel | None:
        """Grow one tree over ``rows`` of ``matrix``.

        Returns ``None`` when the root cannot be split.
        """
        root = GrowingNode.create(0)
        root.prediction = self._leaf_value(grad[rows], hess[rows])
        split = self.find_split(matrix, rows, grad, hess, cols)
        if split is None:
            return None

        # (negative gain, node id) orders the heap; node ids are unique
        candidates = [(-split.gain, root.node_id, root, rows, 0, split)]
        next_id = 1
        n_leaves = 1

        while candidates and n_leaves < self.max_leaves:
            _, _, node, node_rows, depth, split = heapq.heappop(candidates)

            mask = go_left_mask(matrix[node_rows, split.col_id], split)
            node.is_leaf = False
            node.split = split
            node.left = GrowingNode.create(next_id)
            node.right = GrowingNode.create(next_id + 1)
            next_id += 2
            n_leaves += 1

            for child, child_rows in ((node.left, node_rows[mask]), (node.right, node_rows[~mask])):
                child.prediction = self._leaf_value(grad[child_rows], hess[child_rows])
                if depth + 1 >= self.max_depth:
                    continue
                child_split = self.find_split(matrix, child_rows, grad, hess, cols)
                if child_split is not None:
                    heapq.heappush(
                        candidates,
                        (-child_split.gain, child.node_id, child, child_rows, depth + 1, child_split),
                    )

        return TreeModel(root.finalize())

    def find_split(
        self,
        matrix: NDArray,
        rows: NDArray,
        grad: NDArray,
        hess: NDArray,
        cols: NDArray,
    ) -> Split | None:
        """Best split of ``rows`` over ``cols``, or ``None`` if nothing beats ``min_gain``."""
        if rows.shape[0] < 2 or cols.shape[0] == 0:
            return None

        hist_grad, hist_hess = build_histogram_cpu(
            matrix, rows, grad, hess, cols, self.num_bins
        )
        total_grad = float(hist_grad[0].sum())
        total_hess = float(hist_hess[0].sum())
        parent_score = self._score(total_grad, total_hess)

        best: Split | None = None
        for k, col in enumerate(cols):
            col = int(col)
            if col in self.cat_cols:
                candidate = self._categorical_split(
                    col, hist_grad[k], hist_hess[k], total_grad, total_hess, parent_score
                )
            else:
                candidate = self._sequential_split(
                    col, hist_grad[k], hist_hess[k], total_grad, total_hess, parent_score
                )
            if candidate is not None and (best is None or candidate.gain > best.gain):
                best = candidate

        if best is None or best.gain <= 0.0 or best.gain < self.min_gain:
            return None
        return best

    # -------------------------------------------------------------------------
    # Split search per column
    # -------------------------------------------------------------------------

    def _sequential_split(
        self, col, hg, hh, total_grad, total_hess, parent_score
    ) -> Split | None:
        # threshold th sends real bins 1..th left
        cum_grad = np.cumsum(hg[1:])
        cum_hess = np.cumsum(hh[1:])

        best = None
        for missing_go_left in (True, False):
            left_grad = cum_grad + (hg[0] if missing_go_left else 0.0)
            left_hess = cum_hess + (hh[0] if missing_go_left else 0.0)
            gains = self._gains(left_grad, left_hess, total_grad, total_hess, parent_score)
            i = int(np.argmax(gains))
            if np.isfinite(gains[i]) and (best is None or gains[i] > best[0]):
                best = (float(gains[i]), missing_go_left, i + 1)

        if best is None:
            return None
        gain, missing_go_left, threshold = best
        return Split(col, True, missing_go_left, (threshold,), True, gain)

    def _categorical_split(
        self, col, hg, hh, total_grad, total_hess, parent_score
    ) -> Split | None:
        present = np.nonzero(hh[1:] > 0)[0] + 1
        if present.shape[0] == 0:
            return None
        order = present[np.argsort(hg[present] / (hh[present] + self.reg_lambda), kind="stable")]
        cum_grad = np.cumsum(hg[order])
        cum_hess = np.cumsum(hh[order])

        best = None
        for missing_go_left in (True, False):
            left_grad = cum_grad + (hg[0] if missing_go_left else 0.0)
            left_hess = cum_hess + (hh[0] if missing_go_left else 0.0)
            gains = self._gains(left_grad, left_hess, total_grad, total_hess, parent_score)
            i = int(np.argmax(gains))
            if np.isfinite(gains[i]) and (best is None or gains[i] > best[0]):
                best = (float(gains[i]), missing_go_left, i + 1)

        if best is None:
            return None
        gain, missing_go_left, n_left = best
        categories = tuple(sorted(int(c) for c in order[:n_left]))
        return Split(col, False, missing_go_left, categories, True, gain)

    def _gains(self, left_grad, left_hess, total_grad, total_hess, parent_score) -> NDArray:
        right_grad = total_grad - left_grad
        right_hess = total_hess - left_hess
        gains = (
            self._score(left_grad, left_hess)
            + self._score(right_grad, right_hess)
            - parent_score
        )
        min_hess = max(self.min_node_hess, 1e-12)
        valid = (left_hess >= min_hess) & (right_hess >= min_hess)
        return np.where(valid, gains, -np.inf)

    def _score(self, g, h):
        g = np.sign(g) * np.maximum(np.abs(g) - self.reg_alpha, 0.0)
        return g * g / (h + self.reg_lambda)

    def _leaf_value(self, grad: NDArray, hess: NDArray) -> float:
        return compute_leaf_value(
            float(grad.sum()), float(hess.sum()), self.reg_lambda, self.reg_alpha
        )

    def __repr__(self) -> str:
        return (
            f"HistogramTreeTrainer(num_bins={self.num_bins}, max_depth={self.max_depth}, "
            f"max_leaves={self.max_leaves})"
        )


def go_left_mask(bins: NDArray, split: Split) -> NDArray:
    """Vectorized ``split.go_left`` over one column of bins."""
    bins = np.asarray(bins)
    if split.is_seq:
        raw = bins <= split.data[0]
    else:
        raw = np.isin(bins, np.asarray(split.data, dtype=bins.dtype))
    raw = np.where(bins == 0, split.missing_go_left, raw)
    return raw if split.left else ~raw
