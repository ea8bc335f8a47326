"""Trained model artifact.

A ``GBMModel`` is the base raw score plus an ordered list of ``(tree, weight)``
pairs. Tree ``j`` adds ``weight_j * tree_j(x)`` to raw dimension
``j % raw_size``; the objective maps the raw sum to a prediction.

Models persist as a flat node table (one row per node, tagged with its tree
id) and a weight table, so they can be stored in any tabular format and
rebuilt regardless of row order.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Sequence

import joblib
import numpy as np

from ._core._node import NodeRecord
from ._core._tree import TreeModel

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from ._discretizer import QuantileDiscretizer
    from ._loss import Objective

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 1


class GBMModel:
    """Gradient boosted tree ensemble.

    Args:
        objective: Objective the model was trained with.
        discretizer: Fitted discretizer mapping raw features to bins.
        raw_base: Base raw score, shape ``(raw_size,)``.
        trees: Trees in training order.
        weights: One weight per tree.

    Example:
        >>> model = GBM(BoostConfig(objective=SquaredError())).fit(X, y)
        >>> model.predict(X[:5])
    """

    def __init__(
        self,
        objective: Objective,
        discretizer: QuantileDiscretizer,
        raw_base: ArrayLike,
        trees: Sequence[TreeModel],
        weights: Sequence[float],
    ):
        raw_base = np.array(raw_base, dtype=np.float64).ravel()
        raw_base.setflags(write=False)
        if len(trees) != len(weights):
            raise ValueError(f"{len(trees)} trees but {len(weights)} weights")
        if raw_base.shape[0] != objective.raw_size:
            raise ValueError(
                f"raw_base has {raw_base.shape[0]} entries, objective expects {objective.raw_size}"
            )
        if len(trees) % objective.raw_size != 0:
            raise ValueError(
                f"{len(trees)} trees is not a multiple of raw_size {objective.raw_size}"
            )

        self.objective = objective
        self.discretizer = discretizer
        self.raw_base = raw_base
        self.trees = tuple(trees)
        self.weights = tuple(float(w) for w in weights)

    @property
    def raw_size(self) -> int:
        return self.raw_base.shape[0]

    @property
    def num_trees(self) -> int:
        return len(self.trees)

    # =========================================================================
    # Prediction
    # =========================================================================

    def predict_raw_bins(self, bins: ArrayLike, num_trees: int | None = None) -> NDArray:
        """Raw scores of already binned rows, shape ``(n_samples, raw_size)``."""
        bins = np.atleast_2d(np.asarray(bins, dtype=np.int32))
        n_trees = self.num_trees if num_trees is None else min(num_trees, self.num_trees)

        raw = np.tile(self.raw_base, (bins.shape[0], 1))
        for j in range(n_trees):
            raw[:, j % self.raw_size] += self.weights[j] * self.trees[j].predict_block(bins)
        return raw

    def predict_raw(self, X: ArrayLike, num_trees: int | None = None) -> NDArray:
        """Raw scores, shape ``(n_samples, raw_size)``.

        Args:
            X: Raw features, shape (n_samples, n_features).
            num_trees: Use only the first ``num_trees`` trees.
        """
        return self.predict_raw_bins(self._bin(X), num_trees)

    def predict(self, X: ArrayLike, num_trees: int | None = None) -> NDArray:
        """Transformed predictions; shape ``(n_samples,)`` when ``raw_size == 1``."""
        score = self.objective.transform(self.predict_raw(X, num_trees))
        return score[:, 0] if self.raw_size == 1 else score

    def leaf(self, X: ArrayLike) -> NDArray:
        """Leaf id reached in every tree, shape ``(n_samples, num_trees)``."""
        bins = self._bin(X)
        out = np.empty((bins.shape[0], self.num_trees), dtype=np.int64)
        for j, tree in enumerate(self.trees):
            out[:, j] = tree.index_block(bins)
        return out

    def index(self, bins: Sequence[int]) -> list[int]:
        """Leaf id of one binned row in every tree."""
        return [tree.index(bins) for tree in self.trees]

    def predict_bins(self, bins: Sequence[int]) -> NDArray:
        """Raw score of one binned row, by walking the node objects."""
        raw = np.array(self.raw_base)
        for j, tree in enumerate(self.trees):
            raw[j % self.raw_size] += self.weights[j] * tree.predict(bins)
        return raw

    def feature_importances(self) -> NDArray:
        """Split frequency per column, normalized to sum to 1 (all zeros without splits)."""
        counts = np.zeros(self.discretizer.num_cols, dtype=np.float64)
        for tree in self.trees:
            for col in tree.used_columns():
                counts[col] += 1
        total = counts.sum()
        return counts / total if total > 0 else counts

    def _bin(self, X: ArrayLike) -> NDArray:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2:
            raise ValueError(f"X must be 2D (n_samples, n_features), got shape {X.shape}")
        return self.discretizer.transform(X)

    # =========================================================================
    # Node table serialization
    # =========================================================================

    def to_node_table(self) -> list[tuple]:
        """One row per node: ``(tree_id, id, col_id, is_seq, missing_go_left,
        data, left, gain, left_id, right_id, weight, leaf_id)``."""
        rows = []
        for tree_id, tree in enumerate(self.trees):
            rows.extend((tree_id,) + r.as_tuple() for r in tree.to_records())
        return rows

    def to_weight_table(self) -> list[tuple[int, float]]:
        return list(enumerate(self.weights))

    @classmethod
    def from_node_table(
        cls,
        objective: Objective,
        discretizer: QuantileDiscretizer,
        raw_base: ArrayLike,
        node_rows: Iterable[Sequence[Any]],
        weight_rows: Iterable[tuple[int, float]],
    ) -> GBMModel:
        """Rebuild a model from node and weight tables in any row order."""
        records = defaultdict(list)
        for row in node_rows:
            tree_id, *fields = row
            records[int(tree_id)].append(_record_from_fields(fields))

        weights = {int(t): float(w) for t, w in weight_rows}
        if sorted(records) != sorted(weights) or sorted(weights) != list(range(len(weights))):
            raise ValueError(
                f"Node table trees {sorted(records)} do not match weight table {sorted(weights)}"
            )

        trees = [TreeModel.from_records(records[t]) for t in range(len(weights))]
        return cls(objective, discretizer, raw_base, trees, [weights[t] for t in range(len(weights))])

    # =========================================================================
    # Persistence
    # =========================================================================

    def save(self, path: str | Path) -> None:
        """Save the model with joblib.

        Example:
            >>> model.save("model.joblib")
            >>> loaded = GBMModel.load("model.joblib")
        """
        payload = {
            "format_version": _FORMAT_VERSION,
            "objective": self.objective,
            "discretizer": self.discretizer,
            "raw_base": np.asarray(self.raw_base),
            "nodes": self.to_node_table(),
            "weights": self.to_weight_table(),
        }
        joblib.dump(payload, path)
        logger.info("Saved model with %d trees to %s", self.num_trees, path)

    @classmethod
    def load(cls, path: str | Path) -> GBMModel:
        payload = joblib.load(path)
        version = payload.get("format_version")
        if version != _FORMAT_VERSION:
            raise ValueError(f"Unsupported model format version {version!r} in {path}")
        return cls.from_node_table(
            payload["objective"],
            payload["discretizer"],
            payload["raw_base"],
            payload["nodes"],
            payload["weights"],
        )

    def __repr__(self) -> str:
        return (
            f"GBMModel(objective={self.objective!r}, raw_size={self.raw_size}, "
            f"num_trees={self.num_trees})"
        )


def _record_from_fields(fields: Sequence[Any]) -> NodeRecord:
    (id_, col_id, is_seq, missing_go_left, data, left, gain,
     left_id, right_id, weight, leaf_id) = fields
    return NodeRecord(
        id=int(id_),
        col_id=int(col_id),
        is_seq=bool(is_seq),
        missing_go_left=bool(missing_go_left),
        data=tuple(int(v) for v in data),
        left=bool(left),
        gain=float(gain),
        left_id=int(left_id),
        right_id=int(right_id),
        weight=float(weight),
        leaf_id=int(leaf_id),
    )
