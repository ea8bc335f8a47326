"""Finalized tree model.

``TreeModel`` wraps the root of a finalized tree. Single rows are routed by the
node objects themselves; whole blocks go through a flat array layout compiled
once per tree and evaluated by a Numba kernel.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import TYPE_CHECKING, Sequence

import numpy as np

from .._backends import predict_cpu
from ._node import InternalNode, LeafNode, Node, NodeRecord, flatten_tree, reconstruct_tree

if TYPE_CHECKING:
    from numpy.typing import NDArray


@dataclass(frozen=True)
class FlatTree:
    """Struct-of-arrays node table in pre-order (node id == array position)."""

    col_ids: NDArray           # (n_nodes,) int32, -1 for leaves
    is_seq: NDArray            # (n_nodes,) bool
    missing_go_left: NDArray   # (n_nodes,) bool
    thresholds: NDArray        # (n_nodes,) int32, -1 unless sequential
    cat_offsets: NDArray       # (n_nodes + 1,) int64, CSR offsets into cat_values
    cat_values: NDArray        # (n_categories,) int32
    polarity: NDArray          # (n_nodes,) bool
    left_children: NDArray     # (n_nodes,) int32, -1 for leaves
    right_children: NDArray    # (n_nodes,) int32, -1 for leaves
    weights: NDArray           # (n_nodes,) float64, NaN for internal nodes
    leaf_ids: NDArray          # (n_nodes,) int64, -1 for internal nodes

    @classmethod
    def from_records(cls, records: Sequence[NodeRecord]) -> FlatTree:
        records = sorted(records, key=lambda r: r.id)
        n = len(records)
        cat_lengths = [0 if (r.is_leaf or r.is_seq) else len(r.data) for r in records]
        cat_offsets = np.zeros(n + 1, dtype=np.int64)
        np.cumsum(cat_lengths, out=cat_offsets[1:])
        cat_values = [v for r in records if not (r.is_leaf or r.is_seq) for v in r.data]

        return cls(
            col_ids=np.array([r.col_id for r in records], dtype=np.int32),
            is_seq=np.array([r.is_seq for r in records], dtype=np.bool_),
            missing_go_left=np.array([r.missing_go_left for r in records], dtype=np.bool_),
            thresholds=np.array(
                [r.data[0] if (r.is_seq and not r.is_leaf) else -1 for r in records],
                dtype=np.int32,
            ),
            cat_offsets=cat_offsets,
            cat_values=np.array(cat_values, dtype=np.int32),
            polarity=np.array([r.left for r in records], dtype=np.bool_),
            left_children=np.array([r.left_id for r in records], dtype=np.int32),
            right_children=np.array([r.right_id for r in records], dtype=np.int32),
            weights=np.array([r.weight for r in records], dtype=np.float64),
            leaf_ids=np.array([r.leaf_id for r in records], dtype=np.int64),
        )


@dataclass(frozen=True, eq=False)
class TreeModel:
    """A finalized decision tree.

    Example:
        >>> tree = TreeModel(InternalNode(0, True, True, (3,), True, 1.0,
        ...                               LeafNode(-1.0, 1), LeafNode(1.0, 2)))
        >>> tree.predict([2])
        -1.0
    """

    root: Node

    def predict(self, bins) -> float:
        return self.root.predict(bins)

    def index(self, bins) -> int:
        return self.root.index(bins)

    @property
    def depth(self) -> int:
        return self.root.subtree_depth

    @property
    def num_nodes(self) -> int:
        return self.root.num_descendants

    @property
    def num_leaves(self) -> int:
        return self.root.num_leaves

    def to_records(self) -> list[NodeRecord]:
        records, _ = flatten_tree(self.root, 0)
        return records

    @classmethod
    def from_records(cls, records: Sequence[NodeRecord]) -> TreeModel:
        return cls(reconstruct_tree(records))

    @cached_property
    def flat(self) -> FlatTree:
        """Array layout of this tree, built on first use."""
        return FlatTree.from_records(self.to_records())

    def predict_block(self, matrix: NDArray) -> NDArray:
        """Leaf weights for every row of a binned matrix, shape (n_rows,)."""
        return self._traverse(matrix)[0]

    def index_block(self, matrix: NDArray) -> NDArray:
        """Leaf ids for every row of a binned matrix, shape (n_rows,)."""
        return self._traverse(matrix)[1]

    def _traverse(self, matrix: NDArray) -> tuple[NDArray, NDArray]:
        matrix = np.asarray(matrix)
        if matrix.ndim != 2:
            raise ValueError(f"matrix must be 2D (n_rows, n_cols), got shape {matrix.shape}")
        f = self.flat
        return predict_cpu(
            matrix,
            f.col_ids, f.is_seq, f.missing_go_left, f.thresholds,
            f.cat_offsets, f.cat_values, f.polarity,
            f.left_children, f.right_children, f.weights, f.leaf_ids,
        )

    def used_columns(self) -> list[int]:
        """Column id of every internal node, in pre-order."""
        return [n.col_id for n in self.root.node_iterator() if isinstance(n, InternalNode)]

    def __repr__(self) -> str:
        return f"TreeModel(depth={self.depth}, num_nodes={self.num_nodes})"


def leaf_tree(weight: float, leaf_id: int = 0) -> TreeModel:
    """A tree made of a single leaf."""
    return TreeModel(LeafNode(weight=weight, leaf_id=leaf_id))
