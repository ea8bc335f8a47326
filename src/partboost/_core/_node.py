"""Tree node model.

Two distinct representations:

- ``GrowingNode``: mutable builder, owned by a tree trainer while a tree grows.
- ``Node`` (``InternalNode`` / ``LeafNode``): immutable finalized form used for
  prediction and persistence.

Finalized trees are serialized as a flat table of ``NodeRecord`` rows whose ids
follow a pre-order traversal, so the tree can be rebuilt regardless of the
order rows come back from storage.

Bin convention: bin ``0`` means missing; real bins start at 1.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, Sequence

if TYPE_CHECKING:
    BinLookup = Sequence[int]


def _go_by_bin(b: int, is_seq: bool, missing_go_left: bool, data: tuple[int, ...]) -> bool:
    """Raw split test for one bin, before the polarity flag is applied."""
    if b == 0:
        return missing_go_left
    if is_seq:
        return b <= data[0]
    i = bisect_left(data, b)
    return i < len(data) and data[i] == b


def _check_split_data(is_seq: bool, data: tuple[int, ...]) -> None:
    if is_seq:
        assert len(data) == 1, f"sequential split needs exactly one threshold, got {data}"
    else:
        assert all(a < b for a, b in zip(data, data[1:])), (
            f"categorical split data must be sorted and distinct, got {data}"
        )


# =============================================================================
# Growing (mutable) form
# =============================================================================

@dataclass(frozen=True)
class Split:
    """Split decision attached to a growing node.

    Args:
        col_id: Column the split reads.
        is_seq: ``True`` for threshold splits, ``False`` for category sets.
        missing_go_left: Raw test result for missing values (bin 0).
        data: ``(threshold,)`` or sorted distinct categories.
        left: Whether a ``True`` raw test means "go left".
        gain: Split gain.
    """

    col_id: int
    is_seq: bool
    missing_go_left: bool
    data: tuple[int, ...]
    left: bool = True
    gain: float = 0.0

    def __post_init__(self):
        _check_split_data(self.is_seq, self.data)

    def go_left(self, bins: BinLookup) -> bool:
        raw = _go_by_bin(int(bins[self.col_id]), self.is_seq, self.missing_go_left, self.data)
        return raw if self.left else not raw


@dataclass(eq=False)
class GrowingNode:
    """Node of a tree that is still being grown.

    Children are owned exclusively by their parent and never shared.
    """

    node_id: int
    is_leaf: bool = True
    prediction: float = 0.0
    split: Split | None = None
    left: GrowingNode | None = None
    right: GrowingNode | None = None

    @classmethod
    def create(cls, node_id: int) -> GrowingNode:
        """Create a fresh leaf."""
        return cls(node_id=node_id)

    def index(self, bins: BinLookup) -> int:
        if self.is_leaf:
            return self.node_id
        if self.split.go_left(bins):
            return self.left.index(bins)
        return self.right.index(bins)

    def predict(self, bins: BinLookup) -> float:
        if self.is_leaf:
            return self.prediction
        if self.split.go_left(bins):
            return self.left.predict(bins)
        return self.right.predict(bins)

    def node_iterator(self) -> Iterator[GrowingNode]:
        yield self
        if self.left is not None:
            yield from self.left.node_iterator()
        if self.right is not None:
            yield from self.right.node_iterator()

    @property
    def num_descendants(self) -> int:
        return sum(1 + c.num_descendants for c in (self.left, self.right) if c is not None)

    @property
    def subtree_depth(self) -> int:
        if self.is_leaf:
            return 0
        children = [c.subtree_depth for c in (self.left, self.right) if c is not None]
        return max(children, default=0) + 1

    def finalize(self) -> Node:
        """Freeze this subtree. Leaves keep their growing ``node_id`` as ``leaf_id``."""
        if self.is_leaf:
            return LeafNode(weight=float(self.prediction), leaf_id=self.node_id)
        s = self.split
        return InternalNode(
            col_id=s.col_id,
            is_seq=s.is_seq,
            missing_go_left=s.missing_go_left,
            data=s.data,
            left=s.left,
            gain=float(s.gain),
            left_node=self.left.finalize(),
            right_node=self.right.finalize(),
        )


# =============================================================================
# Finalized (immutable) form
# =============================================================================

class Node(ABC):
    """Finalized tree node."""

    @abstractmethod
    def index(self, bins: BinLookup) -> int:
        """Leaf id reached by ``bins``."""
        ...

    @abstractmethod
    def predict(self, bins: BinLookup) -> float:
        """Leaf weight reached by ``bins``."""
        ...

    @property
    @abstractmethod
    def subtree_depth(self) -> int:
        ...

    @abstractmethod
    def node_iterator(self) -> Iterator[Node]:
        """Pre-order traversal. Each call starts a fresh iterator."""
        ...

    @property
    def num_descendants(self) -> int:
        return sum(1 for _ in self.node_iterator())

    @property
    def num_leaves(self) -> int:
        return sum(1 for n in self.node_iterator() if isinstance(n, LeafNode))


@dataclass(frozen=True, eq=False)
class InternalNode(Node):
    """Internal node of a finalized tree."""

    col_id: int
    is_seq: bool
    missing_go_left: bool
    data: tuple[int, ...]
    left: bool
    gain: float
    left_node: Node = field(repr=False)
    right_node: Node = field(repr=False)

    def __post_init__(self):
        object.__setattr__(self, "data", tuple(int(v) for v in self.data))
        _check_split_data(self.is_seq, self.data)

    def go_left(self, bins: BinLookup) -> bool:
        raw = _go_by_bin(int(bins[self.col_id]), self.is_seq, self.missing_go_left, self.data)
        return raw if self.left else not raw

    def index(self, bins: BinLookup) -> int:
        if self.go_left(bins):
            return self.left_node.index(bins)
        return self.right_node.index(bins)

    def predict(self, bins: BinLookup) -> float:
        if self.go_left(bins):
            return self.left_node.predict(bins)
        return self.right_node.predict(bins)

    @property
    def subtree_depth(self) -> int:
        return max(self.left_node.subtree_depth, self.right_node.subtree_depth) + 1

    def node_iterator(self) -> Iterator[Node]:
        stack: list[Node] = [self]
        while stack:
            node = stack.pop()
            yield node
            if isinstance(node, InternalNode):
                stack.append(node.right_node)
                stack.append(node.left_node)


@dataclass(frozen=True, eq=False)
class LeafNode(Node):
    """Leaf of a finalized tree.

    ``leaf_id`` is an opaque identifier carried through persistence untouched.
    """

    weight: float
    leaf_id: int

    def index(self, bins: BinLookup) -> int:
        return self.leaf_id

    def predict(self, bins: BinLookup) -> float:
        return self.weight

    @property
    def subtree_depth(self) -> int:
        return 0

    def node_iterator(self) -> Iterator[Node]:
        yield self


# =============================================================================
# Flat serialization
# =============================================================================

@dataclass(frozen=True)
class NodeRecord:
    """Flat form of one node.

    Unused integer fields hold ``-1``, unused float fields hold ``NaN``.
    A record is a leaf iff both child ids are ``-1``.
    """

    id: int
    col_id: int
    is_seq: bool
    missing_go_left: bool
    data: tuple[int, ...]
    left: bool
    gain: float
    left_id: int
    right_id: int
    weight: float
    leaf_id: int

    @property
    def is_leaf(self) -> bool:
        return self.left_id == -1 and self.right_id == -1

    def as_tuple(self) -> tuple:
        return (
            self.id, self.col_id, self.is_seq, self.missing_go_left, self.data,
            self.left, self.gain, self.left_id, self.right_id, self.weight, self.leaf_id,
        )


def flatten_tree(node: Node, start_id: int = 0) -> tuple[list[NodeRecord], int]:
    """Number ``node``'s subtree in pre-order starting at ``start_id``.

    Returns:
        records: Records of the subtree, the root's record first.
        last_id: Largest id assigned.
    """
    if isinstance(node, InternalNode):
        left_records, left_last = flatten_tree(node.left_node, start_id + 1)
        right_records, right_last = flatten_tree(node.right_node, left_last + 1)
        record = NodeRecord(
            id=start_id,
            col_id=node.col_id,
            is_seq=node.is_seq,
            missing_go_left=node.missing_go_left,
            data=node.data,
            left=node.left,
            gain=node.gain,
            left_id=left_records[0].id,
            right_id=right_records[0].id,
            weight=math.nan,
            leaf_id=-1,
        )
        return [record] + left_records + right_records, right_last

    if isinstance(node, LeafNode):
        record = NodeRecord(
            id=start_id,
            col_id=-1,
            is_seq=False,
            missing_go_left=False,
            data=(),
            left=False,
            gain=math.nan,
            left_id=-1,
            right_id=-1,
            weight=node.weight,
            leaf_id=node.leaf_id,
        )
        return [record], start_id

    raise TypeError(f"Cannot flatten {type(node).__name__}")


def reconstruct_tree(records: Sequence[NodeRecord]) -> Node:
    """Rebuild a tree from its (unordered) node records.

    Ids are assigned in pre-order, so every descendant of a node has a larger
    id than the node itself. Building in descending id order therefore always
    finds both children already built.
    """
    nodes = sorted(records, key=lambda r: r.id)
    assert nodes, "Tree load failed. No node records given"
    assert nodes[0].id == 0, (
        f"Tree load failed. Expected smallest node ID to be 0, but found {nodes[0].id}"
    )
    assert nodes[-1].id == len(nodes) - 1, (
        f"Tree load failed. Expected largest node ID to be {len(nodes) - 1}, "
        f"but found {nodes[-1].id}"
    )

    built: list[Node | None] = [None] * len(nodes)
    for r in reversed(nodes):
        if r.is_leaf:
            built[r.id] = LeafNode(weight=float(r.weight), leaf_id=int(r.leaf_id))
        else:
            built[r.id] = InternalNode(
                col_id=int(r.col_id),
                is_seq=bool(r.is_seq),
                missing_go_left=bool(r.missing_go_left),
                data=tuple(r.data),
                left=bool(r.left),
                gain=float(r.gain),
                left_node=built[r.left_id],
                right_node=built[r.right_id],
            )
    return built[0]
