"""In-process partitioned datasets.

A ``PartitionedDataset`` is an ordered list of partitions, each a list of
items. Derived datasets are lazy: they remember their parents and the
per-partition function that produces them, and compute on demand. Partitions
are processed independently through ``joblib``; every per-partition function
must be pure.

Persisting caches the computed partitions. Checkpointing writes them to a file,
reloads from there and forgets the parents, which bounds the lineage depth of
long chains such as the per-iteration raw scores.
"""

from __future__ import annotations

import copy
import logging
import math
from functools import reduce
from itertools import chain
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator, Sequence

import joblib
from joblib import Parallel, delayed

if TYPE_CHECKING:
    PartitionFn = Callable[..., list]

logger = logging.getLogger(__name__)


class PartitionedDataset:
    """Ordered collection of partitions with lazy, pure transformations.

    Args:
        partitions: Source partitions (materialized immediately).
        name: Label used in logs.
        n_jobs: Parallel jobs used when computing partitions.

    Example:
        >>> ds = PartitionedDataset([[1, 2], [3]], name="numbers")
        >>> ds.map(lambda x: x * 10).collect()
        [10, 20, 30]
    """

    def __init__(
        self,
        partitions: Sequence[Sequence[Any]] | None = None,
        name: str = "dataset",
        n_jobs: int = 1,
        *,
        parents: tuple[PartitionedDataset, ...] = (),
        fn: PartitionFn | None = None,
    ):
        if partitions is None and fn is None:
            raise ValueError("Either partitions or fn must be given")

        self.name = name
        self.n_jobs = n_jobs
        self._parents = parents
        self._fn = fn
        self._cached: list[list] | None = None
        self._persisted = False
        self._released = False
        self.checkpoint_path: Path | None = None

        if partitions is not None:
            self._cached = [list(p) for p in partitions]
            self._persisted = True
            self._num_partitions = len(self._cached)
        else:
            counts = {p.num_partitions for p in parents}
            assert len(counts) == 1, (
                f"Cannot combine datasets with different partition counts: {sorted(counts)}"
            )
            self._num_partitions = counts.pop()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_sequence(
        cls,
        items: Sequence[Any],
        num_partitions: int,
        name: str = "dataset",
        n_jobs: int = 1,
    ) -> PartitionedDataset:
        """Split ``items`` into ``num_partitions`` contiguous partitions."""
        if num_partitions <= 0:
            raise ValueError(f"num_partitions must be > 0, got {num_partitions}")
        n = len(items)
        bounds = [n * i // num_partitions for i in range(num_partitions + 1)]
        parts = [items[bounds[i]:bounds[i + 1]] for i in range(num_partitions)]
        return cls(parts, name=name, n_jobs=n_jobs)

    # ------------------------------------------------------------------
    # Transformations (lazy)
    # ------------------------------------------------------------------

    def map_partitions(self, fn: PartitionFn, name: str | None = None) -> PartitionedDataset:
        """Derive a dataset whose partition ``i`` is ``fn(i, partition_i)``."""
        return PartitionedDataset(
            name=name or f"{self.name}.map_partitions",
            n_jobs=self.n_jobs,
            parents=(self,),
            fn=fn,
        )

    def map(self, fn: Callable[[Any], Any], name: str | None = None) -> PartitionedDataset:
        return self.map_partitions(lambda _, part: [fn(x) for x in part], name=name)

    def zip(self, *others: PartitionedDataset, name: str | None = None) -> PartitionedDataset:
        """Pair items position by position; partitions must have equal lengths."""

        def _zip(_, *parts):
            sizes = {len(p) for p in parts}
            assert len(sizes) == 1, f"Cannot zip partitions of different sizes: {sorted(sizes)}"
            return list(zip(*parts))

        return PartitionedDataset(
            name=name or f"{self.name}.zip",
            n_jobs=self.n_jobs,
            parents=(self,) + others,
            fn=_zip,
        )

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    @property
    def num_partitions(self) -> int:
        return self._num_partitions

    @property
    def lineage_depth(self) -> int:
        """Number of lazy derivation steps to the nearest materialized ancestor."""
        if self._cached is not None:
            return 0
        return 1 + max(p.lineage_depth for p in self._parents)

    @property
    def is_persisted(self) -> bool:
        return self._persisted

    def persist(self) -> PartitionedDataset:
        """Keep partitions in memory once computed."""
        self._persisted = True
        return self

    def unpersist(self) -> PartitionedDataset:
        """Drop cached partitions. Checkpointed or source data cannot be recomputed."""
        if self._fn is None:
            self._released = True
        self._persisted = False
        self._cached = None
        return self

    def partitions(self) -> list[list]:
        """Compute (or fetch cached) partitions."""
        if self._cached is not None:
            return self._cached
        if self._released or self._fn is None:
            raise RuntimeError(f"Dataset {self.name!r} was released and cannot be recomputed")

        parent_parts = [p.partitions() for p in self._parents]
        fn = self._fn
        n = self._num_partitions

        if self.n_jobs == 1 or n <= 1:
            result = [fn(i, *(pp[i] for pp in parent_parts)) for i in range(n)]
        else:
            result = Parallel(n_jobs=self.n_jobs, prefer="threads")(
                delayed(fn)(i, *(pp[i] for pp in parent_parts)) for i in range(n)
            )
        result = [list(r) for r in result]

        if self._persisted:
            self._cached = result
        return result

    def materialize(self) -> PartitionedDataset:
        self.partitions()
        return self

    def checkpoint(self, path: str | Path) -> PartitionedDataset:
        """Write partitions to ``path`` and truncate lineage."""
        path = Path(path)
        parts = self.partitions()
        joblib.dump(parts, path)
        self._cached = joblib.load(path)
        self._persisted = True
        self._parents = ()
        self._fn = None
        self.checkpoint_path = path
        logger.debug("Checkpointed %s to %s", self.name, path)
        return self

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def iterate(self) -> Iterator[Any]:
        return chain.from_iterable(self.partitions())

    def collect(self) -> list[Any]:
        return list(self.iterate())

    def count(self) -> int:
        return sum(len(p) for p in self.partitions())

    def tree_aggregate(
        self,
        zero: Any,
        seq_op: Callable[[Any, Any], Any],
        comb_op: Callable[[Any, Any], Any],
        depth: int = 2,
    ) -> Any:
        """Aggregate items per partition, then combine partials in a tree.

        ``comb_op`` must be associative and commutative. Partials are merged in
        at most ``depth`` levels with fan-in ``ceil(num_partitions ** (1/depth))``.
        """
        if depth < 1:
            raise ValueError(f"depth must be >= 1, got {depth}")

        partials = self.map_partitions(
            lambda _, part: [reduce(seq_op, part, copy.deepcopy(zero))],
            name=f"{self.name}.partials",
        ).collect()
        return tree_combine(partials, comb_op, depth, zero)

    def tree_reduce(self, op: Callable[[Any, Any], Any], depth: int = 2) -> Any:
        """Reduce all items with ``op`` in a tree. The dataset must not be empty."""
        if depth < 1:
            raise ValueError(f"depth must be >= 1, got {depth}")
        partials = self.map_partitions(
            lambda _, part: [reduce(op, part)] if part else [],
            name=f"{self.name}.partials",
        ).collect()
        if not partials:
            raise ValueError(f"Cannot reduce empty dataset {self.name!r}")
        return tree_combine(partials, op, depth)

    def __repr__(self) -> str:
        return (
            f"PartitionedDataset(name={self.name!r}, num_partitions={self.num_partitions}, "
            f"lineage_depth={self.lineage_depth})"
        )


_MISSING = object()


def tree_combine(
    partials: list[Any],
    comb_op: Callable[[Any, Any], Any],
    depth: int = 2,
    zero: Any = _MISSING,
) -> Any:
    """Combine ``partials`` level by level with bounded fan-in."""
    if depth < 1:
        raise ValueError(f"depth must be >= 1, got {depth}")
    if not partials:
        if zero is _MISSING:
            raise ValueError("Nothing to combine")
        return copy.deepcopy(zero)

    scale = max(int(math.ceil(len(partials) ** (1.0 / depth))), 2)
    level = 0
    while len(partials) > scale and level < depth - 1:
        partials = [
            reduce(comb_op, partials[i:i + scale])
            for i in range(0, len(partials), scale)
        ]
        level += 1
    return reduce(comb_op, partials)
