"""Block encodings for batches of rows.

- ``InstanceBlock``: up to ``block_size`` consecutive rows of one partition,
  stored column-compact as ``weights``, flattened ``labels`` and a dense bin
  matrix.
- ``ArrayBlock``: ragged per-row sequences stored as one flat ``values``
  array plus per-row lengths (``steps``). Used for the tree ids and the
  interleaved gradient/hessian pairs of sampled rows.
"""

from __future__ import annotations

from itertools import islice
from typing import TYPE_CHECKING, Iterable, Iterator

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, DTypeLike, NDArray

    from .._distributed import PartitionedDataset

    Row = tuple[float, "ArrayLike", "ArrayLike"]


def _readonly(arr: NDArray) -> NDArray:
    arr.setflags(write=False)
    return arr


class InstanceBlock:
    """A batch of rows sharing one encoding.

    Args:
        weights: Row weights, shape (size,).
        labels: Flattened labels, shape (size * label_width,).
        matrix: Bin ids, shape (size, num_cols).
    """

    __slots__ = ("weights", "labels", "matrix")

    def __init__(self, weights: ArrayLike, labels: ArrayLike, matrix: ArrayLike):
        weights = np.array(weights, dtype=np.float64).ravel()
        labels = np.array(labels, dtype=np.float64).ravel()
        matrix = np.array(matrix, dtype=np.int32)
        size = weights.shape[0]

        assert size > 0, "InstanceBlock must hold at least one row"
        assert labels.shape[0] % size == 0, (
            f"labels length {labels.shape[0]} is not a multiple of block size {size}"
        )
        assert matrix.ndim == 2 and matrix.shape[0] == size, (
            f"matrix shape {matrix.shape} does not match block size {size}"
        )

        self.weights = _readonly(weights)
        self.labels = _readonly(labels)
        self.matrix = _readonly(matrix)

    @classmethod
    def from_rows(cls, rows: Iterable[Row]) -> InstanceBlock:
        """Build a block from ``(weight, label_vector, bin_vector)`` rows."""
        rows = list(rows)
        weights = [w for w, _, _ in rows]
        labels = np.concatenate([np.atleast_1d(np.asarray(l, dtype=np.float64)) for _, l, _ in rows])
        matrix = np.stack([np.asarray(v, dtype=np.int32) for _, _, v in rows])
        return cls(weights, labels, matrix)

    @property
    def size(self) -> int:
        return self.weights.shape[0]

    def __len__(self) -> int:
        return self.size

    @property
    def label_width(self) -> int:
        return self.labels.shape[0] // self.size

    @property
    def label_matrix(self) -> NDArray:
        """Labels as a (size, label_width) view."""
        return self.labels.reshape(self.size, self.label_width)

    @property
    def num_cols(self) -> int:
        return self.matrix.shape[1]

    def weight_iterator(self) -> Iterator[float]:
        return iter(self.weights)

    def label_iterator(self) -> Iterator[NDArray]:
        return iter(self.label_matrix)

    def vector_iterator(self) -> Iterator[NDArray]:
        return iter(self.matrix)

    def iterator(self) -> Iterator[tuple[float, NDArray, NDArray]]:
        return zip(self.weight_iterator(), self.label_iterator(), self.vector_iterator())

    def __iter__(self):
        return self.iterator()

    def __repr__(self) -> str:
        return (
            f"InstanceBlock(size={self.size}, label_width={self.label_width}, "
            f"num_cols={self.num_cols})"
        )


def blockify(rows: Iterable[Row], block_size: int) -> list[InstanceBlock]:
    """Group consecutive rows of one partition into blocks of at most ``block_size``.

    Only the last block may be short.

    Example:
        >>> rows = [(1.0, [0.0], [1, 2]) for _ in range(5)]
        >>> [b.size for b in blockify(rows, 2)]
        [2, 2, 1]
    """
    if block_size <= 0:
        raise ValueError(f"block_size must be > 0, got {block_size}")

    it = iter(rows)
    blocks = []
    while True:
        chunk = list(islice(it, block_size))
        if not chunk:
            break
        blocks.append(InstanceBlock.from_rows(chunk))
    return blocks


def blockify_dataset(
    data: PartitionedDataset, block_size: int, name: str | None = None
) -> PartitionedDataset:
    """Apply :func:`blockify` to every partition; blocks never span partitions."""
    if block_size <= 0:
        raise ValueError(f"block_size must be > 0, got {block_size}")
    return data.map_partitions(
        lambda _, rows: blockify(rows, block_size), name=name or f"{data.name}.blocks"
    )


class ArrayBlock:
    """Ragged storage of variable-length rows.

    Row ``i`` occupies ``values[offset(i) : offset(i) + steps[i]]`` where
    ``offset(i) = sum(steps[:i])``.
    """

    __slots__ = ("values", "steps")

    def __init__(self, values: ArrayLike, steps: ArrayLike):
        values = np.array(values)
        steps = np.array(steps, dtype=np.int64).ravel()
        assert int(steps.sum()) == values.shape[0], (
            f"steps sum to {int(steps.sum())} but there are {values.shape[0]} values"
        )
        self.values = _readonly(values)
        self.steps = _readonly(steps)

    @classmethod
    def empty(cls, dtype: DTypeLike = np.float64) -> ArrayBlock:
        return cls(np.empty(0, dtype=dtype), np.empty(0, dtype=np.int64))

    @classmethod
    def build(cls, rows: Iterable[ArrayLike], dtype: DTypeLike = None) -> ArrayBlock:
        """Concatenate ``rows`` into one flat array, recording each row length."""
        chunks = []
        steps = []
        for row in rows:
            row = np.atleast_1d(np.asarray(row, dtype=dtype))
            chunks.append(row)
            steps.append(row.shape[0])

        if chunks:
            values = np.concatenate(chunks)
        else:
            values = np.empty(0, dtype=dtype if dtype is not None else np.float64)
        return cls(values, np.array(steps, dtype=np.int64))

    @property
    def size(self) -> int:
        return self.steps.shape[0]

    def __len__(self) -> int:
        return self.size

    @property
    def is_empty(self) -> bool:
        return self.size == 0

    def iterator(self) -> Iterator[NDArray]:
        """Yield each row as a view into ``values``."""
        offset = 0
        for step in self.steps:
            step = int(step)
            yield self.values[offset:offset + step]
            offset += step

    def __iter__(self):
        return self.iterator()

    def __repr__(self) -> str:
        return f"ArrayBlock(size={self.size}, num_values={self.values.shape[0]})"
