"""Lineage truncation for chains of derived datasets.

Raw scores of iteration ``i`` are derived from those of iteration ``i - 1``.
A checkpointer keeps the newest datasets cached, releases older ones, and
every ``interval`` accepted datasets writes the newest to disk so the chain
never has to be recomputed from the start.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections import deque
from pathlib import Path
from typing import Protocol, runtime_checkable

from ._dataset import PartitionedDataset

logger = logging.getLogger(__name__)


@runtime_checkable
class Checkpointer(Protocol):
    """Receives every new dataset of a lineage chain."""

    def accept(self, dataset: PartitionedDataset) -> None:
        """Take ownership of ``dataset``; may persist it and release older ones."""
        ...

    def cleanup(self) -> None:
        """Release every retained dataset and checkpoint file."""
        ...


class PeriodicCheckpointer:
    """Persist each accepted dataset and checkpoint every ``interval``-th one.

    Args:
        interval: Checkpoint frequency in accepted datasets; ``-1`` disables
            writing to disk (datasets are still cached and rotated).
        directory: Where checkpoint files go. A temporary directory is created
            and removed on :meth:`cleanup` when omitted.
        keep: Number of most recent datasets kept cached.
    """

    def __init__(self, interval: int, directory: str | Path | None = None, keep: int = 2):
        if interval != -1 and interval <= 0:
            raise ValueError(f"interval must be -1 or > 0, got {interval}")
        if keep < 1:
            raise ValueError(f"keep must be >= 1, got {keep}")

        self.interval = interval
        self.keep = keep
        self._directory = Path(directory) if directory is not None else None
        self._owns_directory = False
        self._num_updates = 0
        self._persisted: deque[PartitionedDataset] = deque()
        self._checkpoints: deque[Path] = deque()

    @property
    def num_updates(self) -> int:
        return self._num_updates

    @property
    def checkpoint_files(self) -> list[Path]:
        return list(self._checkpoints)

    def accept(self, dataset: PartitionedDataset) -> None:
        # compute the new dataset before its parents are released
        dataset.persist().materialize()
        self._persisted.append(dataset)
        self._num_updates += 1

        if self.interval != -1 and self._num_updates % self.interval == 0:
            path = self._next_path(dataset)
            dataset.checkpoint(path)
            self._checkpoints.append(path)
            logger.debug("Checkpoint %d written for %s", self._num_updates, dataset.name)
            while len(self._checkpoints) > 1:
                self._checkpoints.popleft().unlink(missing_ok=True)

        while len(self._persisted) > self.keep:
            self._persisted.popleft().unpersist()

    def cleanup(self) -> None:
        while self._persisted:
            self._persisted.popleft().unpersist()
        while self._checkpoints:
            self._checkpoints.popleft().unlink(missing_ok=True)
        if self._owns_directory and self._directory is not None:
            shutil.rmtree(self._directory, ignore_errors=True)
            self._directory = None
            self._owns_directory = False

    def _next_path(self, dataset: PartitionedDataset) -> Path:
        if self._directory is None:
            self._directory = Path(tempfile.mkdtemp(prefix="partboost-ckpt-"))
            self._owns_directory = True
        self._directory.mkdir(parents=True, exist_ok=True)
        safe_name = "".join(c if c.isalnum() else "_" for c in dataset.name)
        return self._directory / f"{safe_name}-{self._num_updates}.joblib"
