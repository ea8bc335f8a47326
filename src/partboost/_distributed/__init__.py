"""Partitioned execution for partboost.

Datasets are split into partitions processed independently through joblib.
Aggregations across partitions are tree-shaped with a bounded depth.
"""

from ._checkpoint import Checkpointer, PeriodicCheckpointer
from ._dataset import PartitionedDataset, tree_combine

__all__ = ["Checkpointer", "PartitionedDataset", "PeriodicCheckpointer", "tree_combine"]
