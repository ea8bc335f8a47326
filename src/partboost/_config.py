"""Boosting configuration for partboost.

All hyper-parameters consumed by the orchestrator, the DART bookkeeping and
the built-in tree trainer live on one dataclass. Validation happens once,
before any partition is touched.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from ._metrics import BatchMetric, IncrementalMetric

if TYPE_CHECKING:
    from ._callbacks import Callback
    from ._loss import Objective


GBTREE = "gbtree"
DART = "dart"

SINGLE_PRECISION = "float"
DOUBLE_PRECISION = "double"


@dataclass
class BoostConfig:
    """Hyper-parameters steering a boosting run.

    Args:
        max_iter: Maximum number of boosting iterations.
        max_depth: Maximum depth of each tree.
        max_leaves: Maximum number of leaves per tree.
        min_gain: Minimum gain required to split a node.
        min_node_hess: Minimum sum of hessians in a child node.
        step_size: Learning rate. Weight of every GBTree tree, and the
            normalization constant of DART.
        reg_alpha: L1 regularization on leaf values.
        reg_lambda: L2 regularization on leaf values.
        base_score: Initial prediction in score space (one entry per output).
            ``None`` means the weighted average label.
        objective: Objective providing score transform and gradients.
        eval_funcs: Incremental and batch metrics, unique by name.
        callbacks: Callbacks invoked after each iteration, unique by name.
        cat_cols: Indices of categorical columns.
        sub_sample: Row (or block) sampling ratio per base learner.
        col_sample_by_tree: Column sampling ratio per tree.
        checkpoint_interval: Materialize raw scores every N iterations,
            ``-1`` disables checkpointing.
        checkpoint_dir: Directory for checkpoint files (temporary if None).
        aggregation_depth: Depth of tree-shaped reductions (>= 2).
        seed: Global random seed.
        boost_type: ``"gbtree"`` or ``"dart"``.
        drop_rate: DART fraction of base learners dropped per iteration.
        drop_skip: DART probability of skipping dropout in an iteration.
        min_drop: DART minimum number of dropped base learners.
        max_drop: DART maximum number of dropped base learners.
        float_type: ``"float"`` or ``"double"`` precision for gradients and
            raw scores.
        base_model_parallelism: Number of base learners grown per iteration.
        sample_blocks: Sample whole blocks instead of rows.
        block_size: Number of rows per instance block.
        max_bins: Maximum number of bins per column (bin 0 is missing).
        num_partitions: Partitions created when fitting numpy input.
        n_jobs: Parallel jobs used to process partitions.
    """

    max_iter: int = 20
    max_depth: int = 5
    max_leaves: int = 1000
    min_gain: float = 0.0
    min_node_hess: float = 1.0
    step_size: float = 0.1
    reg_alpha: float = 0.0
    reg_lambda: float = 1.0
    base_score: list[float] | None = None
    objective: Objective | None = None
    eval_funcs: list[IncrementalMetric | BatchMetric] = field(default_factory=list)
    callbacks: list[Callback] = field(default_factory=list)
    cat_cols: frozenset[int] = frozenset()
    sub_sample: float = 1.0
    col_sample_by_tree: float = 1.0
    checkpoint_interval: int = 10
    checkpoint_dir: str | None = None
    aggregation_depth: int = 2
    seed: int = 0
    boost_type: str = GBTREE
    drop_rate: float = 0.0
    drop_skip: float = 0.5
    min_drop: int = 0
    max_drop: int = 50
    float_type: str = DOUBLE_PRECISION
    base_model_parallelism: int = 1
    sample_blocks: bool = False
    block_size: int = 4096
    max_bins: int = 64
    num_partitions: int = 4
    n_jobs: int = 1

    def validate(self) -> BoostConfig:
        """Check every parameter range; raise ``ValueError`` on the first violation."""
        _require(self.max_iter >= 0, "max_iter must be >= 0")
        _require(1 <= self.max_depth <= 30, "max_depth must be in [1, 30]")
        _require(self.max_leaves >= 2, "max_leaves must be >= 2")
        _require_finite(self.min_gain, "min_gain", lower=0.0)
        _require_finite(self.min_node_hess, "min_node_hess", lower=0.0)
        _require_finite(self.step_size, "step_size", lower=0.0)
        _require(self.step_size > 0, "step_size must be > 0")
        _require_finite(self.reg_alpha, "reg_alpha", lower=0.0)
        _require_finite(self.reg_lambda, "reg_lambda", lower=0.0)

        if self.base_score is not None:
            _require(len(self.base_score) > 0, "base_score must not be empty")
            for v in self.base_score:
                _require(math.isfinite(v), "base_score must be finite")

        _require(self.objective is not None, "objective must be provided")
        _require_unique(self.eval_funcs, "eval_funcs")
        _require_unique(self.callbacks, "callbacks")
        _require(all(c >= 0 for c in self.cat_cols), "cat_cols must be non-negative")

        _require(0 < self.sub_sample <= 1, "sub_sample must be in (0, 1]")
        _require(0 < self.col_sample_by_tree <= 1, "col_sample_by_tree must be in (0, 1]")
        _require(
            self.checkpoint_interval == -1 or self.checkpoint_interval > 0,
            "checkpoint_interval must be -1 or > 0",
        )
        _require(self.aggregation_depth >= 2, "aggregation_depth must be >= 2")

        _require(
            self.boost_type in (GBTREE, DART),
            f"boost_type must be '{GBTREE}' or '{DART}', got {self.boost_type!r}",
        )
        _require(0 <= self.drop_rate <= 1, "drop_rate must be in [0, 1]")
        _require(0 <= self.drop_skip <= 1, "drop_skip must be in [0, 1]")
        _require(self.min_drop >= 0, "min_drop must be >= 0")
        _require(self.max_drop >= 0, "max_drop must be >= 0")
        if self.boost_type == DART:
            _require(self.max_drop >= self.min_drop, "max_drop must be >= min_drop")

        _require(
            self.float_type in (SINGLE_PRECISION, DOUBLE_PRECISION),
            f"float_type must be '{SINGLE_PRECISION}' or '{DOUBLE_PRECISION}'",
        )
        _require(self.base_model_parallelism > 0, "base_model_parallelism must be > 0")
        _require(self.block_size > 0, "block_size must be > 0")
        _require(self.max_bins >= 4, "max_bins must be >= 4")
        _require(self.num_partitions > 0, "num_partitions must be > 0")
        _require(self.n_jobs != 0, "n_jobs must not be 0")
        return self

    @property
    def dtype(self) -> type[np.floating]:
        """Numpy dtype for gradients, hessians and raw scores."""
        return np.float32 if self.float_type == SINGLE_PRECISION else np.float64

    @property
    def raw_size(self) -> int:
        """Number of raw score dimensions per row."""
        return int(self.objective.raw_size)

    @property
    def is_dart(self) -> bool:
        return self.boost_type == DART

    @property
    def incremental_metrics(self) -> list[IncrementalMetric]:
        return [m for m in self.eval_funcs if isinstance(m, IncrementalMetric)]

    @property
    def batch_metrics(self) -> list[BatchMetric]:
        return [m for m in self.eval_funcs if isinstance(m, BatchMetric)]


def _require(cond: bool, message: str) -> None:
    if not cond:
        raise ValueError(message)


def _require_finite(value: float, name: str, lower: float | None = None) -> None:
    if not math.isfinite(value):
        raise ValueError(f"{name} must be finite, got {value}")
    if lower is not None and value < lower:
        raise ValueError(f"{name} must be >= {lower}, got {value}")


def _require_unique(funcs: list[Any], name: str) -> None:
    names = [f.name for f in funcs]
    if len(set(names)) != len(names):
        raise ValueError(f"{name} must have distinct names, got {names}")
