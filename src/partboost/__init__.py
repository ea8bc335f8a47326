"""partboost: partitioned gradient boosted trees with GBTree and DART.

Rows live in independent partitions processed through joblib; every boosting
iteration is a fixed sequence of per-partition steps plus tree-shaped merges.

Quick Start:
    >>> import partboost as pb
    >>>
    >>> # Scikit-learn style
    >>> reg = pb.GBMRegressor(n_estimators=100, boost_type="dart", drop_rate=0.1)
    >>> reg.fit(X_train, y_train)
    >>> reg.predict(X_test)

Full Control:
    >>> config = pb.BoostConfig(
    ...     objective=pb.Logistic(),
    ...     max_iter=200,
    ...     eval_funcs=[pb.LogLoss(), pb.AUC()],
    ...     callbacks=[pb.EarlyStopping(patience=20, metric="logloss")],
    ...     num_partitions=8,
    ... )
    >>> gbm = pb.GBM(config).fit(X_train, y_train, eval_set=(X_val, y_val))
    >>> gbm.model_.save("model.joblib")

Partitioned Input:
    >>> rows = [(1.0, [label], features) for label, features in zip(y, X)]
    >>> train = pb.PartitionedDataset.from_sequence(rows, num_partitions=8)
    >>> model, state = pb.boost(train, None, config,
    ...                         pb.QuantileDiscretizer().fit(X))
"""

__version__ = "0.1.0"

# Configuration
from ._config import DART, DOUBLE_PRECISION, GBTREE, SINGLE_PRECISION, BoostConfig

# Objectives and metrics
from ._loss import Logistic, Objective, Softmax, SquaredError, get_objective
from ._metrics import AUC, MAE, MSE, RMSE, BatchMetric, ErrorRate, IncrementalMetric, LogLoss, get_metric

# Callbacks
from ._callbacks import Callback, EarlyStopping, MetricsLogger

# Data
from ._discretizer import QuantileDiscretizer
from ._distributed import Checkpointer, PartitionedDataset, PeriodicCheckpointer

# Trees
from ._core._node import GrowingNode, InternalNode, LeafNode, Node, NodeRecord, Split
from ._core._tree import TreeModel
from ._core._growth import HistogramTreeTrainer, TrainerContext, TreeTrainer

# Training (low-level)
from ._core._blocks import ArrayBlock, InstanceBlock, blockify, blockify_dataset
from ._core._dart import append_trees, compute_num_drops, select_dropped
from ._core._scores import compute_raw_scores, update_raw_scores
from ._core._state import BoostingState
from ._boosting import boost
from ._evaluation import evaluate

# Models
from ._model import GBMModel
from ._models import GBM, GBMClassifier, GBMRegressor

__all__ = [
    # Version
    "__version__",
    # Configuration
    "BoostConfig",
    "GBTREE",
    "DART",
    "SINGLE_PRECISION",
    "DOUBLE_PRECISION",
    # Objectives
    "Objective",
    "SquaredError",
    "Logistic",
    "Softmax",
    "get_objective",
    # Metrics
    "IncrementalMetric",
    "BatchMetric",
    "MSE",
    "RMSE",
    "MAE",
    "LogLoss",
    "ErrorRate",
    "AUC",
    "get_metric",
    # Callbacks
    "Callback",
    "EarlyStopping",
    "MetricsLogger",
    # Data
    "QuantileDiscretizer",
    "PartitionedDataset",
    "Checkpointer",
    "PeriodicCheckpointer",
    # Trees
    "Node",
    "InternalNode",
    "LeafNode",
    "GrowingNode",
    "Split",
    "NodeRecord",
    "TreeModel",
    "TreeTrainer",
    "TrainerContext",
    "HistogramTreeTrainer",
    # Training (low-level)
    "InstanceBlock",
    "ArrayBlock",
    "blockify",
    "blockify_dataset",
    "compute_num_drops",
    "select_dropped",
    "append_trees",
    "compute_raw_scores",
    "update_raw_scores",
    "BoostingState",
    "boost",
    "evaluate",
    # Models
    "GBMModel",
    "GBM",
    "GBMRegressor",
    "GBMClassifier",
]
