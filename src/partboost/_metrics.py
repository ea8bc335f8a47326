"""Evaluation metrics for partboost.

Two kinds of metric:

- ``IncrementalMetric``: streaming. Each partition folds its rows into a small
  state with :meth:`~IncrementalMetric.update`; partial states are merged with
  an associative :meth:`~IncrementalMetric.merge`.
- ``BatchMetric``: needs every row at once (e.g. AUC).

All arrays are 2-D, one row per instance: ``labels`` is ``(n, label_width)``,
``raws`` and ``scores`` are ``(n, raw_size)``; ``weights`` is ``(n,)``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np
from sklearn.metrics import roc_auc_score

if TYPE_CHECKING:
    from numpy.typing import NDArray


class IncrementalMetric(ABC):
    """Metric computed from mergeable partial sums."""

    name: str = "metric"
    greater_is_better: bool = False

    def init(self) -> tuple[float, float]:
        """Empty state: ``(sum of weights, weighted sum of losses)``."""
        return (0.0, 0.0)

    def update(self, state, weights: NDArray, labels: NDArray, raws: NDArray, scores: NDArray):
        losses = self.row_losses(labels, raws, scores)
        return (state[0] + float(weights.sum()), state[1] + float(np.dot(weights, losses)))

    def merge(self, a, b):
        return (a[0] + b[0], a[1] + b[1])

    def result(self, state) -> float:
        total_weight, total = state
        if total_weight <= 0:
            return float("nan")
        return total / total_weight

    @abstractmethod
    def row_losses(self, labels: NDArray, raws: NDArray, scores: NDArray) -> NDArray:
        """Per-row loss, shape ``(n,)``."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class BatchMetric(ABC):
    """Metric computed over the whole evaluation set."""

    name: str = "metric"
    greater_is_better: bool = False

    @abstractmethod
    def compute(self, weights: NDArray, labels: NDArray, raws: NDArray, scores: NDArray) -> float:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


# =============================================================================
# Regression
# =============================================================================

class MSE(IncrementalMetric):
    """Weighted mean squared error, summed over raw dimensions."""

    name = "mse"

    def row_losses(self, labels, raws, scores):
        return np.sum((scores - labels) ** 2, axis=1)


class RMSE(MSE):
    name = "rmse"

    def result(self, state) -> float:
        return float(np.sqrt(super().result(state)))


class MAE(IncrementalMetric):
    name = "mae"

    def row_losses(self, labels, raws, scores):
        return np.sum(np.abs(scores - labels), axis=1)


# =============================================================================
# Classification
# =============================================================================

_EPS = 1e-15


class LogLoss(IncrementalMetric):
    """Binary cross-entropy for one output, categorical cross-entropy otherwise."""

    name = "logloss"

    def row_losses(self, labels, raws, scores):
        p = np.clip(scores, _EPS, 1.0 - _EPS)
        if scores.shape[1] == 1:
            y = labels[:, 0]
            p = p[:, 0]
            return -(y * np.log(p) + (1.0 - y) * np.log(1.0 - p))
        return -np.sum(labels * np.log(p), axis=1)


class ErrorRate(IncrementalMetric):
    """Fraction of misclassified rows (threshold 0.5 for one output, argmax otherwise)."""

    name = "error"

    def row_losses(self, labels, raws, scores):
        if scores.shape[1] == 1:
            return ((scores[:, 0] > 0.5) != (labels[:, 0] > 0.5)).astype(np.float64)
        return (np.argmax(scores, axis=1) != np.argmax(labels, axis=1)).astype(np.float64)


class AUC(BatchMetric):
    """Weighted ROC AUC of the first output."""

    name = "auc"
    greater_is_better = True

    def compute(self, weights, labels, raws, scores) -> float:
        y = labels[:, 0]
        if np.unique(y).size < 2:
            return float("nan")
        return float(roc_auc_score(y, scores[:, 0], sample_weight=weights))


def get_metric(metric: str | IncrementalMetric | BatchMetric) -> IncrementalMetric | BatchMetric:
    """Get a metric by name or return the given instance."""
    if isinstance(metric, (IncrementalMetric, BatchMetric)):
        return metric

    metric_map = {
        "mse": MSE,
        "rmse": RMSE,
        "mae": MAE,
        "logloss": LogLoss,
        "error": ErrorRate,
        "auc": AUC,
    }
    if metric not in metric_map:
        available = ", ".join(metric_map.keys())
        raise ValueError(f"Unknown metric '{metric}'. Available: {available}")
    return metric_map[metric]()
