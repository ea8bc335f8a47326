"""Training callbacks for partboost.

A callback runs once after every boosting iteration. It receives an immutable
snapshot of the model built so far plus copies of the metric histories, and
returns ``True`` to request that training stops after this iteration.

Example:
    >>> from partboost import GBM, BoostConfig, EarlyStopping, RMSE
    >>> config = BoostConfig(eval_funcs=[RMSE()], callbacks=[EarlyStopping(patience=5)])
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ._config import BoostConfig
    from ._model import GBMModel

logger = logging.getLogger(__name__)


class Callback(ABC):
    """Base class for callbacks. ``name`` must be unique within one config."""

    name: str = "callback"

    @abstractmethod
    def compute(
        self,
        config: BoostConfig,
        model: GBMModel,
        iteration: int,
        train_history: list[dict[str, float]],
        test_history: list[dict[str, float]],
    ) -> bool:
        """Return ``True`` to stop training.

        Args:
            config: The run's configuration.
            model: Snapshot of the model after ``iteration`` iterations.
            iteration: Number of completed iterations (1-based).
            train_history: Train metrics per iteration.
            test_history: Test metrics per iteration (empty without validation).
        """
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class EarlyStopping(Callback):
    """Stop when a metric has not improved for ``patience`` iterations.

    Watches the test history when there is one, else the train history.

    Args:
        patience: Iterations without improvement before stopping.
        metric: Metric name; defaults to the first metric reported.
        greater_is_better: Direction of improvement. When ``None`` the
            direction declared by the watched metric in ``config.eval_funcs``
            is used, falling back to lower is better.
        min_delta: Minimum change counted as an improvement.
        name: Callback name.

    Attributes:
        best_round: 0-based iteration with the best value so far (-1 before any).
        best_score: Best value seen so far.
    """

    def __init__(
        self,
        patience: int = 10,
        metric: str | None = None,
        greater_is_better: bool | None = None,
        min_delta: float = 0.0,
        name: str = "early_stopping",
    ):
        if patience < 1:
            raise ValueError(f"patience must be >= 1, got {patience}")
        self.patience = patience
        self.metric = metric
        self.greater_is_better = greater_is_better
        self.min_delta = min_delta
        self.name = name
        self.best_round = -1
        self.best_score = math.nan

    def compute(self, config, model, iteration, train_history, test_history) -> bool:
        history = test_history if test_history else train_history
        if not history:
            return False

        latest = history[-1]
        metric = self.metric or next(iter(latest), None)
        if metric is None or metric not in latest:
            return False

        value = latest[metric]
        round_ = len(history) - 1
        if self.best_round < 0 or self._improved(value, self._direction(config, metric)):
            self.best_round = round_
            self.best_score = value
            return False

        if round_ - self.best_round >= self.patience:
            logger.info(
                "Early stopping: %s did not improve for %d iterations (best %.6g at %d)",
                metric, self.patience, self.best_score, self.best_round,
            )
            return True
        return False

    def _direction(self, config: BoostConfig | None, metric: str) -> bool:
        if self.greater_is_better is not None:
            return self.greater_is_better
        funcs = config.eval_funcs if config is not None else ()
        return next((f.greater_is_better for f in funcs if f.name == metric), False)

    def _improved(self, value: float, greater_is_better: bool) -> bool:
        if greater_is_better:
            return value > self.best_score + self.min_delta
        return value < self.best_score - self.min_delta


class MetricsLogger(Callback):
    """Log the latest metrics every ``period`` iterations. Never stops training."""

    def __init__(self, period: int = 1, name: str = "metrics_logger"):
        if period < 1:
            raise ValueError(f"period must be >= 1, got {period}")
        self.period = period
        self.name = name

    def compute(self, config, model, iteration, train_history, test_history) -> bool:
        if iteration % self.period == 0:
            train = train_history[-1] if train_history else {}
            test = test_history[-1] if test_history else {}
            logger.info(
                "[%d] trees=%d train=%s test=%s",
                iteration, model.num_trees, _format(train), _format(test),
            )
        return False


def _format(metrics: dict[str, float]) -> str:
    return "(" + ", ".join(f"{k}={v:.6g}" for k, v in metrics.items()) + ")"
