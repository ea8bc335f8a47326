"""High-level estimator over numpy arrays or partitioned datasets.

Example:
    >>> import partboost as pb
    >>> config = pb.BoostConfig(objective=pb.SquaredError(), max_iter=50,
    ...                         eval_funcs=[pb.RMSE()])
    >>> gbm = pb.GBM(config).fit(X_train, y_train, eval_set=(X_val, y_val))
    >>> gbm.predict(X_test)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from .._boosting import boost
from .._config import BoostConfig
from .._discretizer import QuantileDiscretizer
from .._distributed import PartitionedDataset
from .._model import GBMModel

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from .._core._growth import TreeTrainer

logger = logging.getLogger(__name__)


class GBM:
    """Gradient boosting machine.

    Args:
        config: Boosting configuration. ``config.objective`` is required.
        trainer: Tree trainer; the built-in histogram trainer by default.

    Attributes:
        model_: Fitted :class:`GBMModel`.
        train_history_: Train metrics per iteration.
        test_history_: Test metrics per iteration.
        n_iter_: Iterations run.
    """

    def __init__(self, config: BoostConfig, trainer: TreeTrainer | None = None):
        self.config = config
        self.trainer = trainer
        self.model_: GBMModel | None = None
        self.train_history_: list[dict[str, float]] = []
        self.test_history_: list[dict[str, float]] = []
        self.n_iter_ = 0

    # =========================================================================
    # Fitting
    # =========================================================================

    def fit(
        self,
        X: ArrayLike,
        y: ArrayLike,
        sample_weight: ArrayLike | None = None,
        eval_set: tuple[ArrayLike, ArrayLike] | list[tuple[ArrayLike, ArrayLike]] | None = None,
        init_model: GBMModel | None = None,
    ) -> GBM:
        """Fit on in-memory arrays.

        Rows are split into ``config.num_partitions`` contiguous partitions.

        Args:
            X: Features, shape (n_samples, n_features). NaN marks missing values.
            y: Labels, shape (n_samples,) or (n_samples, label_width).
            sample_weight: Non-negative instance weights.
            eval_set: ``(X_val, y_val)``, or a list whose first pair is used.
            init_model: Model to continue training from.
        """
        self.config.validate()
        train = self._to_dataset(X, y, sample_weight, "Train")

        test = None
        if eval_set is not None:
            if isinstance(eval_set, list):
                if not eval_set:
                    raise ValueError("eval_set must not be an empty list")
                eval_set = eval_set[0]
            X_val, y_val = eval_set
            test = self._to_dataset(X_val, y_val, None, "Test")

        discretizer = self._discretizer(init_model)
        if discretizer is None:
            discretizer = self._new_discretizer().fit(np.asarray(X, dtype=np.float64))
        return self._boost(train, test, discretizer, init_model)

    def fit_dataset(
        self,
        train: PartitionedDataset,
        test: PartitionedDataset | None = None,
        init_model: GBMModel | None = None,
    ) -> GBM:
        """Fit on partitioned ``(weight, label_vector, raw_vector)`` rows."""
        self.config.validate()
        discretizer = self._discretizer(init_model)
        if discretizer is None:
            discretizer = self._new_discretizer().fit_dataset(train)
        return self._boost(train, test, discretizer, init_model)

    def _boost(self, train, test, discretizer, init_model) -> GBM:
        model, state = boost(
            train, test, self.config, discretizer,
            trainer=self.trainer, init_model=init_model,
        )
        self.model_ = model
        self.train_history_ = state.train_history
        self.test_history_ = state.test_history
        self.n_iter_ = state.iteration
        return self

    def _new_discretizer(self) -> QuantileDiscretizer:
        return QuantileDiscretizer(
            max_bins=self.config.max_bins,
            cat_cols=self.config.cat_cols,
            n_jobs=self.config.n_jobs,
        )

    def _discretizer(self, init_model: GBMModel | None) -> QuantileDiscretizer | None:
        if init_model is None:
            return None
        logger.warning(
            "Continuing from an initial model: its discretizer replaces max_bins and cat_cols"
        )
        return init_model.discretizer

    def _to_dataset(
        self,
        X: ArrayLike,
        y: ArrayLike,
        sample_weight: ArrayLike | None,
        name: str,
    ) -> PartitionedDataset:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2:
            raise ValueError(f"X must be 2D (n_samples, n_features), got shape {X.shape}")
        labels = self.config.objective.prepare_labels(y)
        if labels.shape[0] != X.shape[0]:
            raise ValueError(f"X has {X.shape[0]} rows but y has {labels.shape[0]}")

        if sample_weight is None:
            weights = np.ones(X.shape[0], dtype=np.float64)
        else:
            weights = np.asarray(sample_weight, dtype=np.float64).ravel()
            if weights.shape[0] != X.shape[0]:
                raise ValueError(
                    f"sample_weight has {weights.shape[0]} entries, X has {X.shape[0]} rows"
                )
            if np.any(weights < 0) or not np.all(np.isfinite(weights)):
                raise ValueError("sample_weight must be finite and non-negative")

        rows = list(zip(weights, labels, X))
        return PartitionedDataset.from_sequence(
            rows, self.config.num_partitions, name=name, n_jobs=self.config.n_jobs
        )

    # =========================================================================
    # Prediction
    # =========================================================================

    def _check_fitted(self) -> GBMModel:
        if self.model_ is None:
            raise RuntimeError("GBM is not fitted. Call fit() first.")
        return self.model_

    def predict_raw(self, X: ArrayLike, num_trees: int | None = None) -> NDArray:
        return self._check_fitted().predict_raw(X, num_trees)

    def predict(self, X: ArrayLike, num_trees: int | None = None) -> NDArray:
        return self._check_fitted().predict(X, num_trees)

    def leaf(self, X: ArrayLike) -> NDArray:
        return self._check_fitted().leaf(X)

    def save(self, path: str | Path) -> None:
        self._check_fitted().save(path)

    def __repr__(self) -> str:
        fitted = self.model_ is not None
        return f"GBM(objective={self.config.objective!r}, fitted={fitted})"
