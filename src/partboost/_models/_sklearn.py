"""sklearn-compatible wrappers for partboost models.

Thin adapters that provide sklearn compatibility
(GridSearchCV, cross_val_score, Pipeline, etc.).

These wrappers delegate to :class:`~partboost.GBM` while providing:
- sklearn BaseEstimator interface (get_params, set_params)
- RegressorMixin / ClassifierMixin (score method)
- Input validation (check_X_y, check_array), NaN allowed as missing
- Feature importance as a property

Example:
    >>> from partboost import GBMRegressor, GBMClassifier
    >>> from sklearn.model_selection import GridSearchCV
    >>>
    >>> reg = GBMRegressor(n_estimators=100, max_depth=6)
    >>> reg.fit(X_train, y_train)
    >>> reg.score(X_test, y_test)  # R² score
    >>>
    >>> clf = GBMClassifier(n_estimators=100, boost_type="dart", drop_rate=0.1)
    >>> clf.fit(X_train, y_train)
    >>> clf.predict_proba(X_test)
    >>>
    >>> param_grid = {'n_estimators': [50, 100], 'max_depth': [3, 5, 7]}
    >>> search = GridSearchCV(GBMRegressor(), param_grid, cv=5)
    >>> search.fit(X, y)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from sklearn.base import BaseEstimator, ClassifierMixin, RegressorMixin
from sklearn.preprocessing import LabelEncoder
from sklearn.utils.validation import check_array, check_is_fitted, check_X_y

from .._callbacks import EarlyStopping, MetricsLogger
from .._config import BoostConfig
from .._loss import Logistic, Softmax, SquaredError
from .._metrics import RMSE, LogLoss
from ._gbm import GBM

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._loss import Objective


class _GBMEstimatorMixin:
    """Config assembly and attributes shared by both wrappers."""

    def _make_config(self, objective: Objective, metric, has_eval: bool) -> tuple[BoostConfig, EarlyStopping | None]:
        callbacks = []
        early_stopping = None
        if self.early_stopping_rounds is not None and has_eval:
            early_stopping = EarlyStopping(patience=self.early_stopping_rounds, metric=metric.name)
            callbacks.append(early_stopping)
        if self.verbose:
            callbacks.append(MetricsLogger(period=int(self.verbose)))

        config = BoostConfig(
            max_iter=self.n_estimators,
            max_depth=self.max_depth,
            max_leaves=self.max_leaves,
            step_size=self.learning_rate,
            min_node_hess=self.min_child_weight,
            reg_lambda=self.reg_lambda,
            reg_alpha=self.reg_alpha,
            min_gain=self.gamma,
            sub_sample=self.subsample,
            col_sample_by_tree=self.colsample_bytree,
            max_bins=self.n_bins,
            objective=objective,
            eval_funcs=[metric] if has_eval else [],
            callbacks=callbacks,
            boost_type=self.boost_type,
            drop_rate=self.drop_rate,
            drop_skip=self.drop_skip,
            checkpoint_interval=-1,
            num_partitions=self.n_partitions,
            n_jobs=self.n_jobs,
            seed=0 if self.random_state is None else int(self.random_state),
        )
        return config, early_stopping

    def _fit_booster(self, X, y, sample_weight, eval_set, objective, metric):
        config, early_stopping = self._make_config(objective, metric, eval_set is not None)
        self.booster_ = GBM(config).fit(X, y, sample_weight=sample_weight, eval_set=eval_set)
        self.n_iter_ = self.booster_.n_iter_

        self._best_num_trees = None
        if early_stopping is not None and early_stopping.best_round >= 0:
            self.best_iteration_ = early_stopping.best_round
            self.best_score_ = early_stopping.best_score
            # trees grown per iteration
            per_iter = config.base_model_parallelism * objective.raw_size
            self._best_num_trees = (self.best_iteration_ + 1) * per_iter

    @property
    def feature_importances_(self) -> NDArray:
        """Feature importances based on split frequency."""
        check_is_fitted(self, 'booster_')
        return self.booster_.model_.feature_importances()


class GBMRegressor(_GBMEstimatorMixin, RegressorMixin, BaseEstimator):
    """Gradient Boosting Regressor with sklearn-compatible interface.

    Parameters
    ----------
    n_estimators : int, default=100
        Number of boosting rounds.
    max_depth : int, default=6
        Maximum depth of each tree.
    max_leaves : int, default=1000
        Maximum number of leaves per tree.
    learning_rate : float, default=0.1
        Shrinkage factor; under DART the normalization constant.
    min_child_weight : float, default=1.0
        Minimum sum of hessian in a child node.
    reg_lambda : float, default=1.0
        L2 regularization on leaf values.
    reg_alpha : float, default=0.0
        L1 regularization on leaf values.
    gamma : float, default=0.0
        Minimum gain required to make a split.
    subsample : float, default=1.0
        Fraction of rows sampled for each tree.
    colsample_bytree : float, default=1.0
        Fraction of features used by each tree.
    n_bins : int, default=64
        Bins per feature, missing bin included.
    boost_type : {'gbtree', 'dart'}, default='gbtree'
        Boosting algorithm.
    drop_rate : float, default=0.0
        DART fraction of trees dropped per iteration.
    drop_skip : float, default=0.5
        DART probability of skipping dropout in an iteration.
    early_stopping_rounds : int, optional
        Stop training if validation RMSE doesn't improve for this many rounds.
        Requires eval_set to be passed to fit().
    verbose : int, default=0
        Verbosity level (0=silent, N=log every N rounds).
    random_state : int, optional
        Random seed for reproducibility.
    n_partitions : int, default=4
        Partitions the training rows are split into.
    n_jobs : int, default=1
        Parallel jobs for partitions and trees.

    Attributes
    ----------
    n_features_in_ : int
        Number of features seen during fit.
    feature_importances_ : ndarray of shape (n_features_in_,)
        Feature importances (based on split frequency).
    booster_ : GBM
        The underlying fitted estimator.
    best_iteration_ : int
        Iteration with best validation score (if early stopping used).
    best_score_ : float
        Best validation score achieved (if early stopping used).

    Examples
    --------
    >>> reg = GBMRegressor(n_estimators=1000, early_stopping_rounds=50)
    >>> reg.fit(X_train, y_train, eval_set=[(X_val, y_val)])
    >>> print(f"Best iteration: {reg.best_iteration_}")
    """

    def __init__(
        self,
        n_estimators: int = 100,
        max_depth: int = 6,
        max_leaves: int = 1000,
        learning_rate: float = 0.1,
        min_child_weight: float = 1.0,
        reg_lambda: float = 1.0,
        reg_alpha: float = 0.0,
        gamma: float = 0.0,
        subsample: float = 1.0,
        colsample_bytree: float = 1.0,
        n_bins: int = 64,
        boost_type: str = 'gbtree',
        drop_rate: float = 0.0,
        drop_skip: float = 0.5,
        early_stopping_rounds: int | None = None,
        verbose: int = 0,
        random_state: int | None = None,
        n_partitions: int = 4,
        n_jobs: int = 1,
    ):
        self.n_estimators = n_estimators
        self.max_depth = max_depth
        self.max_leaves = max_leaves
        self.learning_rate = learning_rate
        self.min_child_weight = min_child_weight
        self.reg_lambda = reg_lambda
        self.reg_alpha = reg_alpha
        self.gamma = gamma
        self.subsample = subsample
        self.colsample_bytree = colsample_bytree
        self.n_bins = n_bins
        self.boost_type = boost_type
        self.drop_rate = drop_rate
        self.drop_skip = drop_skip
        self.early_stopping_rounds = early_stopping_rounds
        self.verbose = verbose
        self.random_state = random_state
        self.n_partitions = n_partitions
        self.n_jobs = n_jobs

    def fit(
        self,
        X: NDArray,
        y: NDArray,
        sample_weight: NDArray | None = None,
        eval_set: list[tuple[NDArray, NDArray]] | None = None,
    ) -> GBMRegressor:
        """Fit the gradient boosting regressor.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Training features. NaN marks missing values.
        y : array-like of shape (n_samples,)
            Target values.
        sample_weight : array-like of shape (n_samples,), optional
            Sample weights.
        eval_set : list of (X, y) tuples, optional
            Validation set for early stopping; only the first pair is used.

        Returns
        -------
        self : GBMRegressor
            Fitted estimator.
        """
        X, y = check_X_y(X, y, dtype=np.float64, y_numeric=True, ensure_all_finite='allow-nan')
        self.n_features_in_ = X.shape[1]

        if eval_set is not None:
            eval_set = [
                (check_array(X_val, dtype=np.float64, ensure_all_finite='allow-nan'), y_val)
                for X_val, y_val in eval_set
            ]
        self._fit_booster(X, y, sample_weight, eval_set, SquaredError(), RMSE())
        return self

    def predict(self, X: NDArray) -> NDArray:
        """Predict target values.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Features to predict on.

        Returns
        -------
        y_pred : ndarray of shape (n_samples,)
            Predicted values.
        """
        check_is_fitted(self, 'booster_')
        X = check_array(X, dtype=np.float64, ensure_all_finite='allow-nan')
        return self.booster_.predict(X, self._best_num_trees)

    # score() is inherited from RegressorMixin (R² score)


class GBMClassifier(_GBMEstimatorMixin, ClassifierMixin, BaseEstimator):
    """Gradient Boosting Classifier with sklearn-compatible interface.

    Uses a logistic objective for binary targets and softmax for multi-class.
    Parameters are the same as :class:`GBMRegressor`; early stopping watches
    validation log loss.

    Attributes
    ----------
    classes_ : ndarray of shape (n_classes,)
        Unique class labels.
    n_classes_ : int
        Number of classes.
    feature_importances_ : ndarray of shape (n_features_in_,)
        Feature importances (based on split frequency).
    booster_ : GBM
        The underlying fitted estimator.
    """

    def __init__(
        self,
        n_estimators: int = 100,
        max_depth: int = 6,
        max_leaves: int = 1000,
        learning_rate: float = 0.1,
        min_child_weight: float = 1.0,
        reg_lambda: float = 1.0,
        reg_alpha: float = 0.0,
        gamma: float = 0.0,
        subsample: float = 1.0,
        colsample_bytree: float = 1.0,
        n_bins: int = 64,
        boost_type: str = 'gbtree',
        drop_rate: float = 0.0,
        drop_skip: float = 0.5,
        early_stopping_rounds: int | None = None,
        verbose: int = 0,
        random_state: int | None = None,
        n_partitions: int = 4,
        n_jobs: int = 1,
    ):
        self.n_estimators = n_estimators
        self.max_depth = max_depth
        self.max_leaves = max_leaves
        self.learning_rate = learning_rate
        self.min_child_weight = min_child_weight
        self.reg_lambda = reg_lambda
        self.reg_alpha = reg_alpha
        self.gamma = gamma
        self.subsample = subsample
        self.colsample_bytree = colsample_bytree
        self.n_bins = n_bins
        self.boost_type = boost_type
        self.drop_rate = drop_rate
        self.drop_skip = drop_skip
        self.early_stopping_rounds = early_stopping_rounds
        self.verbose = verbose
        self.random_state = random_state
        self.n_partitions = n_partitions
        self.n_jobs = n_jobs

    def fit(
        self,
        X: NDArray,
        y: NDArray,
        sample_weight: NDArray | None = None,
        eval_set: list[tuple[NDArray, NDArray]] | None = None,
    ) -> GBMClassifier:
        """Fit the gradient boosting classifier.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Training features. NaN marks missing values.
        y : array-like of shape (n_samples,)
            Target class labels.
        sample_weight : array-like of shape (n_samples,), optional
            Sample weights.
        eval_set : list of (X, y) tuples, optional
            Validation set for early stopping; only the first pair is used.

        Returns
        -------
        self : GBMClassifier
            Fitted estimator.
        """
        X, y = check_X_y(X, y, dtype=np.float64, ensure_all_finite='allow-nan')
        self.n_features_in_ = X.shape[1]

        self._label_encoder = LabelEncoder()
        y_encoded = self._label_encoder.fit_transform(y)
        self.classes_ = self._label_encoder.classes_
        self.n_classes_ = len(self.classes_)
        if self.n_classes_ < 2:
            raise ValueError(f"Need at least 2 classes, got {self.n_classes_}")

        if eval_set is not None:
            eval_set = [
                (check_array(X_val, dtype=np.float64, ensure_all_finite='allow-nan'),
                 self._label_encoder.transform(y_val))
                for X_val, y_val in eval_set
            ]

        if self.n_classes_ == 2:
            objective = Logistic()
        else:
            objective = Softmax(self.n_classes_)
        self._fit_booster(X, y_encoded, sample_weight, eval_set, objective, LogLoss())
        return self

    def predict(self, X: NDArray) -> NDArray:
        """Predict class labels.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Features to predict on.

        Returns
        -------
        y_pred : ndarray of shape (n_samples,)
            Predicted class labels.
        """
        proba = self.predict_proba(X)
        return self.classes_[np.argmax(proba, axis=1)]

    def predict_proba(self, X: NDArray) -> NDArray:
        """Predict class probabilities.

        Parameters
        ----------
        X : array-like of shape (n_samples, n_features)
            Features to predict on.

        Returns
        -------
        proba : ndarray of shape (n_samples, n_classes)
            Class probabilities.
        """
        check_is_fitted(self, 'booster_')
        X = check_array(X, dtype=np.float64, ensure_all_finite='allow-nan')
        scores = self.booster_.predict(X, self._best_num_trees)
        if self.n_classes_ == 2:
            return np.column_stack([1.0 - scores, scores])
        return scores

    # score() is inherited from ClassifierMixin (accuracy)
