"""High-level estimators for partboost."""

from ._gbm import GBM
from ._sklearn import GBMClassifier, GBMRegressor

__all__ = ["GBM", "GBMClassifier", "GBMRegressor"]
