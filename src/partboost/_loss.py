"""Objective functions for partboost.

An objective maps raw scores to usable predictions (``transform``) and
produces first and second order gradients (``compute``). Every method accepts
either one row (1-D arrays) or a whole block (2-D arrays, one row per
instance); reductions always run over the last axis.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray


class Objective(ABC):
    """Base class for objectives.

    Attributes:
        name: Identifier used in logs and persisted models.
        raw_size: Number of raw score dimensions per row.
    """

    name: str = "objective"
    raw_size: int = 1

    @abstractmethod
    def transform(self, raw: NDArray) -> NDArray:
        """Map raw scores to scores (e.g. probabilities)."""
        ...

    @abstractmethod
    def compute(self, label: NDArray, score: NDArray) -> tuple[NDArray, NDArray]:
        """Return ``(grad, hess)`` with the same shape as ``score``."""
        ...

    def inverse_transform(self, score: NDArray) -> NDArray:
        """Map scores back to raw space. Used to derive the raw base score."""
        return np.asarray(score, dtype=np.float64)

    def prepare_labels(self, y: ArrayLike) -> NDArray:
        """Convert user labels to a 2-D ``(n_samples, label_width)`` array."""
        y = np.asarray(y, dtype=np.float64)
        if y.ndim == 1:
            y = y.reshape(-1, 1)
        if y.ndim != 2:
            raise ValueError(f"y must be 1D or 2D, got shape {y.shape}")
        return y

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


# =============================================================================
# Squared Error (Regression)
# =============================================================================

class SquaredError(Objective):
    """Squared error.

    Loss: L = (score - y)^2
    Gradient: 2 * (score - y)
    Hessian: 2
    """

    name = "squared_error"
    raw_size = 1

    def transform(self, raw: NDArray) -> NDArray:
        return np.asarray(raw, dtype=np.float64)

    def compute(self, label: NDArray, score: NDArray) -> tuple[NDArray, NDArray]:
        grad = 2.0 * (score - label)
        hess = np.full_like(grad, 2.0)
        return grad, hess


# =============================================================================
# Logistic (Binary Classification)
# =============================================================================

def _sigmoid(x: NDArray) -> NDArray:
    """Numerically stable sigmoid."""
    x = np.asarray(x, dtype=np.float64)
    e = np.exp(-np.abs(x))
    return np.where(x >= 0, 1.0 / (1.0 + e), e / (1.0 + e))


class Logistic(Objective):
    """Binary cross-entropy on a sigmoid link.

    Gradient: p - y
    Hessian: p * (1 - p), clipped away from zero
    """

    name = "logistic"
    raw_size = 1

    def transform(self, raw: NDArray) -> NDArray:
        return _sigmoid(raw)

    def compute(self, label: NDArray, score: NDArray) -> tuple[NDArray, NDArray]:
        grad = score - label
        hess = np.clip(score * (1.0 - score), 1e-6, 1.0 - 1e-6)
        return grad, hess

    def inverse_transform(self, score: NDArray) -> NDArray:
        p = np.clip(np.asarray(score, dtype=np.float64), 1e-6, 1.0 - 1e-6)
        return np.log(p / (1.0 - p))


# =============================================================================
# Softmax (Multi-class Classification)
# =============================================================================

class Softmax(Objective):
    """Softmax cross-entropy over ``num_classes`` raw dimensions.

    Labels are one-hot vectors of width ``num_classes``; integer class labels
    are one-hot encoded by :meth:`prepare_labels`.
    """

    name = "softmax"

    def __init__(self, num_classes: int):
        if num_classes < 2:
            raise ValueError(f"num_classes must be >= 2, got {num_classes}")
        self.num_classes = num_classes
        self.raw_size = num_classes

    def transform(self, raw: NDArray) -> NDArray:
        raw = np.asarray(raw, dtype=np.float64)
        shifted = raw - np.max(raw, axis=-1, keepdims=True)
        e = np.exp(shifted)
        return e / np.sum(e, axis=-1, keepdims=True)

    def compute(self, label: NDArray, score: NDArray) -> tuple[NDArray, NDArray]:
        grad = score - label
        hess = np.clip(score * (1.0 - score), 1e-6, 1.0 - 1e-6)
        return grad, hess

    def inverse_transform(self, score: NDArray) -> NDArray:
        p = np.clip(np.asarray(score, dtype=np.float64), 1e-6, 1.0)
        return np.log(p)

    def prepare_labels(self, y: ArrayLike) -> NDArray:
        y = np.asarray(y)
        if y.ndim == 2 and y.shape[1] == self.num_classes:
            return y.astype(np.float64)
        y = y.ravel().astype(np.int64)
        if y.size and (y.min() < 0 or y.max() >= self.num_classes):
            raise ValueError(
                f"Labels must be in [0, {self.num_classes - 1}], got [{y.min()}, {y.max()}]"
            )
        onehot = np.zeros((y.shape[0], self.num_classes), dtype=np.float64)
        onehot[np.arange(y.shape[0]), y] = 1.0
        return onehot

    def __repr__(self) -> str:
        return f"Softmax(num_classes={self.num_classes})"


def get_objective(objective: str | Objective, **kwargs) -> Objective:
    """Get an objective by name or return the given instance.

    Args:
        objective: Either an :class:`Objective` or one of ``'squared_error'``
            (alias ``'mse'``), ``'logistic'`` (alias ``'logloss'``),
            ``'softmax'``.
        **kwargs: Constructor arguments (``num_classes`` for softmax).
    """
    if isinstance(objective, Objective):
        return objective

    objective_map = {
        "mse": SquaredError,
        "squared_error": SquaredError,
        "logloss": Logistic,
        "logistic": Logistic,
        "softmax": Softmax,
    }

    if objective not in objective_map:
        available = ", ".join(objective_map.keys())
        raise ValueError(f"Unknown objective '{objective}'. Available: {available}")

    return objective_map[objective](**kwargs)
