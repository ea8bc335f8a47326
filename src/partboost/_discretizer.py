"""Feature discretization for partboost.

Raw float features are mapped to small integer bins before training. Bin ``0``
always means missing (NaN, or a category never seen while fitting); real values
use bins ``1 .. num_bins - 1``.

- Numeric columns: quantile edges, so every bin holds about the same number of
  training rows.
- Categorical columns: each distinct value gets its own bin, most frequent
  values first when there are more values than bins.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable

import numpy as np
from joblib import Parallel, delayed

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from ._distributed import PartitionedDataset

logger = logging.getLogger(__name__)


class QuantileDiscretizer:
    """Quantile binning of numeric columns and index binning of categorical ones.

    Args:
        max_bins: Number of bins per column, missing bin included.
        cat_cols: Indices of categorical columns.
        n_jobs: Columns binned in parallel (``-1`` for all cores).

    Example:
        >>> X = np.array([[1.0, 0.0], [2.0, 1.0], [np.nan, 1.0]])
        >>> disc = QuantileDiscretizer(max_bins=8, cat_cols=[1]).fit(X)
        >>> disc.transform(X)[2]
        array([0, 2], dtype=int32)
    """

    def __init__(self, max_bins: int = 64, cat_cols: Iterable[int] = (), n_jobs: int = -1):
        if max_bins < 4:
            raise ValueError(f"max_bins must be >= 4, got {max_bins}")
        self.max_bins = max_bins
        self.cat_cols = frozenset(int(c) for c in cat_cols)
        self.n_jobs = n_jobs
        self.edges_: list[NDArray | None] | None = None
        self.categories_: list[NDArray | None] | None = None

    # -------------------------------------------------------------------------
    # Fitting
    # -------------------------------------------------------------------------

    def fit(self, X: ArrayLike) -> QuantileDiscretizer:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2:
            raise ValueError(f"X must be 2D (n_samples, n_features), got shape {X.shape}")
        if X.shape[0] == 0:
            raise ValueError("Cannot fit a discretizer on zero rows")

        bad = [c for c in self.cat_cols if c >= X.shape[1]]
        if bad:
            raise ValueError(f"cat_cols {bad} out of range for {X.shape[1]} columns")

        # Use threads (not processes) to avoid copying X
        results = Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(self._fit_column)(X[:, f], f in self.cat_cols) for f in range(X.shape[1])
        )
        self.edges_ = [r[0] for r in results]
        self.categories_ = [r[1] for r in results]

        logger.info(
            "Discretizer fitted: %d columns (%d categorical), %d bins",
            self.num_cols, len(self.cat_cols), self.num_bins,
        )
        return self

    def fit_dataset(self, dataset: PartitionedDataset) -> QuantileDiscretizer:
        """Fit on the raw vectors of ``(weight, label, vector)`` rows."""
        vectors = [np.asarray(v, dtype=np.float64) for _, _, v in dataset.iterate()]
        if not vectors:
            raise ValueError(f"Cannot fit a discretizer on empty dataset {dataset.name!r}")
        return self.fit(np.stack(vectors))

    def _fit_column(self, col: NDArray, is_cat: bool) -> tuple[NDArray | None, NDArray | None]:
        values = col[~np.isnan(col)]
        n_real = self.max_bins - 1

        if is_cat:
            if values.size == 0:
                return None, np.empty(0, dtype=np.float64)
            cats, counts = np.unique(values, return_counts=True)
            if cats.size > n_real:
                keep = np.argsort(-counts, kind="stable")[:n_real]
                cats = np.sort(cats[keep])
            return None, cats

        if values.size == 0:
            return np.empty(0, dtype=np.float64), None
        percentiles = np.linspace(0, 100, n_real + 1)[1:-1]
        # Remove duplicate edges (constant or low-cardinality features)
        edges = np.unique(np.percentile(values, percentiles))
        return edges, None

    # -------------------------------------------------------------------------
    # Transform
    # -------------------------------------------------------------------------

    @property
    def num_cols(self) -> int:
        self._check_fitted()
        return len(self.edges_)

    @property
    def num_bins(self) -> int:
        return self.max_bins

    def transform(self, X: ArrayLike) -> NDArray:
        """Bin a 2-D matrix (or a single row) into ``int32`` bin ids."""
        self._check_fitted()
        X = np.asarray(X, dtype=np.float64)
        single = X.ndim == 1
        if single:
            X = X.reshape(1, -1)
        if X.ndim != 2 or X.shape[1] != self.num_cols:
            raise ValueError(
                f"X must have shape (n_samples, {self.num_cols}), got {X.shape}"
            )

        out = np.zeros(X.shape, dtype=np.int32)
        for f in range(self.num_cols):
            col = X[:, f]
            missing = np.isnan(col)
            if self.categories_[f] is not None:
                cats = self.categories_[f]
                if cats.size == 0:
                    continue
                pos = np.clip(np.searchsorted(cats, col), 0, cats.size - 1)
                found = ~missing & (cats[pos] == col)
                out[:, f] = np.where(found, pos + 1, 0)
            else:
                out[:, f] = np.where(missing, 0, np.digitize(col, self.edges_[f]) + 1)
        return out[0] if single else out

    def _check_fitted(self) -> None:
        if self.edges_ is None:
            raise RuntimeError("QuantileDiscretizer is not fitted. Call fit() first.")

    def __repr__(self) -> str:
        return f"QuantileDiscretizer(max_bins={self.max_bins}, cat_cols={sorted(self.cat_cols)})"
