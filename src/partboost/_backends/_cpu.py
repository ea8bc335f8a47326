"""CPU backend implementations using Numba JIT."""

from __future__ import annotations

import numpy as np
from numba import jit, prange


# =============================================================================
# Histogram Functions
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def _build_histogram_cpu(
    matrix: np.ndarray,     # (n_samples, n_cols) int32 bins
    rows: np.ndarray,       # (n_rows,) int64 sample indices of the node
    grad: np.ndarray,       # (n_samples,) float64
    hess: np.ndarray,       # (n_samples,) float64
    cols: np.ndarray,       # (n_selected,) int64 columns to histogram
    hist_grad: np.ndarray,  # (n_selected, n_bins) float64
    hist_hess: np.ndarray,  # (n_selected, n_bins) float64
):
    """Build gradient and hessian histograms for a node's rows (CPU)."""
    n_rows = rows.shape[0]

    # Process columns in parallel
    for k in prange(cols.shape[0]):
        c = cols[k]
        for r in range(n_rows):
            i = rows[r]
            b = matrix[i, c]
            hist_grad[k, b] += grad[i]
            hist_hess[k, b] += hess[i]


def build_histogram_cpu(
    matrix: np.ndarray,
    rows: np.ndarray,
    grad: np.ndarray,
    hess: np.ndarray,
    cols: np.ndarray,
    n_bins: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Build histograms on CPU.

    Args:
        matrix: Binned feature matrix, shape (n_samples, n_cols), int32
        rows: Row indices belonging to the node
        grad: Gradient vector, shape (n_samples,)
        hess: Hessian vector, shape (n_samples,)
        cols: Columns to build histograms for
        n_bins: Number of bins (bin 0 is missing)

    Returns:
        hist_grad: Gradient histogram, shape (len(cols), n_bins), float64
        hist_hess: Hessian histogram, shape (len(cols), n_bins), float64
    """
    hist_grad = np.zeros((cols.shape[0], n_bins), dtype=np.float64)
    hist_hess = np.zeros((cols.shape[0], n_bins), dtype=np.float64)

    _build_histogram_cpu(
        np.ascontiguousarray(matrix, dtype=np.int32),
        np.ascontiguousarray(rows, dtype=np.int64),
        np.ascontiguousarray(grad, dtype=np.float64),
        np.ascontiguousarray(hess, dtype=np.float64),
        np.ascontiguousarray(cols, dtype=np.int64),
        hist_grad,
        hist_hess,
    )

    return hist_grad, hist_hess


# =============================================================================
# Prediction
# =============================================================================

@jit(nopython=True, parallel=True, cache=True)
def _predict_cpu(
    matrix: np.ndarray,           # (n_samples, n_cols) int32
    col_ids: np.ndarray,          # (n_nodes,) int32
    is_seq: np.ndarray,           # (n_nodes,) bool
    missing_go_left: np.ndarray,  # (n_nodes,) bool
    thresholds: np.ndarray,       # (n_nodes,) int32
    cat_offsets: np.ndarray,      # (n_nodes + 1,) int64
    cat_values: np.ndarray,       # (n_categories,) int32, sorted per node
    polarity: np.ndarray,         # (n_nodes,) bool
    left_children: np.ndarray,    # (n_nodes,) int32
    right_children: np.ndarray,   # (n_nodes,) int32
    weights: np.ndarray,          # (n_nodes,) float64
    leaf_ids: np.ndarray,         # (n_nodes,) int64
    predictions: np.ndarray,      # (n_samples,) float64
    indices: np.ndarray,          # (n_samples,) int64
):
    """Predict using a flat node table (CPU)."""
    n_samples = matrix.shape[0]

    for i in prange(n_samples):
        node = 0
        while left_children[node] != -1:
            b = matrix[i, col_ids[node]]

            if b == 0:
                go = missing_go_left[node]
            elif is_seq[node]:
                go = b <= thresholds[node]
            else:
                # Binary search in the node's sorted category slice
                go = False
                lo = cat_offsets[node]
                hi = cat_offsets[node + 1]
                while lo < hi:
                    mid = (lo + hi) // 2
                    v = cat_values[mid]
                    if v == b:
                        go = True
                        break
                    elif v < b:
                        lo = mid + 1
                    else:
                        hi = mid

            if not polarity[node]:
                go = not go

            if go:
                node = left_children[node]
            else:
                node = right_children[node]

        predictions[i] = weights[node]
        indices[i] = leaf_ids[node]


def predict_cpu(
    matrix: np.ndarray,
    col_ids: np.ndarray,
    is_seq: np.ndarray,
    missing_go_left: np.ndarray,
    thresholds: np.ndarray,
    cat_offsets: np.ndarray,
    cat_values: np.ndarray,
    polarity: np.ndarray,
    left_children: np.ndarray,
    right_children: np.ndarray,
    weights: np.ndarray,
    leaf_ids: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Predict a block of binned rows with one tree on CPU.

    Returns:
        predictions: Shape (n_samples,), float64 leaf weights
        indices: Shape (n_samples,), int64 leaf ids
    """
    n_samples = matrix.shape[0]
    predictions = np.empty(n_samples, dtype=np.float64)
    indices = np.empty(n_samples, dtype=np.int64)

    _predict_cpu(
        np.ascontiguousarray(matrix, dtype=np.int32),
        col_ids, is_seq, missing_go_left, thresholds,
        cat_offsets, cat_values, polarity,
        left_children, right_children, weights, leaf_ids,
        predictions, indices,
    )

    return predictions, indices
