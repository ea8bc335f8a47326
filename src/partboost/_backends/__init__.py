"""Compute backends for partboost. Only the Numba CPU backend is provided."""

from ._cpu import build_histogram_cpu, predict_cpu

__all__ = ["build_histogram_cpu", "predict_cpu"]
