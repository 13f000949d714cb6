"""
Numerical kernels of the training loop.

All dictionary mutations travel through an additive store, so the kernels
here return *increments*. ``B`` is the worker's local ``m x dictionary_size``
cache (one column per dictionary atom), ``x`` a data column of length ``m``
and ``s`` a coefficient column of length ``dictionary_size``.
"""

from __future__ import annotations
import numpy as np


def step_size(init: float, offset: float, power: float, t: int) -> float:
    """
    Decaying step size ``init * (offset + t) ** (-power)``.

    ``t`` is the worker's minibatch counter. A zero base with a positive
    power yields ``inf`` rather than raising.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(init * np.power(np.float64(offset + t), -np.float64(power)))


def nonnegative(x: np.ndarray) -> np.ndarray:
    """Elementwise ``max(x, 0)``; NaN entries stay NaN."""
    x = np.asarray(x)
    return np.maximum(x, np.zeros_like(x))


def absolute_to_increment(current: np.ndarray, target: np.ndarray) -> np.ndarray:
    """
    Increment that moves ``current`` to ``target`` in an additive store.

    Stores that only accept deltas are set to an absolute value by adding
    ``target - current``. Applying the result once lands exactly on
    ``target``; it must not be applied twice.
    """
    current = np.asarray(current, dtype=np.float32)
    target = np.asarray(target, dtype=np.float32)
    return target - current


def projection_correction(row: np.ndarray, num_workers: int) -> np.ndarray:
    """
    Share of the non-negativity projection one worker contributes.

    Every worker of the job projects every dictionary row after each
    minibatch; each adds ``1 / num_workers`` of the correction so that the
    contributions sum to one full projection.
    """
    return absolute_to_increment(row, nonnegative(row)) / np.float32(num_workers)


def residual(B: np.ndarray, x: np.ndarray, s: np.ndarray) -> np.ndarray:
    """``x - B s``."""
    return x - B @ s


def coefficient_step(B: np.ndarray, x: np.ndarray, s: np.ndarray,
                     step: float) -> np.ndarray:
    """Gradient step on one coefficient column: ``step * Bᵀ (x - B s)``."""
    return (np.float32(step) * (B.T @ residual(B, x, s))).astype(np.float32)


def dictionary_step(B: np.ndarray, x: np.ndarray, s: np.ndarray,
                    step: float) -> np.ndarray:
    """Dictionary gradient contribution ``step * (x - B s) sᵀ``."""
    return np.float32(step) * np.outer(residual(B, x, s), s).astype(np.float32)


def reconstruction_error(B: np.ndarray, x: np.ndarray, s: np.ndarray) -> float:
    """Squared reconstruction error ``‖x - B s‖²``."""
    r = residual(B, x, s)
    return float(r @ r)
