"""
Robust residual weighting: none, Huber, and Student t-distribution.

The t-distribution scale is the fixed point of

    sigma^2 = mean( r^2 * (nu + 1) / (nu + r^2 / sigma^2) )

refined for a fixed number of iterations from sigma^2 = mean(r^2).
"""

from __future__ import annotations

from enum import IntEnum

import numpy as np

from .errors import ConfigurationError, InsufficientDataError

T_DIST_DOF = 5.0
T_DIST_SCALE_ITERATIONS = 5
VARIANCE_FLOOR = 1e-12
SCALE_BLOCK_SIZE = 1024


class RobustEstimator(IntEnum):
    NONE = 0
    HUBER = 1
    T_DISTRIBUTION = 2

    @classmethod
    def parse(cls, value) -> "RobustEstimator":
        """Accept an enum member, its integer code, or a name like "huber" / "tdist"."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower().replace("-", "_")
            aliases = {"none": cls.NONE, "no": cls.NONE, "huber": cls.HUBER,
                       "t_distribution": cls.T_DISTRIBUTION, "tdist": cls.T_DISTRIBUTION,
                       "t_dist": cls.T_DISTRIBUTION}
            if key in aliases:
                return aliases[key]
            raise ConfigurationError(f"unknown robust estimator '{value}'")
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise ConfigurationError(f"unknown robust estimator {value!r}") from None


def huber_weights(r: np.ndarray, delta: float) -> np.ndarray:
    a = np.abs(r)
    w = np.ones_like(r, dtype=np.float64)
    mask = a > delta
    w[mask] = delta / a[mask]
    return w


def compute_scale_naive(residual: np.ndarray, dof: float = T_DIST_DOF,
                        iterations: int = T_DIST_SCALE_ITERATIONS) -> float:
    """t-distribution scale, accumulated one residual at a time."""
    n = len(residual)
    if n == 0:
        raise InsufficientDataError("cannot estimate a scale from zero residuals")
    acc = 0.0
    for r in residual:
        acc += float(r) * float(r)
    var = max(acc / n, VARIANCE_FLOOR)
    for _ in range(iterations):
        acc = 0.0
        for r in residual:
            r2 = float(r) * float(r)
            acc += r2 * (dof + 1.0) / (dof + r2 / var)
        var = max(acc / n, VARIANCE_FLOOR)
    return float(np.sqrt(var))


def compute_scale_vectorized(residual: np.ndarray, dof: float = T_DIST_DOF,
                             iterations: int = T_DIST_SCALE_ITERATIONS,
                             block_size: int = SCALE_BLOCK_SIZE) -> float:
    """t-distribution scale with block-wise accumulation of the sufficient statistics."""
    residual = np.asarray(residual, dtype=np.float64)
    n = residual.shape[0]
    if n == 0:
        raise InsufficientDataError("cannot estimate a scale from zero residuals")
    r2 = residual * residual
    starts = range(0, n, block_size)
    var = max(sum(float(r2[s:s + block_size].sum()) for s in starts) / n, VARIANCE_FLOOR)
    for _ in range(iterations):
        acc = 0.0
        for s in starts:
            blk = r2[s:s + block_size]
            acc += float((blk * (dof + 1.0) / (dof + blk / var)).sum())
        var = max(acc / n, VARIANCE_FLOOR)
    return float(np.sqrt(var))


def t_distribution_weights(r: np.ndarray, scale: float, dof: float = T_DIST_DOF) -> np.ndarray:
    z = r / scale
    return (dof + 1.0) / (dof + z * z)


def compute_weights(residual: np.ndarray, estimator: RobustEstimator,
                    huber_delta: float = 4.0 / 255.0, dof: float = T_DIST_DOF,
                    vectorized: bool = True) -> np.ndarray:
    """Per-residual weights (diagonal of W), all strictly positive and finite."""
    if estimator == RobustEstimator.NONE:
        return np.ones_like(residual, dtype=np.float64)
    if estimator == RobustEstimator.HUBER:
        return huber_weights(residual, huber_delta)
    if estimator == RobustEstimator.T_DISTRIBUTION:
        if vectorized:
            scale = compute_scale_vectorized(residual, dof)
        else:
            scale = compute_scale_naive(residual, dof)
        return t_distribution_weights(residual, scale, dof)
    raise ConfigurationError(f"unknown robust estimator {estimator!r}")
