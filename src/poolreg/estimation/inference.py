"""
Inference Module
================

Numerical derivatives of the negative log-likelihood at the optimum and the
variance estimates built from them.

Provides:
- Central-difference gradient (one-sided next to box bounds)
- Hessian by central differences with Richardson extrapolation
- Inverse-Hessian variance-covariance matrix with singularity checks
- Delta method for nonlinear functions of the parameters

Author: poolreg developers
"""

import warnings
import numpy as np
import pandas as pd
from typing import Callable, Optional, Sequence
from dataclasses import dataclass

from ..utils.logging_config import get_logger

logger = get_logger(__name__)


Objective = Callable[[np.ndarray], float]


# =============================================================================
# NUMERICAL DERIVATIVES
# =============================================================================

def numerical_gradient(func: Objective,
                       x: np.ndarray,
                       step: float = 1e-6,
                       lower: Optional[np.ndarray] = None,
                       upper: Optional[np.ndarray] = None,
                       f0: Optional[float] = None) -> np.ndarray:
    """
    Finite-difference gradient.

    Central differences with step ``step * max(1, |x_j|)``; a forward or
    backward difference is used where the central stencil would leave the
    box [lower, upper].

    Args:
        func: Scalar function of a parameter vector
        x: Evaluation point
        step: Relative step size
        lower: Lower bounds (None for unbounded)
        upper: Upper bounds (None for unbounded)
        f0: func(x), if already known

    Returns:
        Gradient, shape (len(x),)
    """
    x = np.asarray(x, dtype=float)
    n = len(x)
    lower = np.full(n, -np.inf) if lower is None else np.asarray(lower, dtype=float)
    upper = np.full(n, np.inf) if upper is None else np.asarray(upper, dtype=float)

    grad = np.zeros(n)
    for j in range(n):
        h = step * max(1.0, abs(x[j]))
        x_plus = x.copy()
        x_minus = x.copy()
        x_plus[j] += h
        x_minus[j] -= h

        if x_minus[j] < lower[j]:
            if f0 is None:
                f0 = func(x)
            grad[j] = (func(x_plus) - f0) / h
        elif x_plus[j] > upper[j]:
            if f0 is None:
                f0 = func(x)
            grad[j] = (f0 - func(x_minus)) / h
        else:
            grad[j] = (func(x_plus) - func(x_minus)) / (2 * h)

    return grad


def _richardson(estimates: Sequence[float], ratio: float = 2.0) -> float:
    """
    Richardson extrapolation of O(h^2) estimates computed at steps
    h, h/ratio, h/ratio^2, ...
    """
    table = list(estimates)
    for m in range(1, len(table)):
        factor = ratio ** (2 * m)
        table = [(factor * table[i + 1] - table[i]) / (factor - 1)
                 for i in range(len(table) - 1)]
    return table[0]


def numerical_hessian(func: Objective,
                      x: np.ndarray,
                      d: float = 1e-4,
                      r: int = 4,
                      eps: float = 1e-4,
                      zero_tol: float = 1.781029e-05,
                      ratio: float = 2.0) -> np.ndarray:
    """
    Hessian by central differences refined with Richardson extrapolation.

    The initial step for parameter j is ``d * |x_j|``, or ``eps`` when
    |x_j| < zero_tol. Each of the ``r`` rounds divides the step by ``ratio``.
    Entries whose stencil reaches a non-finite function value are NaN.

    Args:
        func: Scalar function of a parameter vector
        x: Evaluation point
        d: Relative initial step
        r: Number of Richardson rounds
        eps: Absolute initial step for parameters near zero
        zero_tol: Threshold below which a parameter counts as zero
        ratio: Step reduction factor between rounds

    Returns:
        Symmetric Hessian, shape (len(x), len(x))
    """
    if r < 1:
        raise ValueError("r should be at least 1.")

    x = np.asarray(x, dtype=float)
    n = len(x)
    h0 = np.where(np.abs(x) < zero_tol, eps, d * np.abs(x))
    f0 = func(x)

    def shifted(steps):
        return func(x + steps)

    hessian = np.zeros((n, n))
    with np.errstate(invalid='ignore', over='ignore'):
        for i in range(n):
            diag = []
            for m in range(r):
                h = h0[i] / ratio ** m
                e = np.zeros(n)
                e[i] = h
                diag.append((shifted(e) - 2 * f0 + shifted(-e)) / h ** 2)
            hessian[i, i] = _richardson(diag, ratio)

            for j in range(i):
                cross = []
                for m in range(r):
                    hi = h0[i] / ratio ** m
                    hj = h0[j] / ratio ** m
                    ei = np.zeros(n)
                    ej = np.zeros(n)
                    ei[i] = hi
                    ej[j] = hj
                    cross.append((shifted(ei + ej) - shifted(ei - ej)
                                  - shifted(ej - ei) + shifted(-ei - ej)) / (4 * hi * hj))
                hessian[i, j] = hessian[j, i] = _richardson(cross, ratio)

    hessian[~np.isfinite(hessian)] = np.nan
    return hessian


# =============================================================================
# VARIANCE ESTIMATION
# =============================================================================

@dataclass
class VarianceEstimate:
    """
    Inverse-Hessian variance estimate.

    Attributes:
        covariance: Variance-covariance matrix labelled by parameter, or
            None if the Hessian could not be inverted
        hessian: The Hessian it was computed from
        singular: Hessian was singular or contained NaN
        nonpositive_diagonal: Some variances are <= 0
        positive_semidefinite: Covariance has no negative eigenvalues
    """
    covariance: Optional[pd.DataFrame]
    hessian: np.ndarray
    singular: bool = False
    nonpositive_diagonal: bool = False
    positive_semidefinite: bool = True

    @property
    def reliable(self) -> bool:
        return (self.covariance is not None and not self.nonpositive_diagonal
                and self.positive_semidefinite)

    def std_errs(self) -> Optional[pd.Series]:
        if self.covariance is None:
            return None
        diag = np.diag(self.covariance.to_numpy())
        with np.errstate(invalid='ignore'):
            return pd.Series(np.sqrt(diag), index=self.covariance.index)


def invert_hessian(hessian: np.ndarray, labels: Sequence[str]) -> VarianceEstimate:
    """
    Invert the Hessian of the negative log-likelihood.

    A singular or NaN Hessian yields no covariance matrix; a covariance
    matrix with non-positive variances or negative eigenvalues is returned
    but flagged. Every problem is reported with a UserWarning.
    """
    hessian = np.asarray(hessian, dtype=float)
    labels = list(labels)

    if np.isnan(hessian).any():
        logger.warning(f"Hessian contains NaN entries:\n{hessian}")
        warnings.warn(
            "The estimated Hessian matrix contains NaN entries, so the "
            "variance-covariance matrix could not be obtained. Try different "
            "starting values or a larger number of Richardson rounds.",
            UserWarning,
        )
        return VarianceEstimate(None, hessian, singular=True)

    try:
        covariance = np.linalg.inv(hessian)
    except np.linalg.LinAlgError:
        logger.warning(f"Hessian is singular:\n{hessian}")
        warnings.warn(
            "The estimated Hessian matrix is singular, so the variance-covariance "
            "matrix could not be obtained. Try different starting values or a "
            "larger number of Richardson rounds.",
            UserWarning,
        )
        return VarianceEstimate(None, hessian, singular=True)

    covariance = (covariance + covariance.T) / 2
    estimate = VarianceEstimate(
        covariance=pd.DataFrame(covariance, index=labels, columns=labels),
        hessian=hessian,
    )

    if np.any(np.diag(covariance) <= 0):
        estimate.nonpositive_diagonal = True
        logger.warning(f"Variance-covariance matrix has non-positive diagonal:\n{estimate.covariance}")
        warnings.warn(
            "The estimated variance-covariance matrix has some non-positive "
            "diagonal elements, so it may not be reliable.",
            UserWarning,
        )

    eigenvalues = np.linalg.eigvalsh(covariance)
    if eigenvalues.min() < -1e-10 * max(1.0, abs(eigenvalues).max()):
        estimate.positive_semidefinite = False
        if not estimate.nonpositive_diagonal:
            warnings.warn(
                "The estimated variance-covariance matrix is not positive "
                f"semi-definite (min eigenvalue {eigenvalues.min():.3e}).",
                UserWarning,
            )

    return estimate


# =============================================================================
# DELTA METHOD
# =============================================================================

def delta_method_variance(gradient: np.ndarray, covariance: np.ndarray) -> float:
    """
    Var(f(theta)) ~ grad' Cov grad.

    Args:
        gradient: Gradient of f w.r.t. the parameters in ``covariance``
        covariance: Covariance matrix of those parameters
    """
    gradient = np.asarray(gradient, dtype=float)
    covariance = np.asarray(covariance, dtype=float)
    return float(gradient @ covariance @ gradient)


def delta_method_se(gradient: np.ndarray, covariance: np.ndarray) -> float:
    """Delta-method standard error, sqrt(max(var, 0))."""
    return np.sqrt(max(delta_method_variance(gradient, covariance), 0))


def gdfa_log_odds_ratio(b1: float, b0: float) -> float:
    """Exposure log-odds ratio implied by gamma scales b1 (cases) and b0 (controls)."""
    return 1 / b0 - 1 / b1


def gdfa_log_odds_ratio_gradient(b1: float, b0: float) -> np.ndarray:
    """Gradient of 1/b0 - 1/b1 w.r.t. (b1, b0)."""
    return np.array([1 / b1 ** 2, -1 / b0 ** 2])
