"""
Stratified Poolwise Likelihood
==============================

Shared machinery for the two model families. A likelihood is the sum of
three stratum contributions:

    exact       closed form, f(Y, X | C) or f(X | Y, C)
    replicated  log of a latent-exposure integral per pool
    single      log of a latent-exposure integral per pool

Families implement the closed-form pieces and the per-pool log joint
density in the latent exposure; this module evaluates strata in order,
integrates, and stops at the first degenerate integral.

An evaluation is a LikelihoodEvaluation: either a finite log-likelihood,
or a DegenerateUnit naming the pool whose integral was zero/NaN for the
given parameters. The optimizer-facing objective turns the latter into a
large finite penalty.

Author: poolreg developers
"""

import numpy as np
from typing import Any, Callable, Dict, Optional, Tuple
from dataclasses import dataclass

from .data import Strata, StratumSlice
from .integration import LatentIntegrator, LatentTransform
from .regimes import ParameterLayout
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

LOG_2PI = np.log(2 * np.pi)


# =============================================================================
# DENSITIES USED INSIDE INTEGRANDS
# =============================================================================

def normal_logpdf(x, mean, var):
    """Univariate normal log-density, parameterized by variance."""
    return -0.5 * (LOG_2PI + np.log(var) + (x - mean) ** 2 / var)


class ReplicateErrorDensity:
    """
    Density of k replicate errors sharing one component:

        e_r = u + v_r,  u ~ N(0, shared),  v_r ~ N(0, own)

    so Cov(e) = shared * J + own * I. Inverse and determinant are closed form.
    """

    def __init__(self, shared: float, own: float, k: int):
        self.shared = shared
        self.own = own
        self.k = k
        if k > 1:
            total = own + k * shared
            self._ratio = shared / total
            self._log_norm = -0.5 * (k * LOG_2PI + (k - 1) * np.log(own) + np.log(total))

    def logpdf(self, residuals: np.ndarray) -> np.ndarray:
        """
        Args:
            residuals: Array of shape (m, k)

        Returns:
            Log-density per row, shape (m,)
        """
        if self.k == 1:
            return normal_logpdf(residuals[:, 0], 0.0, self.shared + self.own)
        sum_sq = np.sum(residuals ** 2, axis=1)
        sq_sum = np.sum(residuals, axis=1) ** 2
        return self._log_norm - 0.5 * (sum_sq - self._ratio * sq_sum) / self.own


@dataclass
class DegenerateUnit:
    """A pool whose latent-exposure integral was zero or NaN."""
    stratum: str
    pool_index: int
    integral: float
    theta: np.ndarray


@dataclass
class LikelihoodEvaluation:
    """
    Result of one likelihood evaluation.

    Attributes:
        log_likelihood: Sum of the contributions that were evaluated. When
            ``degenerate`` is set this is a partial sum and must not be
            used as a likelihood value.
        degenerate: The offending pool, or None
    """
    log_likelihood: float
    degenerate: Optional[DegenerateUnit] = None

    @property
    def is_degenerate(self) -> bool:
        return self.degenerate is not None


class PoolwiseLikelihood:
    """
    Base class for stratified poolwise likelihoods.

    Subclasses define ``transform``, ``unpack``, ``exact_log_likelihood``,
    ``stratum_terms``, ``unit_log_density`` and, if they support the analytic
    approximation, ``approximate_log_likelihood``.
    """

    transform: LatentTransform = None
    supports_approximation = False

    def __init__(self,
                 strata: Strata,
                 layout: ParameterLayout,
                 integrator: Optional[LatentIntegrator] = None,
                 approx_integral: bool = False):
        if approx_integral and not self.supports_approximation:
            raise ValueError(
                f"{type(self).__name__} has no analytic approximation; "
                "use approx_integral=False."
            )
        self.strata = strata
        self.layout = layout
        self.integrator = integrator or LatentIntegrator()
        self.approx_integral = approx_integral

    @property
    def n_pools(self) -> int:
        return sum(len(s) for s in self.strata)

    # -------------------------------------------------------------------------
    # Family hooks
    # -------------------------------------------------------------------------

    def unpack(self, theta: np.ndarray) -> Any:
        raise NotImplementedError

    def exact_log_likelihood(self, stratum: StratumSlice, params: Any) -> float:
        raise NotImplementedError

    def approximate_log_likelihood(self, stratum: StratumSlice, params: Any) -> float:
        raise NotImplementedError

    def stratum_terms(self, stratum: StratumSlice, params: Any) -> Dict[str, np.ndarray]:
        """Per-pool arrays shared by every integrand of a stratum."""
        raise NotImplementedError

    def unit_log_density(self, stratum: StratumSlice, i: int, params: Any,
                         terms: Dict[str, np.ndarray]) -> Callable[[np.ndarray], np.ndarray]:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def integrated_log_likelihood(self, stratum: StratumSlice, params: Any,
                                  theta: np.ndarray) -> Tuple[float, Optional[DegenerateUnit]]:
        """Sum of log-integrals over a stratum, stopping at the first degenerate pool."""
        terms = self.stratum_terms(stratum, params)
        total = 0.0
        for i in range(len(stratum)):
            result = self.integrator.integrate(
                self.unit_log_density(stratum, i, params, terms),
                self.transform,
            )
            if result.degenerate:
                unit = DegenerateUnit(
                    stratum=stratum.name,
                    pool_index=int(stratum.index[i]),
                    integral=result.value,
                    theta=theta.copy(),
                )
                logger.warning(
                    f"Integral is {result.value} for pool {unit.pool_index} "
                    f"({stratum.name} stratum); skipping remaining terms at "
                    f"theta = {np.array2string(theta, precision=5)}"
                )
                return total, unit
            total += np.log(result.value)
        return total, None

    def evaluate(self, theta) -> LikelihoodEvaluation:
        """Log-likelihood at ``theta`` (full parameter vector in layout order)."""
        theta = np.asarray(theta, dtype=float)
        params = self.unpack(theta)

        total = 0.0
        if not self.strata.exact.is_empty:
            total += self.exact_log_likelihood(self.strata.exact, params)

        for stratum in (self.strata.replicated, self.strata.single):
            if stratum.is_empty:
                continue
            if self.approx_integral:
                total += self.approximate_log_likelihood(stratum, params)
                continue
            ll, degenerate = self.integrated_log_likelihood(stratum, params, theta)
            total += ll
            if degenerate is not None:
                return LikelihoodEvaluation(total, degenerate)

        return LikelihoodEvaluation(float(total))

    def log_likelihood(self, theta) -> float:
        """Log-likelihood, -inf if any pool's integral is degenerate."""
        evaluation = self.evaluate(theta)
        if evaluation.is_degenerate:
            return -np.inf
        return evaluation.log_likelihood

    def negative_log_likelihood(self, theta, penalty: float = 1e10) -> float:
        """
        Objective for minimization.

        Degenerate evaluations and non-finite values map to ``penalty``.
        """
        evaluation = self.evaluate(theta)
        if evaluation.is_degenerate or not np.isfinite(evaluation.log_likelihood):
            return penalty
        return -evaluation.log_likelihood
