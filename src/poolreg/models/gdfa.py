"""
Gamma Discriminant Function Approach, Constant Odds Ratio
=========================================================

Likelihood of a positive pooled exposure given outcome and member
covariates, with multiplicative lognormal processing and measurement error.

Model for pool i with members j = 1..g:

    X | Y, C_1..C_g ~ Gamma(shape = sum_j exp([1, C_j]' gamma), scale = b_Y)
    log Xtilde_r | X ~ N(log X - (Ig sigsq_p + sigsq_m) / 2, Ig sigsq_p + sigsq_m)

Replicates r = 1..k of a pool share the processing error, so the log
measurements have covariance Ig sigsq_p J + sigsq_m I. The mean shift makes
E(Xtilde | X) = X.

The implied exposure log-odds ratio is constant: logOR = 1/b0 - 1/b1.

Author: poolreg developers
"""

import numpy as np
from scipy import stats
from scipy.special import gammaln
from typing import Callable, Dict
from dataclasses import dataclass

from .data import Strata, StratumSlice
from .integration import LatentIntegrator, POSITIVE_LINE
from .likelihood import PoolwiseLikelihood, ReplicateErrorDensity
from .regimes import ParameterLayout


@dataclass
class GammaParameters:
    """Unpacked parameter vector of the gamma discriminant model."""
    gamma: np.ndarray
    b1: float
    b0: float
    sigsq_p: float = 0.0
    sigsq_m: float = 0.0


class GammaDiscriminantLikelihood(PoolwiseLikelihood):
    """
    Stratified likelihood of f(Xtilde | Y, C) under the gamma model.

    Only exact integration is available.
    """

    transform = POSITIVE_LINE
    supports_approximation = False

    def __init__(self,
                 strata: Strata,
                 layout: ParameterLayout,
                 integrator: LatentIntegrator = None):
        super().__init__(strata, layout, integrator, approx_integral=False)
        self._gamma_pos = layout.positions('gamma_')
        self._b1_pos = layout.position('b1')
        self._b0_pos = layout.position('b0')
        self._sigsq_p_pos = layout.error_variance_position('p', 1)
        self._sigsq_m_pos = layout.error_variance_position('m', 1)

    def unpack(self, theta: np.ndarray) -> GammaParameters:
        return GammaParameters(
            gamma=theta[self._gamma_pos],
            b1=float(theta[self._b1_pos]),
            b0=float(theta[self._b0_pos]),
            sigsq_p=0.0 if self._sigsq_p_pos is None else float(theta[self._sigsq_p_pos]),
            sigsq_m=0.0 if self._sigsq_m_pos is None else float(theta[self._sigsq_m_pos]),
        )

    def shapes(self, stratum: StratumSlice, p: GammaParameters) -> np.ndarray:
        """Gamma shape per pool, the sum of member-level shapes."""
        if stratum.member_covariates is None or len(p.gamma) == 1:
            return stratum.g * np.exp(p.gamma[0])
        return np.array([
            np.sum(np.exp(p.gamma[0] + members @ p.gamma[1:]))
            for members in stratum.member_covariates
        ])

    def scales(self, stratum: StratumSlice, p: GammaParameters) -> np.ndarray:
        return np.where(stratum.y == 1, p.b1, p.b0)

    def exact_log_likelihood(self, stratum: StratumSlice, p: GammaParameters) -> float:
        x = stratum.first_measurements()
        ll = stats.gamma.logpdf(x, a=self.shapes(stratum, p), scale=self.scales(stratum, p))
        return float(np.sum(ll))

    def stratum_terms(self, stratum: StratumSlice, p: GammaParameters) -> Dict[str, np.ndarray]:
        return {'shape': self.shapes(stratum, p), 'scale': self.scales(stratum, p)}

    def unit_log_density(self, stratum: StratumSlice, i: int, p: GammaParameters,
                         terms: Dict[str, np.ndarray]) -> Callable[[np.ndarray], np.ndarray]:
        """log f(Xtilde, X = s | Y, C) for pool i as a function of s."""
        log_xt = np.log(stratum.xtilde[i])
        jacobian = -np.sum(log_xt)
        shape = terms['shape'][i]
        scale = terms['scale'][i]
        log_norm = -gammaln(shape) - shape * np.log(scale)
        sigsq_pe = p.sigsq_p * stratum.is_pool[i]
        shift = (sigsq_pe + p.sigsq_m) / 2
        errors = ReplicateErrorDensity(shared=sigsq_pe, own=p.sigsq_m, k=len(log_xt))

        def log_density(s):
            s = np.atleast_1d(s)
            log_s = np.log(s)
            return (jacobian
                    + errors.logpdf(log_xt[None, :] - (log_s - shift)[:, None])
                    + log_norm + (shape - 1) * log_s - s / scale)

        return log_density
