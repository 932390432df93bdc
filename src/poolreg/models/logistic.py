"""
Poolwise Logistic Regression with Normal Exposure
=================================================

Likelihood for a binary poolwise outcome and a normal exposure subject to
additive processing and measurement error on the poolwise sum.

Model for pool i of size g with summed covariates C:

    logit P(Y = 1 | X, C) = g * beta_0 + beta_x * X + C' beta_c + qg
    X | C ~ N(g * alpha_0 + C' alpha_c, g * sigsq_x.c)
    Xtilde_j = X + e_p + e_m,j,   j = 1..k

    Var(e_p)   = g^2 * sigsq_p * I(g > 1)      (g^3 if processing error grows with g)
    Var(e_m,j) = g^2 * sigsq_m

The processing error is shared by replicates of the same pool, so the k
measurements are jointly normal given X with covariance
Var(e_p) * J + Var(e_m) * I.

Two ways to integrate X out of the contaminated strata:

    approximate  probit approximation to the logistic-normal integral,
                 closed form, no quadrature
    exact        adaptive quadrature over s = z / (1 - z^2)

Author: poolreg developers
"""

import numpy as np
from scipy import stats
from scipy.special import log_expit
from typing import Callable, Dict
from dataclasses import dataclass

from .data import Strata, StratumSlice
from .integration import LatentIntegrator, REAL_LINE
from .likelihood import PoolwiseLikelihood, ReplicateErrorDensity, normal_logpdf
from .regimes import ParameterLayout

# Scaling constant of the probit approximation to the logistic CDF
PROBIT_SCALE = 1.7


@dataclass
class LogisticParameters:
    """Unpacked parameter vector of the logistic family."""
    beta_0: float
    beta_x: float
    beta_c: np.ndarray
    alpha_0: float
    alpha_c: np.ndarray
    sigsq_x_c: float
    sigsq_p1: float = 0.0
    sigsq_p0: float = 0.0
    sigsq_m1: float = 0.0
    sigsq_m0: float = 0.0


def bernoulli_log_pmf(y, eta):
    """log P(Y = y) for P(Y = 1) = expit(eta)."""
    return np.where(y == 1, log_expit(eta), log_expit(-eta))


class PoolwiseLogisticLikelihood(PoolwiseLikelihood):
    """
    Stratified likelihood of the poolwise logistic model.

    Example:
        >>> pools = prepare_pools(g, y, xtilde)
        >>> layout = logreg_layout('processing')
        >>> strata = stratify(pools, 'processing', compute_offsets(pools.g, pools.y))
        >>> lik = PoolwiseLogisticLikelihood(strata, layout, approx_integral=True)
        >>> lik.negative_log_likelihood(layout.broadcast((0.01, 1.0)))
    """

    transform = REAL_LINE
    supports_approximation = True

    def __init__(self,
                 strata: Strata,
                 layout: ParameterLayout,
                 constant_pe: bool = True,
                 integrator: LatentIntegrator = None,
                 approx_integral: bool = True):
        super().__init__(strata, layout, integrator, approx_integral)
        self.constant_pe = constant_pe

        self._beta_pos = layout.positions('beta_')
        self._alpha_pos = layout.positions('alpha_')
        self._sigsq_x_c_pos = layout.position('sigsq_x.c')
        self._error_pos = {
            (kind, outcome): layout.error_variance_position(kind, outcome)
            for kind in ('p', 'm') for outcome in (1, 0)
        }

        for stratum in strata:
            if not stratum.is_empty and stratum.qg is None:
                raise ValueError("Logistic likelihood needs case-control offsets qg on every stratum.")

    def unpack(self, theta: np.ndarray) -> LogisticParameters:
        betas = theta[self._beta_pos]
        alphas = theta[self._alpha_pos]

        def error_variance(kind, outcome):
            pos = self._error_pos[(kind, outcome)]
            return 0.0 if pos is None else float(theta[pos])

        return LogisticParameters(
            beta_0=float(betas[0]),
            beta_x=float(betas[1]),
            beta_c=betas[2:],
            alpha_0=float(alphas[0]),
            alpha_c=alphas[1:],
            sigsq_x_c=float(theta[self._sigsq_x_c_pos]),
            sigsq_p1=error_variance('p', 1),
            sigsq_p0=error_variance('p', 0),
            sigsq_m1=error_variance('m', 1),
            sigsq_m0=error_variance('m', 0),
        )

    # -------------------------------------------------------------------------
    # Moments
    # -------------------------------------------------------------------------

    def exposure_moments(self, stratum: StratumSlice, p: LogisticParameters):
        """E(X | C) and V(X | C) per pool."""
        mean = stratum.g * p.alpha_0 + stratum.covariates @ p.alpha_c
        var = stratum.g * p.sigsq_x_c
        return mean, var

    def linear_predictor(self, stratum: StratumSlice, p: LogisticParameters) -> np.ndarray:
        """Everything in the logit except beta_x * X."""
        return stratum.g * p.beta_0 + stratum.covariates @ p.beta_c + stratum.qg

    def processing_variance(self, stratum: StratumSlice, p: LogisticParameters) -> np.ndarray:
        """Var(e_p) on the poolwise-sum scale, zero for unpooled individuals."""
        g = stratum.g.astype(float)
        sigsq_p = np.where(stratum.y == 1, p.sigsq_p1, p.sigsq_p0)
        size_scale = 1.0 if self.constant_pe else g
        return g ** 2 * size_scale * sigsq_p * stratum.is_pool

    def measurement_variance(self, stratum: StratumSlice, p: LogisticParameters) -> np.ndarray:
        """Var(e_m) on the poolwise-sum scale."""
        g = stratum.g.astype(float)
        return g ** 2 * np.where(stratum.y == 1, p.sigsq_m1, p.sigsq_m0)

    # -------------------------------------------------------------------------
    # Exact stratum
    # -------------------------------------------------------------------------

    def exact_log_likelihood(self, stratum: StratumSlice, p: LogisticParameters) -> float:
        """sum log f(Y | X, C) + log f(X | C) for pools with X observed."""
        x = stratum.first_measurements()
        eta = self.linear_predictor(stratum, p) + p.beta_x * x
        mean, var = self.exposure_moments(stratum, p)
        ll = bernoulli_log_pmf(stratum.y, eta) + stats.norm.logpdf(x, mean, np.sqrt(var))
        return float(np.sum(ll))

    # -------------------------------------------------------------------------
    # Probit approximation
    # -------------------------------------------------------------------------

    def _approximate_outcome(self, y, offset, mu_post, v_post, beta_x):
        t = (offset + beta_x * mu_post) / np.sqrt(1 + v_post * beta_x ** 2 / PROBIT_SCALE ** 2)
        return bernoulli_log_pmf(y, t)

    def approximate_log_likelihood(self, stratum: StratumSlice, p: LogisticParameters) -> float:
        """
        log f(Y, Xtilde | C) with the probit approximation

            int expit(a + b X) N(X; m, v) dX  ~  expit((a + b m) / sqrt(1 + v b^2 / 1.7^2))

        applied to the conditional distribution of X given Xtilde and C.
        """
        mean, var = self.exposure_moments(stratum, p)
        offset = self.linear_predictor(stratum, p)
        sigsq_pe = self.processing_variance(stratum, p)
        sigsq_me = self.measurement_variance(stratum, p)

        if np.all(stratum.k == 1):
            xt = stratum.first_measurements()
            var_xt = var + sigsq_pe + sigsq_me
            mu_post = mean + var / var_xt * (xt - mean)
            v_post = var - var ** 2 / var_xt
            ll = (self._approximate_outcome(stratum.y, offset, mu_post, v_post, p.beta_x)
                  + stats.norm.logpdf(xt, mean, np.sqrt(var_xt)))
            return float(np.sum(ll))

        total = 0.0
        for i in range(len(stratum)):
            xt = stratum.xtilde[i]
            k = len(xt)
            cov_xt = (var[i] + sigsq_pe[i]) * np.ones((k, k)) + sigsq_me[i] * np.eye(k)
            cov_x_xt = np.full(k, var[i])
            weights = np.linalg.solve(cov_xt, cov_x_xt)
            mu_post = mean[i] + weights @ (xt - mean[i])
            v_post = var[i] - weights @ cov_x_xt
            total += float(self._approximate_outcome(stratum.y[i], offset[i], mu_post, v_post, p.beta_x))
            total += float(stats.multivariate_normal.logpdf(xt, mean=np.full(k, mean[i]), cov=cov_xt))
        return total

    # -------------------------------------------------------------------------
    # Exact integrand
    # -------------------------------------------------------------------------

    def stratum_terms(self, stratum: StratumSlice, p: LogisticParameters) -> Dict[str, np.ndarray]:
        mean, var = self.exposure_moments(stratum, p)
        return {
            'offset': self.linear_predictor(stratum, p),
            'mean': mean,
            'var': var,
            'processing': self.processing_variance(stratum, p),
            'measurement': self.measurement_variance(stratum, p),
        }

    def unit_log_density(self, stratum: StratumSlice, i: int, p: LogisticParameters,
                         terms: Dict[str, np.ndarray]) -> Callable[[np.ndarray], np.ndarray]:
        """log f(Y, Xtilde, X = s | C) for pool i as a function of s."""
        y = stratum.y[i]
        xt = stratum.xtilde[i]
        offset = terms['offset'][i]
        mean_x = terms['mean'][i]
        var_x = terms['var'][i]
        errors = ReplicateErrorDensity(
            shared=terms['processing'][i],
            own=terms['measurement'][i],
            k=len(xt),
        )
        beta_x = p.beta_x

        def log_density(s):
            s = np.atleast_1d(s)
            return (bernoulli_log_pmf(y, offset + beta_x * s)
                    + errors.logpdf(xt[None, :] - s[:, None])
                    + normal_logpdf(s, mean_x, var_x))

        return log_density
