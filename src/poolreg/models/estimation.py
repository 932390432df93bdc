"""
Maximum-Likelihood Estimation
=============================

High-level estimation interface for the two poolwise model families.

Provides:
- EstimationConfig: starting values, bounds, integration, optimizer and
  Hessian settings, validated before any optimization
- OptimizerDriver: bounded L-BFGS-B minimization with one jittered restart
- FitResult: estimates, variance-covariance matrix, AIC, diagnostics
- estimate_logreg_xerrors / estimate_gdfa_constant entry points

Author: poolreg developers
"""

import warnings
import numpy as np
import pandas as pd
from enum import Enum
from scipy import optimize, stats
from typing import Callable, Dict, Optional, Sequence, Tuple
from dataclasses import dataclass, field

from .data import compute_offsets, prepare_pools, stratify
from .gdfa import GammaDiscriminantLikelihood
from .integration import LatentIntegrator
from .likelihood import PoolwiseLikelihood
from .logistic import PoolwiseLogisticLikelihood
from .regimes import (
    DEFAULT_LOWER_NONVAR_VAR,
    DEFAULT_START_NONVAR_VAR,
    DEFAULT_UPPER_NONVAR_VAR,
    ParameterLayout,
    check_pair,
    gdfa_layout,
    logreg_layout,
    regime_key,
)
from ..estimation.inference import (
    VarianceEstimate,
    delta_method_variance,
    gdfa_log_odds_ratio,
    gdfa_log_odds_ratio_gradient,
    invert_hessian,
    numerical_hessian,
)
from ..utils.logging_config import EstimationLogger, get_logger

logger = get_logger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class EstimationConfig:
    """
    Configuration for poolwise maximum-likelihood estimation.

    Starting values and bounds are given either as (non-variance, variance)
    pairs broadcast over the parameter layout, or as full-length vectors
    (``start``, ``lower``, ``upper``) that take precedence.
    """
    start_nonvar_var: Tuple[float, float] = DEFAULT_START_NONVAR_VAR
    lower_nonvar_var: Tuple[float, float] = DEFAULT_LOWER_NONVAR_VAR
    upper_nonvar_var: Tuple[float, float] = DEFAULT_UPPER_NONVAR_VAR
    start: Optional[Sequence[float]] = None
    lower: Optional[Sequence[float]] = None
    upper: Optional[Sequence[float]] = None

    # Restart after non-convergence; None disables it
    jitter_start: Optional[float] = 0.01
    seed: Optional[int] = None

    # Latent-exposure integration
    epsabs: float = 0.0
    epsrel: float = 1e-8
    quad_limit: int = 200
    scan_step: float = 1e-5
    scan_margin: float = 1e-5

    # Optimizer
    maxiter: int = 500
    maxfun: int = 500
    trace: bool = False
    # Relative step of scipy's 3-point finite-difference gradient
    gradient_step: float = 1e-6
    degenerate_penalty: float = 1e10

    # Hessian
    hessian_step: float = 1e-4
    hessian_r: int = 4

    verbose: bool = False

    def validate(self) -> 'EstimationConfig':
        """Raise ValueError on any invalid setting."""
        for name in ('start_nonvar_var', 'lower_nonvar_var', 'upper_nonvar_var'):
            check_pair(getattr(self, name), name)
        if self.jitter_start is not None and not self.jitter_start > 0:
            raise ValueError("jitter_start should be a positive value, or None for no second try.")
        if self.maxiter < 1 or self.maxfun < 1:
            raise ValueError("maxiter and maxfun should be positive.")
        if self.hessian_r < 1 or not self.hessian_step > 0:
            raise ValueError("hessian_r should be >= 1 and hessian_step positive.")
        if not self.gradient_step > 0:
            raise ValueError("gradient_step should be positive.")
        if not (np.isfinite(self.degenerate_penalty) and self.degenerate_penalty > 0):
            raise ValueError("degenerate_penalty should be a large finite positive value.")
        self.integrator()
        return self

    def integrator(self) -> LatentIntegrator:
        return LatentIntegrator(
            epsabs=self.epsabs,
            epsrel=self.epsrel,
            limit=self.quad_limit,
            scan_step=self.scan_step,
            margin=self.scan_margin,
        )

    def resolve(self, layout: ParameterLayout) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Full-length (start, lower, upper) vectors for ``layout``."""
        def vector(explicit, pair, name):
            if explicit is not None:
                return layout.check_vector(explicit, name)
            return layout.broadcast(pair, f'{name}_nonvar_var')

        start = vector(self.start, self.start_nonvar_var, 'start')
        lower = vector(self.lower, self.lower_nonvar_var, 'lower')
        upper = vector(self.upper, self.upper_nonvar_var, 'upper')

        if np.any(lower > upper):
            bad = layout.labels[int(np.flatnonzero(lower > upper)[0])]
            raise ValueError(f"Lower bound exceeds upper bound for {bad}.")
        if np.any((start < lower) | (start > upper)):
            logger.debug("Starting values outside the bounds were clipped")
            start = np.clip(start, lower, upper)
        return start, lower, upper


# =============================================================================
# OPTIMIZER DRIVER
# =============================================================================

class RetryState(Enum):
    """Where the optimizer ended up in its restart policy."""
    INITIAL = 'initial'
    RETRIED = 'retried'
    FAILED = 'failed'
    CONVERGED = 'converged'


class OptimizerDriver:
    """
    Bounded quasi-Newton minimization with one jittered restart.

    On non-convergence the starting vector is perturbed by independent
    N(0, jitter_start^2) draws and the minimization is repeated once; the
    run with the smaller objective is kept. Persistent non-convergence
    raises a UserWarning and the best result is returned.
    """

    def __init__(self,
                 objective: Callable[[np.ndarray], float],
                 lower: np.ndarray,
                 upper: np.ndarray,
                 config: EstimationConfig = None,
                 est_logger: Optional[EstimationLogger] = None):
        self.objective = objective
        self.lower = np.asarray(lower, dtype=float)
        self.upper = np.asarray(upper, dtype=float)
        self.config = config or EstimationConfig()
        self.est_logger = est_logger
        self.state = RetryState.INITIAL
        self.n_starts = 0
        self._rng = np.random.default_rng(self.config.seed)
        self._iteration = 0

    @property
    def bounds(self):
        return [(lo if np.isfinite(lo) else None, hi if np.isfinite(hi) else None)
                for lo, hi in zip(self.lower, self.upper)]

    def _callback(self, intermediate_result: optimize.OptimizeResult) -> None:
        self._iteration += 1
        logger.info(f"  iter {self._iteration:4d}: objective = {intermediate_result.fun:.6f}")

    def minimize(self, x0: np.ndarray) -> optimize.OptimizeResult:
        """One L-BFGS-B run from ``x0`` (clipped into the bounds)."""
        self.n_starts += 1
        self._iteration = 0
        x0 = np.clip(np.asarray(x0, dtype=float), self.lower, self.upper)
        return optimize.minimize(
            self.objective,
            x0,
            jac='3-point',
            method='L-BFGS-B',
            bounds=self.bounds,
            callback=self._callback if self.config.trace else None,
            options={
                'maxiter': self.config.maxiter,
                'maxfun': self.config.maxfun,
                'finite_diff_rel_step': self.config.gradient_step,
            },
        )

    def run(self, start: np.ndarray) -> optimize.OptimizeResult:
        """Minimize from ``start``, retrying once on non-convergence."""
        self.state = RetryState.INITIAL
        result = self.minimize(start)

        if not result.success and self.config.jitter_start is not None:
            self.state = RetryState.RETRIED
            if self.est_logger is not None:
                self.est_logger.retry(self.config.jitter_start)
            else:
                logger.info("Trying jittered starting values...")
            jittered = np.asarray(start) + self._rng.normal(
                0.0, self.config.jitter_start, size=len(start))
            second = self.minimize(jittered)
            if second.fun < result.fun:
                result = second

        if result.success:
            self.state = RetryState.CONVERGED
        else:
            self.state = RetryState.FAILED
            warnings.warn(
                "The optimizer did not converge "
                f"({result.message}). You may want to try different starting values.",
                UserWarning,
            )
        return result


# =============================================================================
# FIT RESULT
# =============================================================================

@dataclass
class FitResult:
    """Container for a poolwise maximum-likelihood fit."""
    theta: pd.Series
    theta_var: Optional[pd.DataFrame]
    optimizer_result: optimize.OptimizeResult
    aic: float
    converged: bool
    retry_state: RetryState
    lower: np.ndarray
    upper: np.ndarray
    hessian: Optional[np.ndarray] = None
    variance: Optional[VarianceEstimate] = None
    derived: Dict[str, float] = field(default_factory=dict)
    model_name: str = ''
    n_pools: int = 0
    n_starts: int = 0

    @property
    def nll(self) -> float:
        return float(self.optimizer_result.fun)

    @property
    def log_likelihood(self) -> float:
        return -self.nll

    @property
    def n_params(self) -> int:
        return len(self.theta)

    @property
    def std_errs(self) -> pd.Series:
        if self.theta_var is None:
            return pd.Series(np.nan, index=self.theta.index)
        with np.errstate(invalid='ignore'):
            return pd.Series(np.sqrt(np.diag(self.theta_var.to_numpy())), index=self.theta.index)

    @property
    def estimates(self) -> pd.Series:
        """Parameter estimates followed by derived quantities."""
        if not self.derived:
            return self.theta.copy()
        return pd.concat([self.theta, pd.Series(self.derived)])

    def to_dataframe(self) -> pd.DataFrame:
        """Estimates with standard errors, Wald z statistics and p-values."""
        se = self.std_errs
        with np.errstate(divide='ignore', invalid='ignore'):
            z = self.theta / se
        return pd.DataFrame({
            'estimate': self.theta,
            'std_err': se,
            'z': z,
            'p_value': 2 * stats.norm.sf(np.abs(z)),
        })

    def summary(self) -> str:
        lines = [
            "=" * 60,
            f"{self.model_name} Results",
            "=" * 60,
            f"Log-likelihood: {self.log_likelihood:.4f}",
            f"AIC: {self.aic:.4f}",
            f"N pools: {self.n_pools}",
            f"N parameters: {self.n_params}",
            f"Converged: {self.converged} ({self.retry_state.value}, {self.n_starts} start(s))",
            "",
            "Parameters:",
            "-" * 40,
        ]
        table = self.to_dataframe()
        for name, row in table.iterrows():
            lines.append(
                f"  {name:20s}: {row['estimate']:10.4f} (SE: {row['std_err']:.4f}, z: {row['z']:.2f})"
            )
        if self.derived:
            lines.extend(["", "Derived:", "-" * 40])
            for name, value in self.derived.items():
                lines.append(f"  {name:20s}: {value:10.4f}")
        if self.theta_var is None and self.variance is not None:
            lines.append("\nVariance-covariance matrix unavailable (singular Hessian).")
        lines.append("=" * 60)
        return "\n".join(lines)


# =============================================================================
# SHARED FITTING WORKFLOW
# =============================================================================

def _check_flag(value, name: str) -> None:
    if not isinstance(value, (bool, np.bool_)):
        raise ValueError(f"{name} should be True or False.")


def fit_likelihood(likelihood: PoolwiseLikelihood,
                   layout: ParameterLayout,
                   config: EstimationConfig,
                   estimate_var: bool = True,
                   optimizer_result: Optional[optimize.OptimizeResult] = None,
                   model_name: str = 'poolwise model') -> FitResult:
    """
    Maximize a stratified likelihood and (optionally) estimate its variance.

    Args:
        likelihood: Likelihood to maximize
        layout: Parameter layout of ``likelihood``
        config: Validated estimation configuration
        estimate_var: Whether to compute the inverse-Hessian variance
        optimizer_result: Result of an earlier optimization over the same
            layout; skips optimization
        model_name: Label used in logs and summaries

    Returns:
        FitResult
    """
    start, lower, upper = config.resolve(layout)
    penalty = config.degenerate_penalty

    def objective(theta):
        return likelihood.negative_log_likelihood(theta, penalty)

    # Unpenalized: degenerate stencil points must surface as non-finite entries
    def hessian_objective(theta):
        return -likelihood.log_likelihood(theta)

    est_logger = EstimationLogger(model_name, verbose=config.verbose)
    est_logger.start(n_pools=likelihood.n_pools, n_params=layout.size)

    if optimizer_result is None:
        driver = OptimizerDriver(objective, lower, upper, config, est_logger)
        result = driver.run(start)
        state = driver.state
        n_starts = driver.n_starts
    else:
        if len(np.ravel(optimizer_result.x)) != layout.size:
            raise ValueError(
                f"optimizer_result has {len(np.ravel(optimizer_result.x))} parameters, "
                f"expected {layout.size}: {list(layout.labels)}."
            )
        result = optimizer_result
        state = RetryState.CONVERGED if result.success else RetryState.FAILED
        n_starts = 0

    theta_hat = np.asarray(result.x, dtype=float)
    theta = pd.Series(theta_hat, index=list(layout.labels))
    aic = 2 * (layout.size + float(result.fun))

    if state is RetryState.CONVERGED:
        est_logger.converged(nll=float(result.fun), k=layout.size, aic=aic)
    else:
        est_logger.failed(str(result.message))

    hessian = None
    variance = None
    theta_var = None
    if estimate_var:
        hessian = numerical_hessian(hessian_objective, theta_hat,
                                    d=config.hessian_step, r=config.hessian_r)
        variance = invert_hessian(hessian, layout.labels)
        theta_var = variance.covariance

    fit = FitResult(
        theta=theta,
        theta_var=theta_var,
        optimizer_result=result,
        aic=aic,
        converged=state is RetryState.CONVERGED,
        retry_state=state,
        lower=lower,
        upper=upper,
        hessian=hessian,
        variance=variance,
        model_name=model_name,
        n_pools=likelihood.n_pools,
        n_starts=n_starts,
    )
    est_logger.parameters(theta.to_dict(), fit.std_errs.to_dict())
    return fit


# =============================================================================
# ENTRY POINTS
# =============================================================================

def estimate_logreg_xerrors(g, y, xtilde, c=None,
                            errors: str = 'processing',
                            nondiff_pe: bool = True,
                            nondiff_me: bool = True,
                            constant_pe: bool = True,
                            prev: Optional[float] = None,
                            samp_y1y0: Optional[Sequence[float]] = None,
                            approx_integral: bool = True,
                            estimate_var: bool = True,
                            config: Optional[EstimationConfig] = None,
                            optimizer_result: Optional[optimize.OptimizeResult] = None,
                            x_name: str = 'x') -> FitResult:
    """
    Poolwise logistic regression with a normal exposure subject to
    processing and/or measurement error.

    Args:
        g: Pool sizes
        y: Poolwise outcomes (1 = all cases, 0 = all controls)
        xtilde: Poolwise measurements; a list of vectors for replicates
        c: Poolwise (summed) covariates, one row per pool
        errors: 'neither', 'processing', 'measurement' or 'both'
        nondiff_pe: Processing error variance equal in case and control pools
        nondiff_me: Measurement error variance equal in case and control pools
        constant_pe: Processing error variance constant in pool size (else
            proportional to it)
        prev: Disease prevalence, for a valid intercept under case-control
            sampling
        samp_y1y0: Sampling probabilities for cases and controls (alternative
            to ``prev``)
        approx_integral: Use the probit approximation instead of quadrature
        estimate_var: Compute the inverse-Hessian variance-covariance matrix
        config: Estimation settings
        optimizer_result: Skip optimization and reuse this result
        x_name: Exposure name used in the ``beta_<x_name>`` label

    Returns:
        FitResult
    """
    config = (config or EstimationConfig()).validate()
    regime_key(errors, nondiff_pe, nondiff_me)
    for name, flag in (('constant_pe', constant_pe),
                       ('approx_integral', approx_integral),
                       ('estimate_var', estimate_var)):
        _check_flag(flag, name)
    if prev is not None and samp_y1y0 is not None:
        raise ValueError("Specify at most one of 'prev' and 'samp_y1y0'.")
    if prev is not None and not 0 < prev < 1:
        raise ValueError("prev is the disease prevalence and should be between 0 and 1.")
    if samp_y1y0 is not None:
        samp = np.asarray(samp_y1y0, dtype=float).ravel()
        if samp.shape != (2,) or samp.min() <= 0 or samp.max() >= 1:
            raise ValueError(
                "samp_y1y0 should hold the sampling probabilities for cases and "
                "controls: two values in (0, 1)."
            )
        samp_y1y0 = samp

    pools = prepare_pools(g, y, xtilde, c)
    layout = logreg_layout(errors, nondiff_pe, nondiff_me, x_name, pools.covariate_names)
    qg = compute_offsets(pools.g, pools.y, prev=prev, samp_y1y0=samp_y1y0)
    strata = stratify(pools, errors, qg)

    likelihood = PoolwiseLogisticLikelihood(
        strata, layout,
        constant_pe=constant_pe,
        integrator=config.integrator(),
        approx_integral=approx_integral,
    )
    return fit_likelihood(likelihood, layout, config, estimate_var, optimizer_result,
                          model_name=f'p_logreg_xerrors ({errors})')


def estimate_gdfa_constant(g, y, xtilde, c=None,
                           errors: str = 'processing',
                           estimate_var: bool = True,
                           config: Optional[EstimationConfig] = None,
                           optimizer_result: Optional[optimize.OptimizeResult] = None) -> FitResult:
    """
    Gamma discriminant function approach with a constant odds ratio.

    Fits X | Y, C ~ Gamma with lognormal processing/measurement errors and
    reports the implied exposure log-odds ratio ``logOR.hat`` = 1/b0 - 1/b1
    and its delta-method variance ``logOR.var`` in ``derived``.

    Args:
        g: Pool sizes; may be None when ``c`` is given
        y: Poolwise outcomes (1 = all cases, 0 = all controls)
        xtilde: Positive poolwise measurements; a list of vectors for replicates
        c: List with one member-level covariate matrix per pool (rows = members)
        errors: 'neither', 'processing', 'measurement' or 'both'
        estimate_var: Compute the inverse-Hessian variance-covariance matrix
        config: Estimation settings
        optimizer_result: Skip optimization and reuse this result

    Returns:
        FitResult
    """
    config = (config or EstimationConfig()).validate()
    regime_key(errors)
    _check_flag(estimate_var, 'estimate_var')

    pools = prepare_pools(g, y, xtilde, c, member_level=True, positive_exposure=True)
    layout = gdfa_layout(errors, pools.covariate_names)
    strata = stratify(pools, errors)

    likelihood = GammaDiscriminantLikelihood(strata, layout, integrator=config.integrator())
    fit = fit_likelihood(likelihood, layout, config, estimate_var, optimizer_result,
                         model_name=f'p_gdfa_constant ({errors})')

    b1 = fit.theta['b1']
    b0 = fit.theta['b0']
    log_or_var = np.nan
    if fit.theta_var is not None:
        log_or_var = delta_method_variance(
            gdfa_log_odds_ratio_gradient(b1, b0),
            fit.theta_var.loc[['b1', 'b0'], ['b1', 'b0']].to_numpy(),
        )
    fit.derived = {
        'logOR.hat': gdfa_log_odds_ratio(b1, b0),
        'logOR.var': log_or_var,
    }
    return fit
