"""
Monte Carlo Validation
======================

Framework for Monte Carlo studies of the poolwise estimators: repeatedly
simulate pooled data from a known DGP, fit, and summarize how well the
true parameters are recovered.

Key metrics:
- Bias: E[θ̂] - θ
- RMSE: sqrt(E[(θ̂ - θ)²])
- Coverage: P(θ ∈ CI)
- Mean model-based SE vs empirical SD of the estimates

Author: poolreg developers
"""

import time
import warnings
import numpy as np
import pandas as pd
from scipy import stats
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field, replace
from concurrent.futures import ProcessPoolExecutor

from ..models.estimation import (
    EstimationConfig,
    FitResult,
    estimate_gdfa_constant,
    estimate_logreg_xerrors,
)
from ..simulation.simulate_pools import (
    GammaSimulationConfig,
    LogisticSimulationConfig,
    SimulatedPools,
    simulate_gdfa_pools,
    simulate_logistic_pools,
)
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class MonteCarloResult:
    """Container for Monte Carlo study results."""
    n_replications: int
    sample_sizes: List[int]
    true_values: Dict[str, float]

    # {sample_size: (n_rep, n_params)}
    estimates: Dict[int, np.ndarray]
    std_errors: Dict[int, np.ndarray]
    convergence: Dict[int, np.ndarray]

    bias: Dict[int, Dict[str, float]] = field(default_factory=dict)
    rmse: Dict[int, Dict[str, float]] = field(default_factory=dict)
    coverage: Dict[int, Dict[str, float]] = field(default_factory=dict)
    mean_se: Dict[int, Dict[str, float]] = field(default_factory=dict)
    empirical_se: Dict[int, Dict[str, float]] = field(default_factory=dict)

    total_time: float = 0.0
    time_per_rep: float = 0.0

    def summary_table(self) -> pd.DataFrame:
        """One row per (sample size, parameter)."""
        records = []

        for sample_size in self.sample_sizes:
            for param, true_val in self.true_values.items():
                bias = self.bias.get(sample_size, {}).get(param, np.nan)
                records.append({
                    'sample_size': sample_size,
                    'parameter': param,
                    'true_value': true_val,
                    'bias': bias,
                    'bias_pct': bias / true_val * 100 if true_val != 0 else np.nan,
                    'rmse': self.rmse.get(sample_size, {}).get(param, np.nan),
                    'coverage_95': self.coverage.get(sample_size, {}).get(param, np.nan),
                    'mean_se': self.mean_se.get(sample_size, {}).get(param, np.nan),
                    'empirical_se': self.empirical_se.get(sample_size, {}).get(param, np.nan),
                    'convergence_rate': float(np.mean(self.convergence[sample_size])),
                })

        return pd.DataFrame(records)


def compute_bias(estimates: np.ndarray, true_value: float) -> float:
    """
    Bias = E[θ̂] - θ over the non-missing replications.
    """
    valid_estimates = estimates[~np.isnan(estimates)]
    if len(valid_estimates) == 0:
        return np.nan
    return np.mean(valid_estimates) - true_value


def compute_rmse(estimates: np.ndarray, true_value: float) -> float:
    """
    RMSE = sqrt(E[(θ̂ - θ)²]) over the non-missing replications.
    """
    valid_estimates = estimates[~np.isnan(estimates)]
    if len(valid_estimates) == 0:
        return np.nan
    return np.sqrt(np.mean((valid_estimates - true_value) ** 2))


def compute_coverage(estimates: np.ndarray,
                     std_errors: np.ndarray,
                     true_value: float,
                     confidence: float = 0.95) -> float:
    """
    Wald interval coverage rate, P(θ ∈ [θ̂ - z*SE, θ̂ + z*SE]).

    Replications without a positive standard error are skipped.
    """
    valid_mask = ~np.isnan(estimates) & ~np.isnan(std_errors) & (std_errors > 0)

    if valid_mask.sum() == 0:
        return np.nan

    z = stats.norm.ppf((1 + confidence) / 2)

    lower = estimates[valid_mask] - z * std_errors[valid_mask]
    upper = estimates[valid_mask] + z * std_errors[valid_mask]

    covered = (lower <= true_value) & (true_value <= upper)
    return covered.mean()


def fit_to_record(fit: FitResult) -> Dict[str, float]:
    """
    Flatten a FitResult into {param: estimate, param_se: SE, converged: bool}.

    Derived gamma-model quantities are reported as ``logOR`` / ``logOR_se``.
    """
    record = fit.theta.to_dict()
    record.update({f'{name}_se': se for name, se in fit.std_errs.items()})
    if 'logOR.hat' in fit.derived:
        record['logOR'] = fit.derived['logOR.hat']
        var = fit.derived['logOR.var']
        record['logOR_se'] = np.sqrt(var) if np.isfinite(var) and var > 0 else np.nan
    record['converged'] = fit.converged
    return record


class MonteCarloStudy:
    """
    Monte Carlo simulation study for estimation validation.

    Runs multiple replications of:
    1. Generate pooled data from a known DGP
    2. Fit the model
    3. Record estimates and SEs
    4. Compute summary statistics

    Example:
        >>> study = MonteCarloStudy(n_replications=50, sample_sizes=[50, 100])
        >>> result = study.run(dgp_func, estimate_func, true_values)
    """

    def __init__(self,
                 n_replications: int = 100,
                 sample_sizes: List[int] = None,
                 seed: int = 42,
                 n_workers: int = 1,
                 verbose: bool = True):
        """
        Initialize Monte Carlo study.

        Args:
            n_replications: Number of replications per sample size
            sample_sizes: Case (and control) pools per pool size
            seed: Base random seed
            n_workers: Number of parallel workers (1 = sequential); the DGP
                and estimation functions must then be picklable
            verbose: Print progress
        """
        self.n_replications = n_replications
        self.sample_sizes = sample_sizes or [50, 100, 200]
        self.seed = seed
        self.n_workers = n_workers
        self.verbose = verbose

    def _single_replication(self,
                            rep: int,
                            sample_size: int,
                            dgp_func: Callable,
                            estimate_func: Callable,
                            param_names: List[str],
                            base_seed: int) -> Tuple[np.ndarray, np.ndarray, bool]:
        """Run single replication."""
        rep_seed = base_seed + rep + sample_size * 1000

        try:
            data = dgp_func(n=sample_size, seed=rep_seed)
            with warnings.catch_warnings():
                warnings.simplefilter('ignore', UserWarning)
                result = estimate_func(data)

            estimates = np.array([result.get(p, np.nan) for p in param_names])
            std_errors = np.array([result.get(f'{p}_se', np.nan) for p in param_names])
            converged = bool(result.get('converged', True))

            return estimates, std_errors, converged

        except (ValueError, np.linalg.LinAlgError, FloatingPointError) as e:
            logger.warning(f"Replication {rep} (n={sample_size}) failed: {e}")
            n_params = len(param_names)
            return np.full(n_params, np.nan), np.full(n_params, np.nan), False

    def run(self,
            dgp_func: Callable,
            estimate_func: Callable,
            true_values: Dict[str, float]) -> MonteCarloResult:
        """
        Run Monte Carlo study.

        Args:
            dgp_func: Function(n, seed) -> data that generates data from DGP
            estimate_func: Function(data) -> dict with estimates and SEs
                (see fit_to_record)
            true_values: Dict mapping parameter name to true value

        Returns:
            MonteCarloResult with summary statistics
        """
        start_time = time.time()

        param_names = list(true_values.keys())
        n_params = len(param_names)

        estimates = {}
        std_errors = {}
        convergence = {}

        for sample_size in self.sample_sizes:
            if self.verbose:
                print(f"\nSample size: {sample_size}")
                print("-" * 40)

            estimates[sample_size] = np.zeros((self.n_replications, n_params))
            std_errors[sample_size] = np.zeros((self.n_replications, n_params))
            convergence[sample_size] = np.zeros(self.n_replications, dtype=bool)

            if self.n_workers > 1:
                with ProcessPoolExecutor(max_workers=self.n_workers) as executor:
                    futures = [
                        executor.submit(
                            self._single_replication,
                            rep, sample_size, dgp_func, estimate_func,
                            param_names, self.seed
                        )
                        for rep in range(self.n_replications)
                    ]

                    for rep, future in enumerate(futures):
                        est, se, conv = future.result()
                        estimates[sample_size][rep] = est
                        std_errors[sample_size][rep] = se
                        convergence[sample_size][rep] = conv

                        if self.verbose and (rep + 1) % 10 == 0:
                            print(f"  Completed {rep + 1}/{self.n_replications}")
            else:
                for rep in range(self.n_replications):
                    est, se, conv = self._single_replication(
                        rep, sample_size, dgp_func, estimate_func,
                        param_names, self.seed
                    )
                    estimates[sample_size][rep] = est
                    std_errors[sample_size][rep] = se
                    convergence[sample_size][rep] = conv

                    if self.verbose and (rep + 1) % 10 == 0:
                        conv_rate = convergence[sample_size][:rep+1].mean()
                        print(f"  Rep {rep + 1}/{self.n_replications}, Conv: {conv_rate:.1%}")

        result = MonteCarloResult(
            n_replications=self.n_replications,
            sample_sizes=self.sample_sizes,
            true_values=true_values,
            estimates=estimates,
            std_errors=std_errors,
            convergence=convergence
        )

        for sample_size in self.sample_sizes:
            result.bias[sample_size] = {}
            result.rmse[sample_size] = {}
            result.coverage[sample_size] = {}
            result.mean_se[sample_size] = {}
            result.empirical_se[sample_size] = {}

            for i, param in enumerate(param_names):
                est = estimates[sample_size][:, i]
                se = std_errors[sample_size][:, i]
                true_val = true_values[param]

                result.bias[sample_size][param] = compute_bias(est, true_val)
                result.rmse[sample_size][param] = compute_rmse(est, true_val)
                result.coverage[sample_size][param] = compute_coverage(est, se, true_val)
                with warnings.catch_warnings():
                    warnings.simplefilter('ignore', RuntimeWarning)
                    result.mean_se[sample_size][param] = np.nanmean(se)
                    result.empirical_se[sample_size][param] = np.nanstd(est)

        total_time = time.time() - start_time
        result.total_time = total_time
        result.time_per_rep = total_time / (self.n_replications * len(self.sample_sizes))

        if self.verbose:
            print(f"\n{'='*50}")
            print("Monte Carlo study complete")
            print(f"Total time: {total_time:.1f}s")
            print(f"Time per replication: {result.time_per_rep:.2f}s")

        return result


# =============================================================================
# POOLWISE STUDIES
# =============================================================================

def logistic_dgp(n: int, seed: int, config: LogisticSimulationConfig) -> SimulatedPools:
    """DGP function for MonteCarloStudy: ``n`` case and ``n`` control pools per size."""
    return simulate_logistic_pools(replace(config, n_case_pools=n, n_control_pools=n, seed=seed))


def gdfa_dgp(n: int, seed: int, config: GammaSimulationConfig) -> SimulatedPools:
    """DGP function for MonteCarloStudy: ``n`` case and ``n`` control pools per size."""
    return simulate_gdfa_pools(replace(config, n_case_pools=n, n_control_pools=n, seed=seed))


def fit_logistic(data: SimulatedPools, errors: str = 'processing',
                 use_prevalence: bool = True,
                 estimation_config: Optional[EstimationConfig] = None,
                 **kwargs) -> Dict[str, float]:
    """Estimation function for MonteCarloStudy (logistic family)."""
    prev = data.prevalence if use_prevalence else None
    fit = estimate_logreg_xerrors(errors=errors, prev=prev, config=estimation_config,
                                  **data.inputs(), **kwargs)
    return fit_to_record(fit)


def fit_gdfa(data: SimulatedPools, errors: str = 'processing',
             estimation_config: Optional[EstimationConfig] = None) -> Dict[str, float]:
    """Estimation function for MonteCarloStudy (gamma discriminant family)."""
    fit = estimate_gdfa_constant(errors=errors, config=estimation_config, **data.inputs())
    return fit_to_record(fit)


def run_parameter_recovery(family: str = 'logistic',
                           errors: str = 'processing',
                           simulation_config=None,
                           parameters: List[str] = None,
                           n_replications: int = 100,
                           sample_sizes: List[int] = None,
                           seed: int = 42,
                           n_workers: int = 1,
                           verbose: bool = True,
                           **fit_kwargs) -> MonteCarloResult:
    """
    Parameter recovery study for one model family and error regime.

    Args:
        family: 'logistic' or 'gdfa'
        errors: Error regime assumed by the fitted model
        simulation_config: LogisticSimulationConfig or GammaSimulationConfig
        parameters: Parameters to summarize (default: exposure effect)
        n_replications: Replications per sample size
        sample_sizes: Case (and control) pools per pool size
        seed: Base random seed
        n_workers: Parallel worker processes
        verbose: Print progress
        **fit_kwargs: Passed to the estimation function

    Returns:
        MonteCarloResult
    """
    if family == 'logistic':
        config = simulation_config or LogisticSimulationConfig()
        dgp = partial(logistic_dgp, config=config)
        estimate = partial(fit_logistic, errors=errors, **fit_kwargs)
        parameters = parameters or ['beta_x']
    elif family == 'gdfa':
        config = simulation_config or GammaSimulationConfig()
        dgp = partial(gdfa_dgp, config=config)
        estimate = partial(fit_gdfa, errors=errors, **fit_kwargs)
        parameters = parameters or ['logOR']
    else:
        raise ValueError(f"family should be 'logistic' or 'gdfa', got {family!r}.")

    # True values come from a throwaway draw of the DGP
    truth = dgp(n=1, seed=seed).truth
    true_values = {}
    for param in parameters:
        if param in truth:
            true_values[param] = truth[param]
        elif f'{param}1' in truth:
            true_values[param] = truth[f'{param}1']
        else:
            raise ValueError(f"No true value for parameter '{param}'.")

    study = MonteCarloStudy(
        n_replications=n_replications,
        sample_sizes=sample_sizes,
        seed=seed,
        n_workers=n_workers,
        verbose=verbose,
    )
    return study.run(dgp, estimate, true_values)


def run_error_model_comparison(family: str = 'logistic',
                               simulation_config=None,
                               naive_errors: str = 'neither',
                               corrected_errors: str = 'processing',
                               parameters: List[str] = None,
                               n_replications: int = 100,
                               sample_sizes: List[int] = None,
                               seed: int = 42,
                               verbose: bool = True) -> pd.DataFrame:
    """
    Compare a fit that ignores exposure errors with one that models them.

    Both fits see the same simulated datasets (same seeds).

    Returns:
        DataFrame with bias / RMSE / coverage per parameter, method and size
    """
    sample_sizes = sample_sizes or [50, 100]
    tables = []
    for method, errors in (('naive', naive_errors), ('corrected', corrected_errors)):
        if verbose:
            print(f"\nRunning {method} fit (errors={errors!r})...")
        result = run_parameter_recovery(
            family=family,
            errors=errors,
            simulation_config=simulation_config,
            parameters=parameters,
            n_replications=n_replications,
            sample_sizes=sample_sizes,
            seed=seed,
            verbose=verbose,
        )
        table = result.summary_table()
        table.insert(0, 'method', method)
        tables.append(table)
    return pd.concat(tables, ignore_index=True)
