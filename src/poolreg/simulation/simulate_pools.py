"""
Pooled Case-Control Data Simulator
==================================

Synthetic pooled data from a known data generating process (DGP), for
checking that the estimators recover the parameters they were given.

Logistic DGP (prospective, then case-control sampled):
    1. Individuals: C ~ N(0, I), X | C ~ N(alpha_0 + C' alpha_c, sigsq_x.c),
       Y ~ Bernoulli(expit(beta_0 + beta_x X + C' beta_c))
    2. Cases and controls are drawn into outcome-homogeneous pools of each
       size; X and C are summed within a pool
    3. Xtilde = X_sum + e_p + e_m with Var(e_p) = g^2 sigsq_p I(g > 1)
       (g^3 if processing error grows with pool size) and Var(e_m) = g^2 sigsq_m

Gamma DGP (retrospective):
    1. Member covariates C_j ~ N(0, I)
    2. X | Y ~ Gamma(sum_j exp(gamma_0 + C_j' gamma_c), scale b_Y)
    3. log Xtilde = log X + e_p + e_m - (Ig sigsq_p + sigsq_m) / 2

In both DGPs a fraction of pools receives k replicate measurements that
share the processing error.

Author: poolreg developers
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ..utils.logging_config import get_logger

logger = get_logger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class LogisticSimulationConfig:
    """True parameters and design of the logistic DGP."""
    pool_sizes: Tuple[int, ...] = (1, 2, 3)
    n_case_pools: int = 100
    n_control_pools: int = 100

    beta_0: float = -0.5
    beta_x: float = 0.5
    beta_c: Tuple[float, ...] = (0.2,)
    alpha_0: float = 0.0
    alpha_c: Tuple[float, ...] = (0.25,)
    sigsq_x_c: float = 1.0

    sigsq_p1: float = 0.0
    sigsq_p0: Optional[float] = None
    sigsq_m1: float = 0.0
    sigsq_m0: Optional[float] = None
    constant_pe: bool = True

    replicate_fraction: float = 0.0
    n_replicates: int = 2
    seed: Optional[int] = 42

    @property
    def n_covariates(self) -> int:
        return len(self.beta_c)

    def validate(self) -> None:
        if len(self.alpha_c) != len(self.beta_c):
            raise ValueError("alpha_c and beta_c need one entry per covariate.")
        _validate_design(self)
        if self.sigsq_x_c <= 0:
            raise ValueError("sigsq_x_c should be positive.")

    def error_variances(self) -> Dict[str, float]:
        p0 = self.sigsq_p1 if self.sigsq_p0 is None else self.sigsq_p0
        m0 = self.sigsq_m1 if self.sigsq_m0 is None else self.sigsq_m0
        return {'sigsq_p1': self.sigsq_p1, 'sigsq_p0': p0,
                'sigsq_m1': self.sigsq_m1, 'sigsq_m0': m0}


@dataclass
class GammaSimulationConfig:
    """True parameters and design of the gamma discriminant DGP."""
    pool_sizes: Tuple[int, ...] = (1, 2, 3)
    n_case_pools: int = 100
    n_control_pools: int = 100

    gamma_0: float = 0.5
    gamma_c: Tuple[float, ...] = ()
    b1: float = 1.5
    b0: float = 1.0

    sigsq_p: float = 0.0
    sigsq_m: float = 0.0

    replicate_fraction: float = 0.0
    n_replicates: int = 2
    seed: Optional[int] = 42

    @property
    def n_covariates(self) -> int:
        return len(self.gamma_c)

    def validate(self) -> None:
        _validate_design(self)
        if self.b1 <= 0 or self.b0 <= 0:
            raise ValueError("Gamma scales b1 and b0 should be positive.")

    @property
    def log_odds_ratio(self) -> float:
        return 1 / self.b0 - 1 / self.b1


def _validate_design(config) -> None:
    if not config.pool_sizes or any(int(g) != g or g < 1 for g in config.pool_sizes):
        raise ValueError("pool_sizes should be positive integers.")
    if config.n_case_pools < 1 or config.n_control_pools < 1:
        raise ValueError("Need at least one case pool and one control pool per size.")
    if not 0 <= config.replicate_fraction <= 1:
        raise ValueError("replicate_fraction should be in [0, 1].")
    if config.replicate_fraction > 0 and config.n_replicates < 2:
        raise ValueError("n_replicates should be at least 2.")


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class SimulatedPools:
    """
    Simulated poolwise data ready for the estimators.

    Attributes:
        g: Pool sizes
        y: Poolwise outcomes
        xtilde: Measurements per pool (arrays of length k)
        c: Poolwise summed covariates (logistic) or a list of member
            covariate matrices (gamma), or None
        x: True poolwise exposures
        truth: True parameter values keyed by parameter label
        prevalence: Population disease prevalence (logistic DGP only)
    """
    g: np.ndarray
    y: np.ndarray
    xtilde: List[np.ndarray]
    c: Optional[object]
    x: np.ndarray
    truth: Dict[str, float]
    prevalence: Optional[float] = None

    @property
    def n(self) -> int:
        return len(self.y)

    def inputs(self) -> Dict[str, object]:
        """Keyword arguments for the estimation entry points."""
        return {'g': self.g, 'y': self.y, 'xtilde': self.xtilde, 'c': self.c}

    def truth_for(self, labels: Sequence[str]) -> pd.Series:
        """
        True values aligned to a parameter layout.

        Non-differential labels (``sigsq_p``, ``sigsq_m``) take the case-pool
        value.
        """
        values = {}
        for label in labels:
            if label in self.truth:
                values[label] = self.truth[label]
            elif f'{label}1' in self.truth:
                values[label] = self.truth[f'{label}1']
            else:
                raise KeyError(f"No true value for parameter '{label}'.")
        return pd.Series(values)

    def to_dataframe(self) -> pd.DataFrame:
        df = pd.DataFrame({
            'g': self.g,
            'y': self.y,
            'k': [len(v) for v in self.xtilde],
            'x': self.x,
            'xtilde': [v[0] if len(v) == 1 else v for v in self.xtilde],
        })
        if isinstance(self.c, np.ndarray):
            for j in range(self.c.shape[1]):
                df[_covariate_name(j, self.c.shape[1])] = self.c[:, j]
        return df


def _covariate_name(j: int, n_cols: int) -> str:
    return 'c' if n_cols == 1 else f'c{j + 1}'


def _replicate_counts(n: int, config, rng: np.random.Generator) -> np.ndarray:
    k = np.ones(n, dtype=int)
    n_rep = int(round(config.replicate_fraction * n))
    if n_rep > 0:
        k[rng.choice(n, size=n_rep, replace=False)] = config.n_replicates
    return k


def _pool_design(config) -> Tuple[np.ndarray, np.ndarray]:
    g = []
    y = []
    for size in config.pool_sizes:
        g += [int(size)] * (config.n_case_pools + config.n_control_pools)
        y += [1] * config.n_case_pools + [0] * config.n_control_pools
    return np.array(g), np.array(y)


# =============================================================================
# LOGISTIC DGP
# =============================================================================

def _draw_individuals(config: LogisticSimulationConfig, n: int,
                      rng: np.random.Generator):
    p = config.n_covariates
    c = rng.standard_normal((n, p))
    x = (config.alpha_0 + c @ np.asarray(config.alpha_c, dtype=float)
         + np.sqrt(config.sigsq_x_c) * rng.standard_normal(n))
    eta = config.beta_0 + config.beta_x * x + c @ np.asarray(config.beta_c, dtype=float)
    y = rng.random(n) < 1 / (1 + np.exp(-eta))
    return x, c, y.astype(int)


def simulate_logistic_pools(config: LogisticSimulationConfig = None,
                            rng: Optional[np.random.Generator] = None) -> SimulatedPools:
    """
    Simulate pooled case-control data under the logistic DGP.

    Args:
        config: DGP configuration (defaults if None)
        rng: Random generator; created from ``config.seed`` if None

    Returns:
        SimulatedPools with true parameter values for every logistic label
    """
    config = config or LogisticSimulationConfig()
    config.validate()
    rng = rng or np.random.default_rng(config.seed)

    g, y = _pool_design(config)
    need_cases = int(np.sum(g[y == 1]))
    need_controls = int(np.sum(g[y == 0]))

    # Draw a source population until it holds enough cases and controls
    xs, cs, ys = [], [], []
    n_cases = n_controls = 0
    batch = max(1000, 4 * (need_cases + need_controls))
    while n_cases < need_cases or n_controls < need_controls:
        x_b, c_b, y_b = _draw_individuals(config, batch, rng)
        xs.append(x_b)
        cs.append(c_b)
        ys.append(y_b)
        n_cases += int(y_b.sum())
        n_controls += int(len(y_b) - y_b.sum())
    x_pop = np.concatenate(xs)
    c_pop = np.vstack(cs)
    y_pop = np.concatenate(ys)
    prevalence = float(y_pop.mean())

    case_idx = rng.permutation(np.flatnonzero(y_pop == 1))[:need_cases]
    control_idx = rng.permutation(np.flatnonzero(y_pop == 0))[:need_controls]
    queues = {1: iter(case_idx), 0: iter(control_idx)}

    n = len(y)
    x_pool = np.zeros(n)
    c_pool = np.zeros((n, config.n_covariates))
    for i in range(n):
        members = [next(queues[y[i]]) for _ in range(g[i])]
        x_pool[i] = x_pop[members].sum()
        c_pool[i] = c_pop[members].sum(axis=0)

    variances = config.error_variances()
    k = _replicate_counts(n, config, rng)
    xtilde = []
    for i in range(n):
        sp = variances['sigsq_p1'] if y[i] == 1 else variances['sigsq_p0']
        sm = variances['sigsq_m1'] if y[i] == 1 else variances['sigsq_m0']
        size_scale = 1 if config.constant_pe else g[i]
        pe_var = g[i] ** 2 * size_scale * sp * (g[i] > 1)
        e_p = np.sqrt(pe_var) * rng.standard_normal()
        e_m = np.sqrt(g[i] ** 2 * sm) * rng.standard_normal(k[i])
        xtilde.append(x_pool[i] + e_p + e_m)

    names = [_covariate_name(j, config.n_covariates) for j in range(config.n_covariates)]
    truth = {'beta_0': config.beta_0, 'beta_x': config.beta_x}
    truth.update({f'beta_{name}': b for name, b in zip(names, config.beta_c)})
    truth['alpha_0'] = config.alpha_0
    truth.update({f'alpha_{name}': a for name, a in zip(names, config.alpha_c)})
    truth['sigsq_x.c'] = config.sigsq_x_c
    truth.update(variances)

    logger.debug(
        f"Simulated {n} logistic pools from a source population of "
        f"{len(y_pop)} (prevalence {prevalence:.3f})"
    )
    return SimulatedPools(
        g=g,
        y=y,
        xtilde=xtilde,
        c=c_pool if config.n_covariates > 0 else None,
        x=x_pool,
        truth=truth,
        prevalence=prevalence,
    )


# =============================================================================
# GAMMA DGP
# =============================================================================

def simulate_gdfa_pools(config: GammaSimulationConfig = None,
                        rng: Optional[np.random.Generator] = None) -> SimulatedPools:
    """
    Simulate pooled data under the gamma discriminant DGP.

    Args:
        config: DGP configuration (defaults if None)
        rng: Random generator; created from ``config.seed`` if None

    Returns:
        SimulatedPools; ``truth`` includes ``logOR``
    """
    config = config or GammaSimulationConfig()
    config.validate()
    rng = rng or np.random.default_rng(config.seed)

    g, y = _pool_design(config)
    n = len(y)
    gamma_c = np.asarray(config.gamma_c, dtype=float)

    members = []
    x = np.zeros(n)
    for i in range(n):
        c_i = rng.standard_normal((g[i], config.n_covariates))
        members.append(c_i)
        shape = np.sum(np.exp(config.gamma_0 + c_i @ gamma_c))
        scale = config.b1 if y[i] == 1 else config.b0
        x[i] = rng.gamma(shape, scale)

    k = _replicate_counts(n, config, rng)
    xtilde = []
    for i in range(n):
        pe_var = config.sigsq_p * (g[i] > 1)
        total_var = pe_var + config.sigsq_m
        e_p = np.sqrt(pe_var) * rng.standard_normal()
        e_m = np.sqrt(config.sigsq_m) * rng.standard_normal(k[i])
        xtilde.append(x[i] * np.exp(e_p + e_m - total_var / 2))

    names = [_covariate_name(j, config.n_covariates) for j in range(config.n_covariates)]
    truth = {'gamma_0': config.gamma_0}
    truth.update({f'gamma_{name}': v for name, v in zip(names, config.gamma_c)})
    truth.update({
        'b1': config.b1,
        'b0': config.b0,
        'sigsq_p': config.sigsq_p,
        'sigsq_m': config.sigsq_m,
        'logOR': config.log_odds_ratio,
    })

    return SimulatedPools(
        g=g,
        y=y,
        xtilde=xtilde,
        c=members if config.n_covariates > 0 else None,
        x=x,
        truth=truth,
    )
