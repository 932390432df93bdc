"""
Pytest Configuration and Shared Fixtures
=========================================

Provides common test fixtures for poolwise estimation tests.
"""

import pytest
import pandas as pd
import numpy as np
from scipy import optimize
from pathlib import Path
import sys

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / 'src'))

from poolreg.models.estimation import EstimationConfig, FitResult, RetryState
from poolreg.simulation.simulate_pools import (
    GammaSimulationConfig,
    LogisticSimulationConfig,
    simulate_gdfa_pools,
    simulate_logistic_pools,
)


# =============================================================================
# Hand-Built Data Fixtures
# =============================================================================

@pytest.fixture
def small_pools():
    """Twelve pools of sizes 1-3, one case and one control pool per size and block."""
    g = np.array([1, 1, 1, 1, 2, 2, 2, 2, 3, 3, 3, 3])
    y = np.array([1, 0, 1, 0, 1, 0, 1, 0, 1, 0, 1, 0])
    xtilde = np.array([0.8, -0.3, 1.1, 0.2, 1.9, -0.4, 0.6, 0.1, 2.4, 0.3, 1.7, -1.2])
    c = np.array([0.5, -0.2, 0.1, 0.0, 1.2, -0.7, 0.3, 0.4, 0.9, -1.1, 0.2, 0.6])
    return {'g': g, 'y': y, 'xtilde': xtilde, 'c': c}


@pytest.fixture
def replicate_pools():
    """Eight pools, three of them with replicate measurements."""
    g = np.array([1, 1, 2, 2, 2, 2, 3, 3])
    y = np.array([1, 0, 1, 0, 1, 0, 1, 0])
    xtilde = [
        [0.9],
        [-0.2, -0.1],
        [1.6],
        [0.3, 0.5, 0.2],
        [1.2],
        [-0.6],
        [2.1, 2.4],
        [0.4],
    ]
    return {'g': g, 'y': y, 'xtilde': xtilde}


@pytest.fixture
def positive_pools():
    """Positive exposures for the gamma model."""
    g = np.array([1, 1, 1, 1, 2, 2, 2, 2])
    y = np.array([1, 0, 1, 0, 1, 0, 1, 0])
    xtilde = np.array([2.3, 1.1, 3.0, 0.7, 4.2, 2.8, 5.1, 1.9])
    return {'g': g, 'y': y, 'xtilde': xtilde}


# =============================================================================
# Simulated Data Fixtures - Known Parameters
# =============================================================================

@pytest.fixture(scope="session")
def processing_error_data():
    """Pools of sizes 1-3 with substantial processing error."""
    config = LogisticSimulationConfig(
        n_case_pools=60,
        n_control_pools=60,
        sigsq_p1=1.0,
        seed=11,
    )
    return simulate_logistic_pools(config)


@pytest.fixture(scope="session")
def gamma_data():
    """Gamma exposures in pools of sizes 1 and 2 with processing error."""
    config = GammaSimulationConfig(
        pool_sizes=(1, 2),
        n_case_pools=40,
        n_control_pools=40,
        sigsq_p=0.1,
        seed=7,
    )
    return simulate_gdfa_pools(config)


# =============================================================================
# Estimation Fixtures
# =============================================================================

@pytest.fixture
def fast_config():
    """Estimation settings with a cheaper Hessian."""
    return EstimationConfig(hessian_r=2, seed=1)


@pytest.fixture
def make_fit():
    """Factory for FitResult objects with chosen estimates and covariance."""

    def _make(theta, covariance=None, fun=10.0, success=True, jac=None,
              lower=None, upper=None, hessian=None, derived=None):
        labels = list(theta)
        x = np.array([theta[k] for k in labels], dtype=float)
        n = len(x)
        theta_var = None
        if covariance is not None:
            theta_var = pd.DataFrame(np.asarray(covariance, dtype=float),
                                     index=labels, columns=labels)
        result = optimize.OptimizeResult(
            x=x, fun=fun, success=success, message='done', nit=12,
            jac=np.zeros(n) if jac is None else np.asarray(jac, dtype=float),
        )
        return FitResult(
            theta=pd.Series(x, index=labels),
            theta_var=theta_var,
            optimizer_result=result,
            aic=2 * (n + fun),
            converged=success,
            retry_state=RetryState.CONVERGED if success else RetryState.FAILED,
            lower=np.full(n, -np.inf) if lower is None else np.asarray(lower, dtype=float),
            upper=np.full(n, np.inf) if upper is None else np.asarray(upper, dtype=float),
            hessian=hessian,
            derived=derived or {},
            model_name='test model',
        )

    return _make
