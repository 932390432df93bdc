"""
Tests for Inference Module
==========================

Tests for numerical derivatives, Hessian inversion and the delta method.
"""

import pytest
import numpy as np
from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / 'src'))

from poolreg.estimation.inference import (
    delta_method_se,
    delta_method_variance,
    gdfa_log_odds_ratio,
    gdfa_log_odds_ratio_gradient,
    invert_hessian,
    numerical_gradient,
    numerical_hessian,
)


# =============================================================================
# Numerical Derivatives
# =============================================================================

@pytest.mark.unit
class TestNumericalHessian:
    """Tests for the Richardson-extrapolated Hessian."""

    def test_quadratic(self):
        A = np.array([[2.0, 0.5], [0.5, 1.0]])
        b = np.array([0.3, -0.2])

        def f(x):
            return 0.5 * x @ A @ x + b @ x

        H = numerical_hessian(f, np.array([1.5, -2.0]))
        np.testing.assert_allclose(H, A, rtol=1e-4, atol=1e-4)

    def test_nonquadratic(self):
        def f(x):
            return np.exp(x[0]) + x[0] * x[1] ** 2

        x = np.array([0.5, 1.2])
        expected = np.array([[np.exp(0.5), 2 * 1.2], [2 * 1.2, 2 * 0.5]])
        np.testing.assert_allclose(numerical_hessian(f, x), expected, rtol=1e-4, atol=1e-4)

    def test_parameter_at_zero_uses_absolute_step(self):
        def f(x):
            return 3.0 * x[0] ** 2 + x[0] * x[1] + x[1] ** 2

        H = numerical_hessian(f, np.array([0.0, 1.0]))
        np.testing.assert_allclose(H, [[6.0, 1.0], [1.0, 2.0]], rtol=1e-4, atol=1e-4)

    def test_symmetric(self):
        def f(x):
            return np.sin(x[0]) * np.cos(x[1]) + x[2] ** 4

        H = numerical_hessian(f, np.array([0.3, 0.7, 1.1]), r=2)
        np.testing.assert_array_equal(H, H.T)

    def test_rounds_validated(self):
        with pytest.raises(ValueError):
            numerical_hessian(lambda x: float(x @ x), np.ones(2), r=0)

    def test_nonfinite_stencil_gives_nan(self):
        def f(x):
            if x[1] < 0:
                return np.inf
            return x[0] ** 2 + x[1] ** 2

        # Absolute step 1e-4 around a near-zero variance crosses into x[1] < 0
        H = numerical_hessian(f, np.array([1.0, 1e-6]), r=2)
        assert H[0, 0] == pytest.approx(2.0, rel=1e-4)
        assert np.isnan(H[1, 1])
        assert np.isnan(H[0, 1]) and np.isnan(H[1, 0])

        with pytest.warns(UserWarning, match="NaN"):
            estimate = invert_hessian(H, ['a', 'sigsq'])
        assert estimate.covariance is None
        assert estimate.singular


@pytest.mark.unit
class TestNumericalGradient:
    """Tests for the finite-difference gradient."""

    def test_central(self):
        grad = numerical_gradient(lambda x: x[0] ** 2 + 3 * x[1], np.array([1.5, -2.0]))
        np.testing.assert_allclose(grad, [3.0, 3.0], atol=1e-6)

    def test_forward_at_lower_bound(self):
        evaluated = []

        def f(x):
            evaluated.append(x[0])
            return (x[0] - 1) ** 2

        grad = numerical_gradient(f, np.array([0.0]), lower=np.array([0.0]))
        assert grad[0] == pytest.approx(-2.0, abs=1e-4)
        assert min(evaluated) >= 0.0

    def test_backward_at_upper_bound(self):
        evaluated = []

        def f(x):
            evaluated.append(x[0])
            return (x[0] - 1) ** 2

        grad = numerical_gradient(f, np.array([2.0]), upper=np.array([2.0]))
        assert grad[0] == pytest.approx(2.0, abs=1e-4)
        assert max(evaluated) <= 2.0


# =============================================================================
# Hessian Inversion
# =============================================================================

@pytest.mark.unit
class TestInvertHessian:
    """Tests for the inverse-Hessian variance estimate."""

    def test_positive_definite(self):
        H = np.array([[4.0, 1.0], [1.0, 2.0]])
        estimate = invert_hessian(H, ['a', 'b'])

        assert estimate.reliable
        assert list(estimate.covariance.index) == ['a', 'b']
        np.testing.assert_allclose(estimate.covariance.to_numpy(), np.linalg.inv(H))
        np.testing.assert_allclose(estimate.std_errs().to_numpy(),
                                   np.sqrt(np.diag(np.linalg.inv(H))))

    def test_singular(self):
        with pytest.warns(UserWarning, match="singular"):
            estimate = invert_hessian(np.ones((2, 2)), ['a', 'b'])
        assert estimate.covariance is None
        assert estimate.singular
        assert not estimate.reliable
        assert estimate.std_errs() is None

    def test_nan_entries(self):
        H = np.array([[1.0, np.nan], [np.nan, 1.0]])
        with pytest.warns(UserWarning, match="NaN"):
            estimate = invert_hessian(H, ['a', 'b'])
        assert estimate.covariance is None

    def test_nonpositive_diagonal(self):
        H = np.array([[-1.0, 0.0], [0.0, 2.0]])
        with pytest.warns(UserWarning, match="non-positive"):
            estimate = invert_hessian(H, ['a', 'b'])
        assert estimate.covariance is not None
        assert estimate.nonpositive_diagonal
        assert not estimate.positive_semidefinite
        assert not estimate.reliable


# =============================================================================
# Delta Method
# =============================================================================

@pytest.mark.unit
class TestDeltaMethod:
    """Tests for delta-method variances."""

    def test_quadratic_form(self):
        cov = np.array([[1.0, 0.5], [0.5, 2.0]])
        assert delta_method_variance([1.0, 2.0], cov) == pytest.approx(11.0)
        assert delta_method_se([1.0, 2.0], cov) == pytest.approx(np.sqrt(11.0))

    def test_negative_variance_gives_zero_se(self):
        assert delta_method_se([1.0], np.array([[-1.0]])) == 0.0

    def test_gdfa_log_odds_ratio(self):
        assert gdfa_log_odds_ratio(b1=2.0, b0=1.0) == pytest.approx(0.5)

    def test_gdfa_gradient_matches_numerical(self):
        b = np.array([1.5, 0.8])
        numeric = numerical_gradient(lambda v: gdfa_log_odds_ratio(v[0], v[1]), b)
        np.testing.assert_allclose(gdfa_log_odds_ratio_gradient(*b), numeric, rtol=1e-6)
