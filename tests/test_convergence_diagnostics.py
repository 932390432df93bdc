"""
Tests for Convergence Diagnostics
=================================
"""

import pytest
import numpy as np
from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / 'src'))

from poolreg.estimation.convergence_diagnostics import (
    ConvergenceChecker,
    generate_convergence_table,
    projected_gradient,
)


@pytest.mark.unit
class TestProjectedGradient:
    """Tests for bound-aware gradients."""

    def test_active_lower_bound(self):
        grad = projected_gradient(np.array([0.5, 0.5]), np.array([1e-4, 1.0]),
                                  lower=np.array([1e-4, 1e-4]), upper=np.full(2, np.inf))
        np.testing.assert_array_equal(grad, [0.0, 0.5])

    def test_active_upper_bound(self):
        grad = projected_gradient(np.array([-0.5, -0.5]), np.array([2.0, 1.0]),
                                  lower=np.full(2, -np.inf), upper=np.array([2.0, 2.0]))
        np.testing.assert_array_equal(grad, [0.0, -0.5])

    def test_inward_gradient_kept(self):
        grad = projected_gradient(np.array([-0.5]), np.array([0.0]),
                                  lower=np.array([0.0]), upper=np.array([np.inf]))
        np.testing.assert_array_equal(grad, [-0.5])


@pytest.mark.unit
class TestConvergenceChecker:
    """Tests for post-fit diagnostics."""

    def test_acceptable_fit(self, make_fit):
        fit = make_fit({'a': 0.3, 'b': 1.2}, jac=[1e-6, -2e-6],
                       hessian=np.array([[4.0, 1.0], [1.0, 2.0]]))
        diagnostics = ConvergenceChecker().full_diagnostics(fit)
        assert diagnostics.acceptable
        assert diagnostics.iterations == 12
        assert diagnostics.final_ll == -10.0
        assert "PASS" in diagnostics.summary()

    def test_gradient_at_bound_ignored(self, make_fit):
        fit = make_fit({'a': 0.3, 'sigsq': 1e-4}, jac=[0.0, 5.0],
                       lower=[-np.inf, 1e-4])
        ok, norm = ConvergenceChecker().check_gradient(fit)
        assert ok
        assert norm == 0.0

    def test_large_gradient(self, make_fit):
        fit = make_fit({'a': 0.3, 'b': 1.2}, jac=[0.5, 0.0])
        ok, norm = ConvergenceChecker().check_gradient(fit)
        assert not ok
        assert norm == pytest.approx(0.5)

    def test_flat_direction_flagged(self, make_fit):
        hessian = np.array([[1.0, 1.0, 0.0], [1.0, 1.0, 0.0], [0.0, 0.0, 3.0]])
        fit = make_fit({'a': 0.0, 'b': 0.0, 'c': 1.0}, hessian=hessian)
        checker = ConvergenceChecker()

        identified, problematic = checker.check_identification(hessian, ['a', 'b', 'c'])
        assert not identified
        assert set(problematic) == {'a', 'b'}
        assert not checker.full_diagnostics(fit).acceptable

    def test_missing_hessian(self, make_fit):
        diagnostics = ConvergenceChecker().full_diagnostics(make_fit({'a': 1.0}))
        assert np.isnan(diagnostics.min_eigenvalue)
        assert not diagnostics.acceptable

    def test_convergence_table(self, make_fit, tmp_path):
        checker = ConvergenceChecker()
        hessian = np.eye(2)
        diagnostics = {
            'neither': checker.full_diagnostics(make_fit({'a': 1.0, 'b': 2.0}, hessian=hessian)),
            'processing': checker.full_diagnostics(
                make_fit({'a': 1.0, 'b': 2.0}, success=False, hessian=hessian)),
        }
        output = tmp_path / 'convergence.csv'
        table = generate_convergence_table(diagnostics, output)
        assert list(table['Model']) == ['neither', 'processing']
        assert list(table['Acceptable']) == [True, False]
        assert output.exists()
