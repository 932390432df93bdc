"""
Tests for the Gamma Discriminant Likelihood
===========================================
"""

import pytest
import numpy as np
from pathlib import Path
from scipy import integrate, stats
import sys

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / 'src'))

from poolreg.models.data import prepare_pools, stratify
from poolreg.models.gdfa import GammaDiscriminantLikelihood
from poolreg.models.regimes import gdfa_layout


def build_likelihood(g, y, xtilde, errors, c=None):
    pools = prepare_pools(g, y, xtilde, c, member_level=True, positive_exposure=True)
    layout = gdfa_layout(errors, pools.covariate_names)
    return GammaDiscriminantLikelihood(stratify(pools, errors), layout), layout


def direct_log_integral(xt, shape, scale, sigsq_pe, sigsq_m):
    """log f(Xtilde | Y, C) for one pool by quadrature over (0, inf)."""
    xt = np.atleast_1d(xt)
    k = len(xt)
    shift = (sigsq_pe + sigsq_m) / 2
    cov = sigsq_pe * np.ones((k, k)) + sigsq_m * np.eye(k)
    errors = stats.multivariate_normal(np.zeros(k), cov)

    def integrand(s):
        centered = np.log(xt) - (np.log(s) - shift)
        return (np.exp(errors.logpdf(centered)) / np.prod(xt)
                * stats.gamma.pdf(s, a=shape, scale=scale))

    value, _ = integrate.quad(integrand, 0, np.inf, epsabs=0, epsrel=1e-10, limit=200)
    return np.log(value)


@pytest.mark.unit
class TestGammaLikelihood:
    """Tests for f(Xtilde | Y, C) under the gamma model."""

    def test_neither_matches_gamma_density(self, positive_pools):
        lik, _ = build_likelihood(**positive_pools, errors='neither')
        theta = np.array([0.3, 1.5, 0.9])

        g, y, x = positive_pools['g'], positive_pools['y'], positive_pools['xtilde']
        expected = np.sum(stats.gamma.logpdf(
            x, a=g * np.exp(0.3), scale=np.where(y == 1, 1.5, 0.9)))
        assert lik.log_likelihood(theta) == pytest.approx(expected, rel=1e-10)

    def test_member_covariates_sum_shapes(self, positive_pools):
        rng = np.random.default_rng(3)
        members = [rng.standard_normal((g, 1)) for g in positive_pools['g']]
        lik, layout = build_likelihood(None, positive_pools['y'], positive_pools['xtilde'],
                                       'neither', c=members)
        assert layout.labels == ('gamma_0', 'gamma_c', 'b1', 'b0')

        theta = np.array([0.2, -0.4, 1.5, 0.9])
        shapes = lik.shapes(lik.strata.exact, lik.unpack(theta))
        expected = [np.sum(np.exp(0.2 - 0.4 * m[:, 0])) for m in members]
        np.testing.assert_allclose(shapes, expected)

    def test_small_measurement_error_approaches_gamma_density(self, positive_pools):
        neither, _ = build_likelihood(**positive_pools, errors='neither')
        measured, _ = build_likelihood(**positive_pools, errors='measurement')
        theta = np.array([0.3, 1.5, 0.9])

        assert measured.log_likelihood(np.append(theta, 1e-3)) == pytest.approx(
            neither.log_likelihood(theta), rel=1e-2)

    def test_matches_direct_quadrature(self, positive_pools):
        xtilde = [[v] for v in positive_pools['xtilde']]
        xtilde[1] = [1.1, 1.3]
        xtilde[4] = [4.2, 3.9, 4.6]
        lik, layout = build_likelihood(positive_pools['g'], positive_pools['y'],
                                       xtilde, 'both')
        assert layout.labels == ('gamma_0', 'b1', 'b0', 'sigsq_p', 'sigsq_m')
        sigsq_p, sigsq_m = 0.05, 0.02
        theta = np.array([0.3, 1.5, 0.9, sigsq_p, sigsq_m])

        expected = 0.0
        for g, y, xt in zip(positive_pools['g'], positive_pools['y'], xtilde):
            expected += direct_log_integral(
                xt,
                shape=g * np.exp(0.3),
                scale=1.5 if y == 1 else 0.9,
                sigsq_pe=sigsq_p * (g > 1),
                sigsq_m=sigsq_m,
            )
        assert lik.log_likelihood(theta) == pytest.approx(expected, rel=1e-6)

    def test_processing_error_only_affects_pools(self, positive_pools):
        lik, _ = build_likelihood(**positive_pools, errors='processing')
        assert np.all(lik.strata.exact.g == 1)
        assert np.all(lik.strata.single.g == 2)

        # Changing sigsq_p leaves the individuals' contribution untouched
        params_a = lik.unpack(np.array([0.3, 1.5, 0.9, 0.1]))
        params_b = lik.unpack(np.array([0.3, 1.5, 0.9, 0.5]))
        assert lik.exact_log_likelihood(lik.strata.exact, params_a) == pytest.approx(
            lik.exact_log_likelihood(lik.strata.exact, params_b))

    def test_shapes_computed_once_per_stratum(self, positive_pools, monkeypatch):
        lik, _ = build_likelihood(**positive_pools, errors='processing')
        original = lik.shapes
        calls = []

        def counting_shapes(stratum, p):
            calls.append(stratum.name)
            return original(stratum, p)

        monkeypatch.setattr(lik, 'shapes', counting_shapes)
        lik.log_likelihood(np.array([0.3, 1.5, 0.9, 0.1]))
        assert calls == ['exact', 'single']

    def test_no_analytic_approximation(self):
        assert not GammaDiscriminantLikelihood.supports_approximation
