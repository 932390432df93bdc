"""
Tests for Pool Data Preparation and Stratification
==================================================

Tests for input validation, case-control offsets and the stratifier.
"""

import pytest
import pandas as pd
import numpy as np
from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / 'src'))

from poolreg.models.data import compute_offsets, prepare_pools, stratify


# =============================================================================
# Input Validation
# =============================================================================

@pytest.mark.unit
class TestPreparePools:
    """Tests for prepare_pools."""

    def test_scalar_measurements(self, small_pools):
        pools = prepare_pools(**small_pools)
        assert pools.n == 12
        assert np.all(pools.k == 1)
        assert pools.xtilde[4][0] == pytest.approx(1.9)
        assert not pools.has_replicates

    def test_replicate_counts(self, replicate_pools):
        pools = prepare_pools(**replicate_pools)
        np.testing.assert_array_equal(pools.k, [1, 2, 1, 3, 1, 1, 2, 1])
        assert pools.has_replicates

    def test_is_pool_indicator(self, small_pools):
        pools = prepare_pools(**small_pools)
        np.testing.assert_array_equal(pools.is_pool, (small_pools['g'] > 1).astype(int))

    def test_outcome_coding(self, small_pools):
        small_pools['y'] = small_pools['y'] * 2
        with pytest.raises(ValueError, match="coded 0"):
            prepare_pools(**small_pools)

    @pytest.mark.parametrize("bad_g", [0, 1.5, -2])
    def test_pool_sizes_positive_integers(self, small_pools, bad_g):
        small_pools['g'] = small_pools['g'].astype(float)
        small_pools['g'][0] = bad_g
        with pytest.raises(ValueError, match="positive integers"):
            prepare_pools(**small_pools)

    def test_length_mismatch(self, small_pools):
        small_pools['xtilde'] = small_pools['xtilde'][:-1]
        with pytest.raises(ValueError, match="xtilde has 11 pools"):
            prepare_pools(**small_pools)

    def test_non_finite_measurement(self, small_pools):
        small_pools['xtilde'][3] = np.nan
        with pytest.raises(ValueError, match="Pool 3"):
            prepare_pools(**small_pools)

    def test_empty_replicate_vector(self, replicate_pools):
        replicate_pools['xtilde'][2] = []
        with pytest.raises(ValueError, match="no Xtilde"):
            prepare_pools(**replicate_pools)

    def test_positive_exposure(self, positive_pools):
        positive_pools['xtilde'][1] = 0.0
        with pytest.raises(ValueError, match="non-positive"):
            prepare_pools(**positive_pools, positive_exposure=True)

    def test_covariate_names_from_dataframe(self, small_pools):
        small_pools['c'] = pd.DataFrame({'age': small_pools['c'], 'bmi': -small_pools['c']})
        pools = prepare_pools(**small_pools)
        assert pools.covariate_names == ['age', 'bmi']
        assert pools.covariates.shape == (12, 2)

    def test_covariate_names_from_series(self, small_pools):
        small_pools['c'] = pd.Series(small_pools['c'], name='smoking')
        assert prepare_pools(**small_pools).covariate_names == ['smoking']

    def test_default_covariate_names(self, small_pools):
        assert prepare_pools(**small_pools).covariate_names == ['c']

        small_pools['c'] = np.column_stack([small_pools['c'], small_pools['c'] ** 2])
        assert prepare_pools(**small_pools).covariate_names == ['c1', 'c2']

    def test_no_covariates(self, small_pools):
        small_pools['c'] = None
        pools = prepare_pools(**small_pools)
        assert pools.covariates.shape == (12, 0)
        assert pools.n_covariates == 0


@pytest.mark.unit
class TestMemberCovariates:
    """Tests for member-level covariates (gamma model input)."""

    def test_sizes_inferred(self, positive_pools):
        members = [np.ones((g, 1)) * (i + 1) for i, g in enumerate(positive_pools['g'])]
        pools = prepare_pools(None, positive_pools['y'], positive_pools['xtilde'],
                              members, member_level=True)
        np.testing.assert_array_equal(pools.g, positive_pools['g'])
        # Poolwise covariates are member sums
        assert pools.covariates[4, 0] == pytest.approx(2 * 5)
        assert len(pools.member_covariates) == 8

    def test_size_mismatch(self, positive_pools):
        members = [np.ones((1, 1)) for _ in positive_pools['g']]
        with pytest.raises(ValueError, match="rows of member covariates"):
            prepare_pools(positive_pools['g'], positive_pools['y'],
                          positive_pools['xtilde'], members, member_level=True)

    def test_requires_list(self, positive_pools):
        with pytest.raises(ValueError, match="list"):
            prepare_pools(positive_pools['g'], positive_pools['y'],
                          positive_pools['xtilde'], np.ones((8, 1)), member_level=True)

    def test_missing_sizes(self, positive_pools):
        with pytest.raises(ValueError, match="Pool sizes g are required"):
            prepare_pools(None, positive_pools['y'], positive_pools['xtilde'])


# =============================================================================
# Offsets
# =============================================================================

@pytest.mark.unit
class TestComputeOffsets:
    """Tests for the case-control offsets qg."""

    @pytest.fixture
    def unbalanced(self):
        g = np.array([1, 1, 1, 2, 2, 2])
        y = np.array([1, 0, 0, 1, 1, 0])
        return g, y

    def test_default_formula(self, unbalanced):
        g, y = unbalanced
        # n1 = 1 + 2 + 2 = 5 case individuals, n0 = 1 + 1 + 2 = 4 control individuals
        qg = compute_offsets(g, y)
        expected_1 = np.log(1 / 2) - np.log(5 / 4)
        expected_2 = np.log(2 / 1) - 2 * np.log(5 / 4)
        np.testing.assert_allclose(qg, [expected_1] * 3 + [expected_2] * 3)

    def test_prevalence_formula(self, unbalanced):
        g, y = unbalanced
        qg = compute_offsets(g, y, prev=0.1)
        assert qg[0] == pytest.approx(np.log(1 / 2) - np.log(0.1 / 0.9))
        assert qg[3] == pytest.approx(np.log(2) - 2 * np.log(0.1 / 0.9))

    def test_sampling_probability_formula(self, unbalanced):
        g, y = unbalanced
        default = compute_offsets(g, y)
        qg = compute_offsets(g, y, samp_y1y0=(0.5, 0.25))
        np.testing.assert_allclose(qg - default, -g * np.log(0.25 / 0.5))

    def test_balanced_design_has_zero_offsets(self, small_pools):
        qg = compute_offsets(small_pools['g'], small_pools['y'])
        np.testing.assert_allclose(qg, 0.0, atol=1e-12)

    def test_size_without_controls(self):
        with pytest.raises(ValueError, match="size 2"):
            compute_offsets(np.array([1, 1, 2]), np.array([1, 0, 1]))

    def test_prev_and_sampling_exclusive(self, unbalanced):
        g, y = unbalanced
        with pytest.raises(ValueError, match="at most one"):
            compute_offsets(g, y, prev=0.1, samp_y1y0=(0.5, 0.5))


# =============================================================================
# Stratification
# =============================================================================

@pytest.mark.unit
class TestStratify:
    """Tests for the exact / replicated / single partition."""

    @staticmethod
    def _assert_partition(strata, n):
        indices = np.concatenate([s.index for s in strata])
        assert len(indices) == n
        assert set(indices.tolist()) == set(range(n))

    def test_neither(self, small_pools):
        pools = prepare_pools(**small_pools)
        strata = stratify(pools, 'neither')
        assert strata.counts() == {'exact': 12, 'replicated': 0, 'single': 0}

    def test_processing(self, small_pools):
        pools = prepare_pools(**small_pools)
        strata = stratify(pools, 'processing')
        assert np.all(strata.exact.g == 1)
        assert np.all(strata.single.g > 1)
        assert strata.replicated.is_empty
        self._assert_partition(strata, 12)

    @pytest.mark.parametrize("errors", ['measurement', 'both'])
    def test_measurement_regimes(self, replicate_pools, errors):
        pools = prepare_pools(**replicate_pools)
        strata = stratify(pools, errors)
        assert strata.exact.is_empty
        assert np.all(strata.replicated.k > 1)
        assert np.all(strata.single.k == 1)
        np.testing.assert_array_equal(strata.replicated.index, [1, 3, 6])
        self._assert_partition(strata, 8)

    def test_measurement_without_replicates(self, small_pools):
        strata = stratify(prepare_pools(**small_pools), 'measurement')
        assert strata.counts() == {'exact': 0, 'replicated': 0, 'single': 12}

    @pytest.mark.parametrize("errors", ['neither', 'processing'])
    def test_replicates_rejected_without_measurement_error(self, replicate_pools, errors):
        pools = prepare_pools(**replicate_pools)
        with pytest.raises(ValueError, match="replicate measurements"):
            stratify(pools, errors)

    def test_identical_replicates_suggest_collapsing(self, replicate_pools):
        replicate_pools['xtilde'][3] = [0.3, 0.3, 0.3]
        replicate_pools['xtilde'][1] = [-0.2]
        replicate_pools['xtilde'][6] = [2.1]
        pools = prepare_pools(**replicate_pools)
        with pytest.raises(ValueError, match="collapse"):
            stratify(pools, 'processing')

    def test_offsets_follow_pools(self, small_pools):
        pools = prepare_pools(**small_pools)
        qg = np.arange(12, dtype=float)
        strata = stratify(pools, 'processing', qg)
        for stratum in strata:
            np.testing.assert_array_equal(stratum.qg, stratum.index.astype(float))

    def test_unknown_regime(self, small_pools):
        with pytest.raises(ValueError, match="errors should be one of"):
            stratify(prepare_pools(**small_pools), 'additive')
