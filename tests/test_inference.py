"""
Inference Tests
===============

Unit tests for placebo sets, test statistics and permutation p-values.
"""

import unittest
import numpy as np
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from geolift.config import EstimatorConfig
from geolift.estimator import GeoLiftEstimator, compute_effect
from geolift.exceptions import InsufficientDonorsError
from geolift.inference import (
    InferenceEngine, InferenceResult, PlaceboDistribution,
    compute_test_statistic, permutation_pvalue
)
from geolift.panel import Panel, TreatmentSpec, create_flat_panel


def _skewed_placebos():
    """Placebo windows of length two whose sums are mostly positive."""
    sums = np.array([5, 6, 7, 8, 9, 10, 11, 12, -1, -2], dtype=float)
    return PlaceboDistribution(np.column_stack([sums / 2, sums / 2]))


def _effect(window_value):
    return compute_effect(
        observed=np.array([10.0, 10.0, window_value, window_value]),
        counterfactual=np.full(4, 10.0),
        baseline=np.full(4, 9.0),
        start=3,
        end=4
    )


class TestStatistics(unittest.TestCase):
    """Tests for test statistics and p-values."""

    def test_two_sided_statistic(self):
        self.assertEqual(compute_test_statistic(np.array([1.0, -2.0, 3.0]), 'two_sided'), 6.0)

    def test_one_sided_statistic(self):
        att = np.array([1.0, -2.0, 3.0])

        self.assertEqual(compute_test_statistic(att, 'one_sided', 1.0), 2.0)
        self.assertEqual(compute_test_statistic(att, 'one_sided', -1.0), -2.0)

    def test_pvalue(self):
        self.assertEqual(permutation_pvalue(5.0, np.array([1.0, 2.0, 5.0, 6.0])), 0.5)
        self.assertEqual(permutation_pvalue(7.0, np.array([1.0, 2.0])), 0.0)
        self.assertTrue(np.isnan(permutation_pvalue(1.0, np.array([]))))


class TestEvaluate(unittest.TestCase):
    """Tests for ranking an effect against a placebo distribution."""

    def test_two_sided_invariant_to_sign(self):
        """Test that flipping the injected effect leaves the two-sided p-value unchanged."""
        engine = InferenceEngine(EstimatorConfig(side_of_test='two_sided'))
        placebos = _skewed_placebos()

        positive = engine.evaluate(_effect(13.5), placebos)
        negative = engine.evaluate(_effect(6.5), placebos)

        self.assertEqual(positive.p_value, negative.p_value)
        self.assertAlmostEqual(positive.p_value, 0.6)

    def test_one_sided_depends_on_sign(self):
        """Test that one-sided p-values differ for skewed placebo distributions."""
        engine = InferenceEngine(EstimatorConfig(side_of_test='one_sided'))
        placebos = _skewed_placebos()

        positive = engine.evaluate(_effect(13.5), placebos)
        negative = engine.evaluate(_effect(6.5), placebos)

        self.assertAlmostEqual(positive.p_value, 0.6)
        self.assertAlmostEqual(negative.p_value, 0.0)

    def test_one_sided_interval_is_open(self):
        engine = InferenceEngine(EstimatorConfig(side_of_test='one_sided'))
        placebos = _skewed_placebos()

        upper_open = engine.evaluate(_effect(13.5), placebos).confidence_interval
        lower_open = engine.evaluate(_effect(6.5), placebos).confidence_interval

        self.assertEqual(upper_open[1], np.inf)
        self.assertEqual(lower_open[0], -np.inf)

    def test_two_sided_interval_ordered(self):
        engine = InferenceEngine(EstimatorConfig(alpha=0.2))
        result = engine.evaluate(_effect(13.5), _skewed_placebos())

        self.assertLessEqual(result.confidence_interval[0], result.confidence_interval[1])
        self.assertLessEqual(result.lift_interval[0], result.lift_interval[1])
        self.assertEqual(result.n_placebos, 10)


class TestPlaceboSets(unittest.TestCase):
    """Tests for placebo group enumeration."""

    def test_single_treated_uses_every_donor(self):
        sets = InferenceEngine().placebo_sets(n_donors=5, n_treated=1)

        self.assertEqual(sets, [(0,), (1,), (2,), (3,), (4,)])

    def test_all_combinations_under_limit(self):
        sets = InferenceEngine(EstimatorConfig(max_placebos=10)).placebo_sets(5, 2)

        self.assertEqual(len(sets), 10)

    def test_sampled_combinations_are_seeded(self):
        """Test that sampled placebo groups are distinct and reproducible."""
        engine = InferenceEngine(EstimatorConfig(max_placebos=20, random_state=3))
        first = engine.placebo_sets(10, 3)
        second = engine.placebo_sets(10, 3)

        self.assertEqual(first, second)
        self.assertEqual(len(set(first)), 20)
        self.assertTrue(all(len(s) == 3 for s in first))

    def test_too_few_donors(self):
        with self.assertRaises(InsufficientDonorsError):
            InferenceEngine().placebo_sets(n_donors=1, n_treated=1)
        with self.assertRaises(InsufficientDonorsError):
            InferenceEngine().placebo_sets(n_donors=3, n_treated=3)


class TestInfer(unittest.TestCase):
    """End-to-end placebo inference."""

    def _lifted_panel(self, noise):
        base = create_flat_panel(n_locations=40, n_periods=90, noise=noise, random_state=7)
        outcomes = np.array(base.outcomes)
        outcomes[:2, 75:90] = 120.0
        return Panel(base.locations, outcomes)

    def test_known_lift_is_significant(self):
        """Test that a 20% lift on a flat panel is detected at alpha 0.1."""
        panel = self._lifted_panel(noise=0.0)
        treatment = TreatmentSpec(('loc_00', 'loc_01'), 76, 90)

        result = InferenceEngine(EstimatorConfig(alpha=0.1)).infer(panel, treatment)

        self.assertIsInstance(result, InferenceResult)
        self.assertLess(result.p_value, 0.1)
        self.assertTrue(result.significant)
        self.assertEqual(result.n_placebos, 100)

    def test_known_lift_noisy(self):
        panel = self._lifted_panel(noise=1.0)
        treatment = TreatmentSpec(('loc_00', 'loc_01'), 76, 90)
        config = EstimatorConfig(alpha=0.1, max_placebos=40)

        estimate = GeoLiftEstimator(config).estimate(panel, treatment)
        result = InferenceEngine(config).infer(panel, treatment, estimate)

        self.assertLess(result.p_value, 0.1)
        self.assertLessEqual(result.lift_interval[0], 0.2 + 0.02)
        self.assertGreaterEqual(result.lift_interval[1], 0.2 - 0.02)

    def test_untreated_not_significant(self):
        """Test that a group without lift is rarely significant."""
        panel = create_flat_panel(n_locations=12, n_periods=40, noise=1.0, random_state=2)
        treatment = TreatmentSpec(('loc_00',), 31, 40)

        result = InferenceEngine(EstimatorConfig(alpha=0.1)).infer(panel, treatment)

        self.assertEqual(result.n_placebos, 11)
        self.assertGreaterEqual(result.p_value, 0.0)
        self.assertLessEqual(result.p_value, 1.0)

    def test_placebos_balance_covariates(self):
        """Test that a placebo run matches a direct covariate-balanced estimate of that unit."""
        rng = np.random.default_rng(11)
        outcomes = rng.normal(0, 1, (6, 40)).cumsum(axis=1) + 50
        covariates = rng.uniform(1, 10, (6, 1)) + rng.normal(0, 0.5, (6, 40))
        panel = Panel([f'l{i}' for i in range(6)], outcomes, covariates, ['income'])
        config = EstimatorConfig(use_covariates=True)
        donors = ['l1', 'l2', 'l3', 'l4', 'l5']
        rows = panel.index_of(donors)

        placebos = InferenceEngine(config).placebo_distribution(
            panel.outcomes[rows].T, donors, n_treated=1, start=31, end=40,
            donor_covariates=np.transpose(panel.covariates[rows], (1, 0, 2))
        )
        unit_config = EstimatorConfig(use_covariates=True, excluded_donors=('l0',))
        direct = GeoLiftEstimator(unit_config).estimate(panel, TreatmentSpec(('l1',), 31, 40))

        self.assertEqual(placebos.n_placebos, 5)
        np.testing.assert_allclose(placebos.att_windows[0], direct.effect.att[30:40], atol=1e-3)

    def test_insufficient_donors(self):
        panel = create_flat_panel(n_locations=3, n_periods=20, noise=1.0)
        treatment = TreatmentSpec(('loc_00', 'loc_01'), 15, 20)

        with self.assertRaises(InsufficientDonorsError):
            InferenceEngine().infer(panel, treatment)


if __name__ == '__main__':
    unittest.main()
