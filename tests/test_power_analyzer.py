"""
Power Simulation Tests
======================

Unit tests for candidate generation and the power simulator.
"""

import math
import unittest
import numpy as np
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from geolift.config import EstimatorConfig, SimulationConfig
from geolift.estimator import GeoLiftEstimator
from geolift.exceptions import ConfigurationError
from geolift.geo_matcher import MarketCandidates, correlation_distances
from geolift.market_ranker import MarketRanker
from geolift.panel import Panel, TreatmentSpec, create_flat_panel, create_synthetic_geo_data
from geolift.power_analyzer import PowerSimulator, SimulationRecord


def _small_config(**overrides):
    settings = dict(
        treatment_periods=(5,),
        N=(2,),
        effect_size=(0.0, 0.1, 0.2),
        lookback_window=2,
        max_combinations=6,
        estimator=EstimatorConfig(max_placebos=10)
    )
    settings.update(overrides)
    return SimulationConfig(**settings)


class TestMarketCandidates(unittest.TestCase):
    """Tests for candidate group generation."""

    def setUp(self):
        self.panel = Panel.from_frame(create_synthetic_geo_data(n_geos=8, n_periods=30))
        self.pool = self.panel.locations

    def test_exhaustive_when_small(self):
        candidates = MarketCandidates(self.panel, self.pool, sizes=(2,), max_combinations=100)
        groups = list(candidates)

        self.assertEqual(len(groups), math.comb(8, 2))
        self.assertEqual(len(set(groups)), len(groups))
        self.assertEqual(candidates.count(2), 28)

    def test_restartable(self):
        """Test that iterating twice yields the same sequence."""
        candidates = MarketCandidates(self.panel, self.pool, sizes=(2, 3), max_combinations=5)

        self.assertEqual(list(candidates), list(candidates))

    def test_capped_similarity_groups(self):
        """Test that large candidate spaces are capped with distinct groups of the right size."""
        candidates = MarketCandidates(self.panel, self.pool, sizes=(3,), max_combinations=5)
        groups = list(candidates)

        self.assertLessEqual(len(groups), 5)
        self.assertGreater(len(groups), 0)
        self.assertEqual(len(set(groups)), len(groups))
        self.assertTrue(all(len(g) == 3 for g in groups))

    def test_include_markets_in_every_group(self):
        include = ('geo_002',)
        for cap in (100, 4):
            groups = list(MarketCandidates(
                self.panel, self.pool, sizes=(2, 3), include=include, max_combinations=cap
            ))
            self.assertTrue(groups)
            self.assertTrue(all('geo_002' in g for g in groups))

    def test_size_smaller_than_include(self):
        with self.assertRaises(ConfigurationError):
            MarketCandidates(self.panel, self.pool, sizes=(1,), include=('geo_001', 'geo_002'))

    def test_size_larger_than_pool(self):
        with self.assertRaises(ConfigurationError):
            MarketCandidates(self.panel, self.pool[:3], sizes=(4,))

    def test_correlation_distances(self):
        distances = correlation_distances(self.panel, self.pool)

        self.assertEqual(distances.shape, (8, 8))
        np.testing.assert_allclose(np.diag(distances), 0.0)
        np.testing.assert_allclose(distances, distances.T)


class TestPowerSimulator(unittest.TestCase):
    """Tests for PowerSimulator class."""

    def setUp(self):
        self.panel = Panel.from_frame(
            create_synthetic_geo_data(n_geos=8, n_periods=40, noise_level=0.02)
        )

    def test_records_per_window_and_effect(self):
        """Test that every window produces one record per effect size."""
        result = PowerSimulator(_small_config()).run(self.panel)

        self.assertEqual(len(result.records), 3 * result.n_windows)
        self.assertEqual(result.n_failed, 0)
        self.assertTrue(all(isinstance(r, SimulationRecord) and r.valid for r in result.records))
        keys = [r.sort_key for r in result.records]
        self.assertEqual(keys, sorted(keys))

    def test_windows_end_at_panel_end(self):
        """Test that lookback offsets shift the window back from the last period."""
        result = PowerSimulator(_small_config()).run(self.panel)

        for record in result.records:
            self.assertEqual(record.treatment_end, 40 - record.lookback)
            self.assertEqual(record.treatment_end - record.treatment_start + 1, 5)

    def test_design_metrics(self):
        """Test investment and outcome share of simulated designs."""
        result = PowerSimulator(_small_config(cpic=2.0)).run(self.panel)

        for record in result.records:
            rows = self.panel.index_of(record.locations)
            total = self.panel.outcomes[rows, record.treatment_start - 1:record.treatment_end].sum()
            self.assertAlmostEqual(record.investment, 2.0 * record.effect_size * total)
            self.assertAlmostEqual(record.proportion_total_y, self.panel.outcome_share(record.locations))
            self.assertAlmostEqual(record.holdout, 1 - record.proportion_total_y)

    def test_parallel_matches_sequential(self):
        """Test that the process pool yields the same records as a sequential run."""
        sequential = PowerSimulator(_small_config()).run(self.panel)
        parallel = PowerSimulator(_small_config(parallel=True, n_jobs=2)).run(self.panel)

        self.assertEqual(sequential.n_windows, parallel.n_windows)
        self.assertEqual(len(sequential.records), len(parallel.records))
        for seq, par in zip(sequential.records, parallel.records):
            self.assertEqual(seq.sort_key, par.sort_key)
            self.assertEqual(seq.significant, par.significant)
            self.assertAlmostEqual(seq.lift, par.lift, places=9)
            self.assertAlmostEqual(seq.p_value, par.p_value, places=9)
            self.assertAlmostEqual(seq.scaled_l2_imbalance, par.scaled_l2_imbalance, places=9)

    def test_zero_effect_lift_near_zero(self):
        """Test that an injected effect of zero yields a near-zero lift on a stable panel."""
        panel = create_flat_panel(n_locations=8, n_periods=40, noise=0.2, random_state=5)
        config = _small_config(effect_size=(0.0, 0.1), lookback_window=3)
        records = PowerSimulator(config).run(panel).records

        ranking = MarketRanker(config).rank(records)
        self.assertTrue((ranking['abs_lift_in_zero'] < 0.01).all())

    def test_zero_effect_lift_shrinks_with_lookback(self):
        """Test that averaging more lookback windows pulls abs_lift_in_zero toward zero."""
        panel = create_flat_panel(n_locations=16, n_periods=80, noise=2.0, random_state=21)
        mean_abs_lift = {}
        for lookback in (1, 40):
            config = SimulationConfig(
                treatment_periods=(2,),
                N=(1,),
                effect_size=(0.0, 0.1),
                lookback_window=lookback,
                estimator=EstimatorConfig(max_placebos=2)
            )
            records = PowerSimulator(config).run(panel).records
            ranking = MarketRanker(config).rank(records)
            mean_abs_lift[lookback] = ranking['abs_lift_in_zero'].mean()

        self.assertLess(mean_abs_lift[40], mean_abs_lift[1])
        self.assertLess(mean_abs_lift[40], 0.006)

    def test_two_sided_power_symmetric_in_effect_sign(self):
        """Test that opposite injected effects get the same two-sided p-value when the fit is exact."""
        rng = np.random.default_rng(4)
        donors = np.full((11, 40), 100.0)
        donors[:, 35:] += rng.normal(0, 10, (11, 5))
        outcomes = np.vstack([donors.mean(axis=0), donors])
        panel = Panel([f'loc_{i:02d}' for i in range(12)], outcomes)
        config = _small_config(
            N=(1,), include_markets=('loc_00',), lookback_window=1,
            effect_size=(-0.2, -0.1, -0.05, 0.0, 0.05, 0.1, 0.2)
        )

        records = {r.effect_size: r for r in PowerSimulator(config).run(panel).records}

        for e in (0.05, 0.1, 0.2):
            self.assertEqual(records[e].p_value, records[-e].p_value)
            self.assertAlmostEqual(records[e].lift, -records[-e].lift, places=9)
        self.assertTrue(any(0 < records[e].p_value < 1 for e in (0.05, 0.1, 0.2)))

    def test_holdout_pruning(self):
        """Test that designs outside the holdout bounds are never simulated."""
        panel = create_flat_panel(n_locations=10, n_periods=40, noise=0.5)
        config = _small_config(N=(1, 2), holdout=(0.85, 1.0), lookback_window=1,
                               max_combinations=200)

        result = PowerSimulator(config).run(panel)

        self.assertTrue(all(len(r.locations) == 1 for r in result.records))
        self.assertEqual(result.n_windows, 10)
        self.assertEqual(result.n_pruned, math.comb(10, 2))

    def test_budget_pruning(self):
        """Test that designs over budget at the smallest effect are pruned."""
        panel = create_flat_panel(n_locations=10, n_periods=40, level=100.0)
        # Smallest non-zero effect of 0.1 over 5 periods at 100 costs 50
        over = _small_config(N=(1,), lookback_window=1, max_combinations=200, budget=40.0)
        under = _small_config(N=(1,), lookback_window=1, max_combinations=200, budget=60.0)

        self.assertEqual(len(list(PowerSimulator(over).work_items(panel))), 0)
        self.assertEqual(len(list(PowerSimulator(under).work_items(panel))), 10)

    def test_exclude_markets_never_candidates(self):
        config = _small_config(exclude_markets=('geo_000', 'geo_001'))
        windows = list(PowerSimulator(config).work_items(self.panel))

        self.assertTrue(windows)
        for window in windows:
            self.assertNotIn('geo_000', window.locations)
            self.assertNotIn('geo_001', window.locations)

    def test_failed_windows_recorded(self):
        """Test that a failing window becomes error records without aborting the run."""
        config = _small_config(estimator=EstimatorConfig(min_donors=50))
        result = PowerSimulator(config).run(self.panel)

        self.assertGreater(result.n_windows, 0)
        self.assertEqual(result.n_failed, result.n_windows)
        self.assertTrue(all(not r.valid and 'InsufficientDonorsError' in r.error
                            for r in result.records))

    def test_windows_balance_covariates(self):
        """Test that simulated windows use the same covariate-balanced fit as a direct estimate."""
        rng = np.random.default_rng(11)
        outcomes = rng.normal(0, 1, (6, 40)).cumsum(axis=1) + 50
        covariates = rng.uniform(1, 10, (6, 1)) + rng.normal(0, 0.5, (6, 40))
        panel = Panel([f'l{i}' for i in range(6)], outcomes, covariates, ['income'])
        estimator_config = EstimatorConfig(use_covariates=True)
        config = _small_config(
            N=(1,), include_markets=('l0',), effect_size=(0.0, 0.1),
            lookback_window=1, estimator=estimator_config
        )

        records = PowerSimulator(config).run(panel).records
        direct = GeoLiftEstimator(estimator_config).estimate(panel, TreatmentSpec(('l0',), 36, 40))

        self.assertEqual(len(records), 2)
        self.assertAlmostEqual(records[0].lift, direct.effect.percent_lift, places=4)
        self.assertAlmostEqual(records[0].scaled_l2_imbalance, direct.effect.scaled_l2_imbalance, places=4)

    def test_cancel_stops_dispatch(self):
        """Test that cancelling stops the window sequence."""
        simulator = PowerSimulator(_small_config())
        windows = simulator.work_items(self.panel)

        next(windows)
        simulator.cancel()

        self.assertEqual(list(windows), [])
        self.assertTrue(simulator.cancelled)


class TestSimulationConfigErrors(unittest.TestCase):
    """Tests for configuration errors raised before simulation."""

    def setUp(self):
        self.panel = create_flat_panel(n_locations=6, n_periods=20, noise=1.0)

    def test_empty_pool(self):
        config = _small_config(N=(1,), exclude_markets=self.panel.locations)

        with self.assertRaises(ConfigurationError):
            PowerSimulator(config).run(self.panel)

    def test_unknown_include_market(self):
        config = _small_config(include_markets=('nowhere',))

        with self.assertRaises(ConfigurationError):
            PowerSimulator(config).run(self.panel)

    def test_no_eligible_duration(self):
        config = _small_config(treatment_periods=(19,), lookback_window=1)

        with self.assertRaises(ConfigurationError):
            PowerSimulator(config).run(self.panel)

    def test_group_leaves_no_donors(self):
        with self.assertRaises(ConfigurationError):
            PowerSimulator(_small_config(N=(6,))).run(self.panel)

    def test_invalid_values(self):
        with self.assertRaises(ConfigurationError):
            SimulationConfig(treatment_periods=(), N=(1,))
        with self.assertRaises(ConfigurationError):
            SimulationConfig(treatment_periods=(5,), N=(1,), holdout=(0.8, 0.2))
        with self.assertRaises(ConfigurationError):
            SimulationConfig(treatment_periods=(5,), N=(1,), cpic=0)
        with self.assertRaises(ConfigurationError):
            SimulationConfig(treatment_periods=(5,), N=(1,),
                             include_markets=('a',), exclude_markets=('a',))
        with self.assertRaises(ConfigurationError):
            EstimatorConfig(model='lasso')


if __name__ == '__main__':
    unittest.main()
