"""
Incrementality Runner
=====================

Unified interface for geo experiments.

Key Features:
- Single test analysis: synthetic control estimate plus placebo inference
- Market selection: power simulation and ranking of candidate designs
- Plain summaries for downstream reporting
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

import numpy as np
import pandas as pd

from .config import EstimatorConfig, SimulationConfig
from .estimator import EstimationResult, GeoLiftEstimator
from .inference import InferenceEngine, InferenceResult
from .market_ranker import MarketRanker
from .panel import Panel, TreatmentSpec
from .power_analyzer import PowerSimulationResult, PowerSimulator

logger = logging.getLogger(__name__)


def _plain(value):
    """Convert numpy scalars and non-finite floats for serialisation."""
    if isinstance(value, (np.floating, float)):
        value = float(value)
        return value if np.isfinite(value) else None
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.bool_):
        return bool(value)
    return value


@dataclass
class GeoLiftResult:
    """Container for a single test analysis."""
    treatment: TreatmentSpec
    config: EstimatorConfig
    estimation: EstimationResult
    inference: InferenceResult
    summary: Dict
    run_timestamp: str
    runtime_seconds: float

    @property
    def counterfactual(self) -> np.ndarray:
        return self.estimation.counterfactual.values

    @property
    def effect(self):
        return self.estimation.effect

    def to_dict(self) -> Dict:
        """Plain, JSON-serialisable summary of the analysis."""
        effect = self.effect
        augmentation = self.estimation.augmentation
        return {
            'config': {
                'model': self.config.model,
                'fixed_effects': self.config.fixed_effects,
                'side_of_test': self.config.side_of_test,
                'alpha': self.config.alpha,
            },
            'treatment': {
                'locations': list(self.treatment.treated),
                'start': self.treatment.start,
                'end': self.treatment.end,
            },
            'results': {
                'average_att': _plain(effect.average_att),
                'cumulative_lift': _plain(effect.cumulative_lift),
                'incremental': _plain(effect.incremental),
                'percent_lift': _plain(effect.percent_lift),
                'att_lower': _plain(self.inference.confidence_interval[0]),
                'att_upper': _plain(self.inference.confidence_interval[1]),
                'lift_lower': _plain(self.inference.lift_interval[0]),
                'lift_upper': _plain(self.inference.lift_interval[1]),
                'p_value': _plain(self.inference.p_value),
                'significant': self.inference.significant,
            },
            'fit': {
                'model': augmentation.model,
                'degraded': augmentation.degraded,
                'bias_removed': _plain(augmentation.bias_removed),
                'l2_imbalance': _plain(effect.l2_imbalance),
                'scaled_l2_imbalance': _plain(effect.scaled_l2_imbalance),
                'weights': self.estimation.weights.as_dict(min_weight=1e-6),
            },
            'summary': self.summary,
            'timestamp': self.run_timestamp,
        }


@dataclass
class MarketSelectionResult:
    """Container for a market selection run."""
    config: SimulationConfig
    ranking: pd.DataFrame
    power_curves: pd.DataFrame
    simulation: PowerSimulationResult
    run_timestamp: str
    runtime_seconds: float

    @property
    def best(self) -> Optional[pd.Series]:
        """Top ranked design, if any."""
        if self.ranking.empty:
            return None
        return self.ranking.iloc[0]


class GeoLiftRunner:
    """
    End-to-End GeoLift Framework

    Orchestrates:
    1. Market selection: power simulation over candidate designs and ranking
    2. Test analysis: counterfactual, lift and placebo inference

    Parameters
    ----------
    estimator_config : EstimatorConfig
        Model and inference settings of single test analyses
    verbose : bool
        Log run milestones at INFO level (DEBUG otherwise)
    """

    def __init__(
        self,
        estimator_config: Optional[EstimatorConfig] = None,
        verbose: bool = True
    ):
        self.config = estimator_config or EstimatorConfig()
        self.verbose = verbose
        self.estimator = GeoLiftEstimator(self.config)
        self.inference = InferenceEngine(self.config)
        self._simulator: Optional[PowerSimulator] = None

    def _log(self, message: str, *args):
        logger.log(logging.INFO if self.verbose else logging.DEBUG, message, *args)

    def run_test(self, panel: Panel, treatment: TreatmentSpec) -> GeoLiftResult:
        """
        Analyze a completed geo test.

        Parameters
        ----------
        panel : Panel
            Outcomes covering the pre-period and the test window
        treatment : TreatmentSpec
            Treated locations and test window

        Returns
        -------
        GeoLiftResult
            Estimate, placebo inference and summary
        """
        start_time = time.time()
        treatment.validate(panel)
        self._log(
            "Analyzing %d treated locations over periods %d-%d (model=%s)",
            len(treatment.treated), treatment.start, treatment.end, self.config.model
        )

        estimation = self.estimator.estimate(panel, treatment)
        if estimation.degraded:
            logger.warning(
                "Augmentation '%s' was ill-conditioned; estimate uses no augmentation",
                estimation.augmentation.requested
            )
        inference = self.inference.infer(panel, treatment, estimation)

        self._log(
            "Lift %.2f%% (p=%.4f, %d placebos)",
            100 * estimation.effect.percent_lift, inference.p_value, inference.n_placebos
        )

        return GeoLiftResult(
            treatment=treatment,
            config=self.config,
            estimation=estimation,
            inference=inference,
            summary=self._generate_summary(estimation, inference),
            run_timestamp=datetime.now().isoformat(),
            runtime_seconds=time.time() - start_time
        )

    def select_markets(self, panel: Panel, config: SimulationConfig) -> MarketSelectionResult:
        """
        Rank candidate test designs by simulated power.

        Parameters
        ----------
        panel : Panel
            Historical outcomes
        config : SimulationConfig
            Candidate sizes, durations, effect sizes and filters

        Returns
        -------
        MarketSelectionResult
            Ranked designs, power curves and raw simulation records
        """
        start_time = time.time()
        self._log(
            "Selecting markets: N=%s, durations=%s, %d effect sizes, lookback %d",
            list(config.N), list(config.treatment_periods),
            len(config.effect_size), config.lookback_window
        )

        self._simulator = PowerSimulator(config)
        simulation = self._simulator.run(panel)

        ranker = MarketRanker(config)
        ranking = ranker.rank(simulation.records)
        curves = ranker.power_curves(simulation.records)

        if not ranking.empty:
            top = ranking.iloc[0]
            self._log(
                "Best design: %s for %d periods (MDE %s)",
                top['location'], top['duration'], top['EffectSize']
            )

        return MarketSelectionResult(
            config=config,
            ranking=ranking,
            power_curves=curves,
            simulation=simulation,
            run_timestamp=datetime.now().isoformat(),
            runtime_seconds=time.time() - start_time
        )

    def cancel(self):
        """Cancel a market selection running on another thread."""
        if self._simulator is not None:
            self._simulator.cancel()

    def _generate_summary(self, estimation: EstimationResult, inference: InferenceResult) -> Dict:
        """Summary of the analysis outcome."""
        effect = estimation.effect

        if inference.significant:
            if effect.percent_lift > 0:
                conclusion = "POSITIVE_SIGNIFICANT"
            else:
                conclusion = "NEGATIVE_SIGNIFICANT"
        else:
            conclusion = "NOT_SIGNIFICANT"

        return {
            'conclusion': conclusion,
            'key_metrics': {
                'percent_lift': f"{effect.percent_lift:.1%}",
                'incremental': f"{effect.incremental:,.1f}",
                'p_value': f"{inference.p_value:.4f}",
                'significant': inference.significant,
            },
            'fit_quality': {
                'model': estimation.model,
                'degraded': estimation.degraded,
                'scaled_l2_imbalance': f"{effect.scaled_l2_imbalance:.3f}",
            }
        }
