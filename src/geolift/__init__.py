# GeoLift Core Module
"""
GeoLift
=======

Synthetic control estimation, placebo inference and power-based market
selection for geo experiments.
"""

from .augmentation import AugmentationResult, Augmenter
from .config import EstimatorConfig, RankWeights, SimulationConfig
from .estimator import (
    CounterfactualSeries, EffectEstimate, EstimationResult, GeoLiftEstimator, compute_effect
)
from .exceptions import (
    AugmentationError, ConfigurationError, GeoLiftError, InsufficientDataError,
    InsufficientDonorsError, MalformedPanelError
)
from .geo_matcher import MarketCandidates
from .incrementality_runner import GeoLiftResult, GeoLiftRunner, MarketSelectionResult
from .inference import InferenceEngine, InferenceResult
from .market_ranker import MarketRanker
from .panel import Panel, TreatmentSpec, create_flat_panel, create_synthetic_geo_data
from .power_analyzer import PowerSimulationResult, PowerSimulator, SimulationRecord
from .synthetic_control import SyntheticControlFit, WeightFitter, WeightVector

__all__ = [
    'AugmentationError',
    'AugmentationResult',
    'Augmenter',
    'ConfigurationError',
    'CounterfactualSeries',
    'EffectEstimate',
    'EstimationResult',
    'EstimatorConfig',
    'GeoLiftError',
    'GeoLiftEstimator',
    'GeoLiftResult',
    'GeoLiftRunner',
    'InferenceEngine',
    'InferenceResult',
    'InsufficientDataError',
    'InsufficientDonorsError',
    'MalformedPanelError',
    'MarketCandidates',
    'MarketRanker',
    'MarketSelectionResult',
    'Panel',
    'PowerSimulationResult',
    'PowerSimulator',
    'RankWeights',
    'SimulationConfig',
    'SimulationRecord',
    'SyntheticControlFit',
    'TreatmentSpec',
    'WeightFitter',
    'WeightVector',
    'compute_effect',
    'create_flat_panel',
    'create_synthetic_geo_data',
]

__version__ = '0.1.0'
