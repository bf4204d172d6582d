"""
Configuration
=============

Immutable configuration values threaded through every estimation and
simulation call.

- EstimatorConfig: model, fixed effects and inference settings
- SimulationConfig: market selection / power simulation settings
- RankWeights: weights of the combined market ranking score
"""

import math
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import numpy as np

from .exceptions import ConfigurationError


MODELS = ('none', 'ridge', 'gsc', 'best')
SIDES = ('one_sided', 'two_sided')


def _as_tuple(values, cast=None) -> tuple:
    """Normalise a scalar or sequence to a tuple, optionally casting items."""
    if values is None:
        return ()
    if isinstance(values, (str, bytes)) or np.isscalar(values):
        values = (values,)
    items = tuple(values)
    if cast is not None:
        items = tuple(cast(v) for v in items)
    return items


@dataclass(frozen=True)
class EstimatorConfig:
    """
    Settings for a single Synthetic Control estimate and its inference.

    Parameters
    ----------
    model : str
        Augmentation model: 'none', 'ridge', 'gsc' or 'best'
    fixed_effects : bool
        Demean every unit by its pre-period average before fitting
    side_of_test : str
        'one_sided' or 'two_sided' permutation test
    alpha : float
        Significance level in (0, 1)
    max_placebos : int
        Upper bound on placebo runs per test
    min_donors : int
        Minimum donors (and successful placebos) for inference
    use_covariates : bool
        Balance pre-period covariate means in the weight fit
    cv_folds : int
        Pre-period folds used to tune and compare augmentation models
    max_rank : int
        Largest factor rank tried by the 'gsc' augmentation
    excluded_donors : tuple
        Locations never used as donors
    random_state : int
        Seed of the placebo combination sampler
    """
    model: str = 'none'
    fixed_effects: bool = True
    side_of_test: str = 'two_sided'
    alpha: float = 0.1
    max_placebos: int = 100
    min_donors: int = 2
    use_covariates: bool = False
    cv_folds: int = 3
    max_rank: int = 3
    excluded_donors: Tuple[str, ...] = ()
    random_state: int = 42

    def __post_init__(self):
        object.__setattr__(self, 'excluded_donors', _as_tuple(self.excluded_donors, str))

        if self.model not in MODELS:
            raise ConfigurationError(
                f"model must be one of {MODELS}, got {self.model!r}"
            )
        if self.side_of_test not in SIDES:
            raise ConfigurationError(
                f"side_of_test must be one of {SIDES}, got {self.side_of_test!r}"
            )
        if not 0 < self.alpha < 1:
            raise ConfigurationError(f"alpha must be in (0, 1), got {self.alpha}")
        if self.max_placebos < 1:
            raise ConfigurationError("max_placebos must be at least 1")
        if self.min_donors < 1:
            raise ConfigurationError("min_donors must be at least 1")
        if self.cv_folds < 2:
            raise ConfigurationError("cv_folds must be at least 2")
        if self.max_rank < 1:
            raise ConfigurationError("max_rank must be at least 1")

    def with_model(self, model: str) -> 'EstimatorConfig':
        """Copy of this configuration with a different augmentation model."""
        return replace(self, model=model)


@dataclass(frozen=True)
class RankWeights:
    """
    Weights of the normalised metrics in the combined rank score.

    Lower EffectSize, AvgScaledL2Imbalance, abs_lift_in_zero and Investment
    and higher Power improve the score.
    """
    effect_size: float = 1.0
    power: float = 1.0
    imbalance: float = 1.0
    abs_lift_in_zero: float = 1.0
    investment: float = 0.0

    def __post_init__(self):
        values = [getattr(self, f) for f in self.__dataclass_fields__]
        if any(v < 0 or not math.isfinite(v) for v in values):
            raise ConfigurationError("rank weights must be finite and non-negative")
        if sum(values) == 0:
            raise ConfigurationError("at least one rank weight must be positive")

    def as_dict(self) -> dict:
        return {f: getattr(self, f) for f in self.__dataclass_fields__}


@dataclass(frozen=True)
class SimulationConfig:
    """
    Settings for the power simulation and market selection.

    Parameters
    ----------
    treatment_periods : tuple of int
        Candidate test durations
    N : tuple of int
        Candidate test-group sizes
    effect_size : tuple of float
        Relative lifts injected into the test window (0.1 = 10%)
    lookback_window : int
        Number of historical windows simulated per candidate
    include_markets, exclude_markets : tuple of str
        Locations forced into every candidate / never treated
    holdout : (float, float) or None
        Bounds on the outcome share left as holdout (control)
    cpic : float
        Cost per incremental conversion
    budget : float or None
        Maximum investment of a candidate design
    parallel : bool
        Run the simulation on a process pool
    n_jobs : int or None
        Pool size (default: all cores)
    max_combinations : int
        Cap on candidate groups per test-group size
    target_power : float
        Power threshold defining the MDE
    interpolate_mde : bool
        Interpolate the MDE between effect sizes of the grid
    estimator : EstimatorConfig
        Model and inference configuration used by every simulated test
    rank_weights : RankWeights
        Weights of the combined ranking score
    tie_tolerance : float
        Scores closer than this share a rank
    """
    treatment_periods: Tuple[int, ...]
    N: Tuple[int, ...]
    effect_size: Tuple[float, ...] = (0.0, 0.05, 0.1, 0.15, 0.2, 0.25)
    lookback_window: int = 1
    include_markets: Tuple[str, ...] = ()
    exclude_markets: Tuple[str, ...] = ()
    holdout: Optional[Tuple[float, float]] = None
    cpic: float = 1.0
    budget: Optional[float] = None
    parallel: bool = False
    n_jobs: Optional[int] = None
    max_combinations: int = 200
    target_power: float = 0.8
    interpolate_mde: bool = False
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)
    rank_weights: RankWeights = field(default_factory=RankWeights)
    tie_tolerance: float = 1e-9

    def __post_init__(self):
        object.__setattr__(self, 'treatment_periods', tuple(sorted(set(_as_tuple(self.treatment_periods, int)))))
        object.__setattr__(self, 'N', tuple(sorted(set(_as_tuple(self.N, int)))))
        object.__setattr__(self, 'effect_size', tuple(sorted(set(_as_tuple(self.effect_size, float)))))
        object.__setattr__(self, 'include_markets', _as_tuple(self.include_markets, str))
        object.__setattr__(self, 'exclude_markets', _as_tuple(self.exclude_markets, str))
        if self.holdout is not None:
            object.__setattr__(self, 'holdout', _as_tuple(self.holdout, float))

        if not self.treatment_periods or min(self.treatment_periods) < 1:
            raise ConfigurationError("treatment_periods must be a non-empty set of positive integers")
        if not self.N or min(self.N) < 1:
            raise ConfigurationError("N must be a non-empty set of positive integers")
        if not self.effect_size:
            raise ConfigurationError("effect_size must contain at least one value")
        if any(not math.isfinite(e) or e <= -1 for e in self.effect_size):
            raise ConfigurationError("effect sizes must be finite and greater than -1")
        if self.lookback_window < 1:
            raise ConfigurationError("lookback_window must be at least 1")
        overlap = set(self.include_markets) & set(self.exclude_markets)
        if overlap:
            raise ConfigurationError(
                f"markets both included and excluded: {sorted(overlap)}"
            )
        if self.holdout is not None:
            if len(self.holdout) != 2:
                raise ConfigurationError("holdout must be a pair (lower, upper)")
            low, high = self.holdout
            if not 0 <= low <= high <= 1:
                raise ConfigurationError("holdout bounds must satisfy 0 <= lower <= upper <= 1")
        if not self.cpic > 0:
            raise ConfigurationError("cpic must be positive")
        if self.budget is not None and not self.budget > 0:
            raise ConfigurationError("budget must be positive when given")
        if self.n_jobs is not None and self.n_jobs < 1:
            raise ConfigurationError("n_jobs must be at least 1")
        if self.max_combinations < 1:
            raise ConfigurationError("max_combinations must be at least 1")
        if not 0 < self.target_power <= 1:
            raise ConfigurationError("target_power must be in (0, 1]")
        if self.tie_tolerance < 0:
            raise ConfigurationError("tie_tolerance must be non-negative")

    @property
    def alpha(self) -> float:
        return self.estimator.alpha
