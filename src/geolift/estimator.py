"""
GeoLift Estimator
=================

Orchestrates synthetic control weights and augmentation over the full
horizon to produce a counterfactual, per-period ATT and aggregate Lift.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .augmentation import AugmentationResult, Augmenter
from .config import EstimatorConfig
from .panel import Panel, TreatmentSpec
from .synthetic_control import (
    SyntheticControlFit, WeightFitter, WeightVector, scaled_l2_imbalance
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterfactualSeries:
    """Estimated treated-aggregate outcome absent treatment, for t in [1, T]."""
    values: np.ndarray

    def __post_init__(self):
        values = np.array(self.values, dtype=float, copy=True)
        values.setflags(write=False)
        object.__setattr__(self, 'values', values)

    @property
    def time_index(self) -> np.ndarray:
        return np.arange(1, len(self.values) + 1)

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class EffectEstimate:
    """Container for treatment effect estimates."""
    observed: np.ndarray  # treated aggregate, (T,)
    att: np.ndarray  # observed - counterfactual, (T,)
    treatment_start: int
    treatment_end: int
    n_treated: int

    # Aggregates over the test window
    average_att: float
    cumulative_lift: float
    incremental: float
    percent_lift: float

    # Pre-period fit
    l2_imbalance: float
    scaled_l2_imbalance: float

    @property
    def window(self) -> slice:
        return slice(self.treatment_start - 1, self.treatment_end)


def compute_effect(
    observed: np.ndarray,
    counterfactual: np.ndarray,
    baseline: np.ndarray,
    start: int,
    end: int,
    n_treated: int = 1
) -> EffectEstimate:
    """
    Effect estimate of an observed series against its counterfactual.

    Parameters
    ----------
    observed : array (T,)
        Treated aggregate outcome
    counterfactual : array (T,)
        Estimated outcome absent treatment
    baseline : array (T,)
        Equal-weight donor average used to scale the imbalance
    start, end : int
        Test window (1-based, inclusive)
    n_treated : int
        Locations averaged into the treated aggregate
    """
    observed = np.asarray(observed, dtype=float)
    att = observed - counterfactual
    pre = slice(0, start - 1)
    window = slice(start - 1, end)

    cumulative = float(att[window].sum())
    expected = float(np.sum(counterfactual[window]))
    percent = cumulative / expected if expected != 0 else 0.0

    return EffectEstimate(
        observed=observed,
        att=att,
        treatment_start=start,
        treatment_end=end,
        n_treated=n_treated,
        average_att=float(att[window].mean()),
        cumulative_lift=cumulative,
        incremental=cumulative * n_treated,
        percent_lift=percent,
        l2_imbalance=float(np.sum(att[pre] ** 2)),
        scaled_l2_imbalance=scaled_l2_imbalance(att[pre], observed[pre] - baseline[pre])
    )


@dataclass(frozen=True)
class EstimationResult:
    """Output of one Estimator run."""
    treated: tuple
    weights: WeightVector
    augmentation: AugmentationResult
    counterfactual: CounterfactualSeries
    effect: EffectEstimate
    baseline: np.ndarray  # equal-weight donor series, (T,)

    @property
    def model(self) -> str:
        return self.augmentation.model

    @property
    def degraded(self) -> bool:
        return self.augmentation.degraded


class GeoLiftEstimator:
    """
    Augmented Synthetic Control estimator for geo experiments.

    Fits weights and the augmentation on the pre-period only, then applies
    them to donor outcomes over the whole horizon.

    Parameters
    ----------
    config : EstimatorConfig
        Model, fixed effects and covariate settings
    """

    def __init__(self, config: Optional[EstimatorConfig] = None):
        self.config = config or EstimatorConfig()
        self.weight_fitter = WeightFitter(
            fixed_effects=self.config.fixed_effects,
            use_covariates=self.config.use_covariates
        )
        self.augmenter = Augmenter(
            model=self.config.model,
            cv_folds=self.config.cv_folds,
            max_rank=self.config.max_rank,
            weight_fitter=self.weight_fitter
        )

    def estimate(self, panel: Panel, treatment: TreatmentSpec) -> EstimationResult:
        """
        Estimate the effect of a treatment.

        Parameters
        ----------
        panel : Panel
            Validated outcome panel
        treatment : TreatmentSpec
            Treated locations and test window

        Returns
        -------
        EstimationResult
            Weights, augmentation, counterfactual and effect estimate
        """
        treatment.validate(panel)
        sc_fit = self.weight_fitter.fit(
            panel, treatment, excluded=self.config.excluded_donors
        )
        return self._finish(sc_fit, treatment.treated, treatment.start, treatment.end)

    def estimate_arrays(
        self,
        treated: np.ndarray,
        donors: np.ndarray,
        start: int,
        end: int,
        donor_names: Optional[Sequence[str]] = None,
        treated_names: Sequence[str] = (),
        n_treated: int = 1,
        treated_covariates: Optional[np.ndarray] = None,
        donor_covariates: Optional[np.ndarray] = None
    ) -> EstimationResult:
        """
        Estimate from a treated aggregate (T,) and a donor matrix (T, n_donors).

        Covariates, shaped (T, K) and (T, n_donors, K), are balanced only when
        the configuration enables them.
        """
        sc_fit = self.weight_fitter.fit_arrays(
            treated, donors, start - 1,
            donor_names=donor_names,
            treated_covariates=treated_covariates,
            donor_covariates=donor_covariates
        )
        return self._finish(sc_fit, tuple(treated_names), start, end, n_treated)

    def _finish(
        self,
        sc_fit: SyntheticControlFit,
        treated_names: tuple,
        start: int,
        end: int,
        n_treated: Optional[int] = None
    ) -> EstimationResult:
        augmentation = self.augmenter.fit(sc_fit)
        counterfactual = sc_fit.synthetic_series + augmentation.correction
        baseline = sc_fit.equal_weight_series()

        effect = compute_effect(
            sc_fit.treated_series, counterfactual, baseline, start, end,
            n_treated=n_treated if n_treated is not None else max(len(treated_names), 1)
        )

        logger.debug(
            "Estimated %s: model=%s lift=%.4f scaled_l2=%.4f",
            treated_names, augmentation.model, effect.percent_lift, effect.scaled_l2_imbalance
        )

        return EstimationResult(
            treated=treated_names,
            weights=sc_fit.weights,
            augmentation=augmentation,
            counterfactual=CounterfactualSeries(counterfactual),
            effect=effect,
            baseline=baseline
        )
