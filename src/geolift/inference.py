"""
Placebo Inference
=================

Permutation inference for synthetic control estimates: every donor
(or size-matched donor group) is treated as if it had received the
treatment, and the observed test statistic is ranked against the
resulting placebo distribution.
"""

import logging
import math
from dataclasses import dataclass
from itertools import combinations
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import EstimatorConfig
from .estimator import EffectEstimate, EstimationResult, GeoLiftEstimator
from .exceptions import InsufficientDataError, InsufficientDonorsError
from .panel import Panel, TreatmentSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceResult:
    """Container for placebo inference results."""
    statistic: float
    placebo_statistics: np.ndarray
    p_value: float
    confidence_interval: Tuple[float, float]  # average ATT
    lift_interval: Tuple[float, float]  # percent lift
    side_of_test: str
    alpha: float
    n_placebos: int
    n_failed: int = 0

    @property
    def significant(self) -> bool:
        return bool(self.p_value <= self.alpha)


@dataclass(frozen=True)
class PlaceboDistribution:
    """Test-window ATT paths of every successful placebo run."""
    att_windows: np.ndarray  # (n_placebos, window length)
    n_failed: int = 0

    @property
    def n_placebos(self) -> int:
        return self.att_windows.shape[0]


def compute_test_statistic(att_window: np.ndarray, side_of_test: str, sign: float = 1.0) -> float:
    """
    Permutation test statistic over the test window.

    two_sided: sum of absolute ATT. one_sided: signed sum of ATT, oriented
    by ``sign``.
    """
    if side_of_test == 'two_sided':
        return float(np.sum(np.abs(att_window)))
    return float(sign * np.sum(att_window))


def permutation_pvalue(
    statistic: float,
    placebo_statistics: np.ndarray,
    tol: float = 0.0
) -> float:
    """Fraction of placebo statistics at least as extreme as the observed one."""
    placebo_statistics = np.asarray(placebo_statistics, dtype=float)
    if len(placebo_statistics) == 0:
        return np.nan
    return float(np.mean(placebo_statistics >= statistic - tol))


class InferenceEngine:
    """
    Placebo / permutation inference.

    Parameters
    ----------
    config : EstimatorConfig
        Sidedness, alpha, placebo limits and model settings
    """

    def __init__(self, config: Optional[EstimatorConfig] = None):
        self.config = config or EstimatorConfig()

    def infer(
        self,
        panel: Panel,
        treatment: TreatmentSpec,
        result: Optional[EstimationResult] = None
    ) -> InferenceResult:
        """
        Run placebo inference for a treatment.

        Parameters
        ----------
        panel : Panel
            Validated outcome panel
        treatment : TreatmentSpec
            Treated locations and test window
        result : EstimationResult
            Estimate of the real test (computed when omitted)

        Returns
        -------
        InferenceResult
        """
        treatment.validate(panel)
        if result is None:
            result = GeoLiftEstimator(self.config).estimate(panel, treatment)

        blocked = set(treatment.treated) | set(self.config.excluded_donors)
        donor_names = [loc for loc in panel.locations if loc not in blocked]
        donor_rows = panel.index_of(donor_names)
        donor_outcomes = panel.outcomes[donor_rows].T
        donor_covariates = None
        if self.config.use_covariates and panel.covariates is not None:
            donor_covariates = np.transpose(panel.covariates[donor_rows], (1, 0, 2))

        placebos = self.placebo_distribution(
            donor_outcomes,
            donor_names,
            n_treated=len(treatment.treated),
            start=treatment.start,
            end=treatment.end,
            model=result.augmentation.model,
            donor_covariates=donor_covariates
        )
        return self.evaluate(result.effect, placebos)

    def placebo_sets(self, n_donors: int, n_treated: int) -> List[Tuple[int, ...]]:
        """
        Donor index groups used as pseudo-treated units.

        All size-matched groups when there are at most ``max_placebos`` of
        them, otherwise a seeded sample of distinct groups.
        """
        if n_donors < self.config.min_donors or n_treated >= n_donors:
            raise InsufficientDonorsError(
                f"{n_donors} donors cannot support placebos of size {n_treated} "
                f"(minimum donors: {self.config.min_donors})"
            )

        limit = self.config.max_placebos
        if math.comb(n_donors, n_treated) <= limit:
            return list(combinations(range(n_donors), n_treated))

        rng = np.random.default_rng(self.config.random_state)
        sets = set()
        while len(sets) < limit:
            draw = rng.choice(n_donors, size=n_treated, replace=False)
            sets.add(tuple(sorted(int(i) for i in draw)))
        return sorted(sets)

    def placebo_distribution(
        self,
        donor_outcomes: np.ndarray,
        donor_names: Sequence[str],
        n_treated: int,
        start: int,
        end: int,
        model: Optional[str] = None,
        donor_covariates: Optional[np.ndarray] = None
    ) -> PlaceboDistribution:
        """
        Estimate every placebo group against the remaining donors.

        Parameters
        ----------
        donor_outcomes : array (T, n_donors)
            Outcomes of the donor pool (treated units excluded)
        donor_names : sequence of str
            Donor identifiers
        n_treated : int
            Size of the real treated group
        start, end : int
            Test window
        model : str
            Augmentation model of the real run (default: configured model)
        donor_covariates : array (T, n_donors, K), optional
            Covariates of the donor pool, balanced like the real run
        """
        donor_outcomes = np.asarray(donor_outcomes, dtype=float)
        n_donors = donor_outcomes.shape[1]
        config = self.config if model is None else self.config.with_model(model)
        estimator = GeoLiftEstimator(config)

        windows = []
        n_failed = 0
        for group in self.placebo_sets(n_donors, n_treated):
            members = list(group)
            rest = [j for j in range(n_donors) if j not in group]
            treated_cov = rest_cov = None
            if donor_covariates is not None:
                treated_cov = donor_covariates[:, members].mean(axis=1)
                rest_cov = donor_covariates[:, rest]
            try:
                placebo = estimator.estimate_arrays(
                    donor_outcomes[:, members].mean(axis=1),
                    donor_outcomes[:, rest],
                    start,
                    end,
                    donor_names=[donor_names[j] for j in rest],
                    treated_names=tuple(donor_names[j] for j in members),
                    n_treated=len(members),
                    treated_covariates=treated_cov,
                    donor_covariates=rest_cov
                )
            except InsufficientDataError as e:
                logger.debug("Placebo %s failed: %s", members, e)
                n_failed += 1
                continue
            windows.append(placebo.effect.att[start - 1:end])

        if len(windows) < self.config.min_donors:
            raise InsufficientDonorsError(
                f"Only {len(windows)} placebo runs succeeded "
                f"(minimum: {self.config.min_donors})"
            )

        return PlaceboDistribution(np.vstack(windows), n_failed)

    def evaluate(self, effect: EffectEstimate, placebos: PlaceboDistribution) -> InferenceResult:
        """Rank an effect estimate against a placebo distribution."""
        side = self.config.side_of_test
        alpha = self.config.alpha

        att_window = effect.att[effect.window]
        sign = 1.0 if att_window.sum() >= 0 else -1.0

        statistic = compute_test_statistic(att_window, side, sign)
        placebo_stats = np.array([
            compute_test_statistic(w, side, sign) for w in placebos.att_windows
        ])

        # Absolute tolerance for ties from floating-point noise
        scale = max(1.0, float(np.mean(np.abs(effect.observed[effect.window]))))
        tol = 1e-9 * scale * len(att_window)
        p_value = permutation_pvalue(statistic, placebo_stats, tol)

        placebo_att = placebos.att_windows.mean(axis=1)
        average = effect.average_att
        if side == 'two_sided':
            interval = (
                average - float(np.quantile(placebo_att, 1 - alpha / 2)),
                average - float(np.quantile(placebo_att, alpha / 2))
            )
        elif sign > 0:
            interval = (average - float(np.quantile(placebo_att, 1 - alpha)), np.inf)
        else:
            interval = (-np.inf, average - float(np.quantile(placebo_att, alpha)))

        expected = float(np.sum((effect.observed - effect.att)[effect.window]))
        if expected != 0:
            factor = len(att_window) / expected
            lift_interval = tuple(sorted((interval[0] * factor, interval[1] * factor)))
        else:
            lift_interval = (np.nan, np.nan)

        return InferenceResult(
            statistic=statistic,
            placebo_statistics=placebo_stats,
            p_value=p_value,
            confidence_interval=interval,
            lift_interval=lift_interval,
            side_of_test=side,
            alpha=alpha,
            n_placebos=placebos.n_placebos,
            n_failed=placebos.n_failed
        )
