"""
Synthetic Control Augmentation
==============================

Second-stage bias correction of a fitted synthetic control.

Models (closed set):
- none: no correction
- ridge: ridge regression of the pre-period residual on donor outcomes
  (Ben-Michael et al., 2021), an additive weight adjustment off the simplex
- gsc: interactive fixed effects / factor model prediction (Xu, 2017)
- best: the model with the lowest held-out scaled L2 imbalance
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

import numpy as np
from sklearn.linear_model import Ridge
from sklearn.model_selection import TimeSeriesSplit

from .exceptions import AugmentationError, InsufficientDataError
from .synthetic_control import SyntheticControlFit, WeightFitter, scaled_l2_imbalance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AugmentationResult:
    """Correction added to the base synthetic control estimate."""
    model: str
    requested: str
    correction: np.ndarray  # (T,)
    n_pre: int
    weight_adjustment: Optional[np.ndarray] = None
    penalty: Optional[float] = None
    rank: Optional[int] = None
    cv_scores: Dict[str, float] = field(default_factory=dict)
    degraded: bool = False

    @property
    def bias_removed(self) -> float:
        """Average correction applied after the pre-period."""
        post = self.correction[self.n_pre:]
        return float(post.mean()) if len(post) else 0.0


def _fit_none(sc_fit: SyntheticControlFit, cv_folds: int, max_rank: int) -> AugmentationResult:
    return AugmentationResult(
        model='none',
        requested='none',
        correction=np.zeros_like(sc_fit.synthetic_series),
        n_pre=sc_fit.n_pre
    )


def _fit_ridge(sc_fit: SyntheticControlFit, cv_folds: int, max_rank: int) -> AugmentationResult:
    """Ridge-augmented synthetic control."""
    n_pre = sc_fit.n_pre
    X = sc_fit.donors_centered
    X_pre = X[:n_pre]
    resid = sc_fit.pre_residuals
    n_donors = X.shape[1]

    if n_pre < n_donors + 1 or n_pre <= cv_folds:
        raise AugmentationError(
            f"Ridge augmentation needs more than {max(n_donors, cv_folds)} "
            f"pre-period observations, got {n_pre}"
        )

    top = np.linalg.svd(X_pre, compute_uv=False)[0]
    if not np.isfinite(top) or top <= 0:
        raise AugmentationError("Donor pre-period outcomes are degenerate")

    # Penalty grid scaled by the leading singular value
    grid = top ** 2 * np.logspace(-4, 1, 12)
    splitter = TimeSeriesSplit(n_splits=cv_folds)
    scores = []
    for penalty in grid:
        error = 0.0
        for train, test in splitter.split(X_pre):
            model = Ridge(alpha=penalty, fit_intercept=False).fit(X_pre[train], resid[train])
            error += float(np.sum((resid[test] - model.predict(X_pre[test])) ** 2))
        scores.append(error)

    penalty = float(grid[int(np.argmin(scores))])
    adjustment = Ridge(alpha=penalty, fit_intercept=False).fit(X_pre, resid).coef_
    if not np.all(np.isfinite(adjustment)):
        raise AugmentationError("Ridge augmentation produced non-finite coefficients")

    return AugmentationResult(
        model='ridge',
        requested='ridge',
        correction=X @ adjustment,
        n_pre=n_pre,
        weight_adjustment=adjustment,
        penalty=penalty
    )


def _factor_prediction(factors: np.ndarray, y: np.ndarray, rows: np.ndarray) -> np.ndarray:
    """Least-squares loadings on ``rows`` with an intercept, predicted everywhere."""
    design = np.column_stack([np.ones(len(factors)), factors])
    coef, *_ = np.linalg.lstsq(design[rows], y[rows], rcond=None)
    return design @ coef


def _fit_gsc(sc_fit: SyntheticControlFit, cv_folds: int, max_rank: int) -> AugmentationResult:
    """Factor-model (generalized synthetic control) prediction of the counterfactual."""
    n_pre = sc_fit.n_pre
    donors = sc_fit.donor_matrix
    donors = donors - donors[:n_pre].mean(axis=0)
    y = sc_fit.treated_series
    y_level = float(y[:n_pre].mean())
    y = y - y_level

    max_r = min(max_rank, donors.shape[1], n_pre - 2)
    if max_r < 1 or n_pre <= cv_folds:
        raise AugmentationError(
            f"Factor model needs more pre-period observations than {max(cv_folds, 2)}, got {n_pre}"
        )

    U, s, _ = np.linalg.svd(donors, full_matrices=False)
    factors = U * s
    if not np.all(np.isfinite(factors)):
        raise AugmentationError("Donor factor decomposition is not finite")

    # Rank by rolling-origin CV on the pre-period
    splitter = TimeSeriesSplit(n_splits=cv_folds)
    scores = {}
    for r in range(1, max_r + 1):
        error = 0.0
        for train, test in splitter.split(y[:n_pre]):
            if len(train) <= r + 1:
                error = np.inf
                break
            pred = _factor_prediction(factors[:, :r], y, train)
            error += float(np.sum((y[test] - pred[test]) ** 2))
        scores[r] = error

    rank = min(scores, key=lambda r: (scores[r], r))
    if not np.isfinite(scores[rank]):
        raise AugmentationError("No factor rank could be cross-validated")

    prediction = y_level + _factor_prediction(factors[:, :rank], y, np.arange(n_pre))
    if not np.all(np.isfinite(prediction)):
        raise AugmentationError("Factor model produced non-finite predictions")

    return AugmentationResult(
        model='gsc',
        requested='gsc',
        correction=prediction - sc_fit.synthetic_series,
        n_pre=n_pre,
        rank=rank
    )


_FITTERS = {
    'none': _fit_none,
    'ridge': _fit_ridge,
    'gsc': _fit_gsc,
}


class Augmenter:
    """
    Augmented Synthetic Control

    Reduces the remaining pre-period imbalance of a synthetic control
    fit with a prognostic model. An ill-conditioned augmentation degrades
    to 'none' and is flagged on the result.

    Parameters
    ----------
    model : str
        'none', 'ridge', 'gsc' or 'best'
    cv_folds : int
        Rolling-origin folds on the pre-period
    max_rank : int
        Largest factor rank tried by 'gsc'
    weight_fitter : WeightFitter
        Refits weights on each fold when comparing models ('best')
    """

    def __init__(
        self,
        model: str = 'none',
        cv_folds: int = 3,
        max_rank: int = 3,
        weight_fitter: Optional[WeightFitter] = None
    ):
        if model not in _FITTERS and model != 'best':
            raise ValueError(f"Unknown augmentation model: {model}")
        self.model = model
        self.cv_folds = cv_folds
        self.max_rank = max_rank
        self.weight_fitter = weight_fitter

    def fit(self, sc_fit: SyntheticControlFit) -> AugmentationResult:
        if self.model == 'best':
            return self._select_best(sc_fit)
        return self._fit_model(sc_fit, self.model)

    def _fit_model(self, sc_fit: SyntheticControlFit, model: str) -> AugmentationResult:
        try:
            return _FITTERS[model](sc_fit, self.cv_folds, self.max_rank)
        except AugmentationError as e:
            logger.warning("Augmentation '%s' failed (%s); falling back to 'none'", model, e)
            result = _fit_none(sc_fit, self.cv_folds, self.max_rank)
            return replace(result, requested=model, degraded=True)

    def _select_best(self, sc_fit: SyntheticControlFit) -> AugmentationResult:
        """Pick the model with the lowest held-out scaled L2 imbalance."""
        scores = self.holdout_imbalance(sc_fit)

        candidates = [
            m for m in ('ridge', 'gsc')
            if np.isfinite(scores[m]) and scores[m] < scores['none']
        ]
        chosen = min(candidates, key=lambda m: scores[m]) if candidates else 'none'
        logger.debug("Augmentation scores %s, selected '%s'", scores, chosen)

        result = self._fit_model(sc_fit, chosen)
        return replace(result, requested='best', cv_scores=scores)

    def holdout_imbalance(self, sc_fit: SyntheticControlFit) -> Dict[str, float]:
        """
        Mean held-out scaled L2 imbalance per model over pre-period folds.

        Weights are refit on every training block; a model that cannot be
        fit on a fold scores infinity.
        """
        fitter = self.weight_fitter or WeightFitter(
            fixed_effects=sc_fit.fixed_effects,
            use_covariates=sc_fit.treated_covariates is not None
        )
        treated_cov, donor_cov = sc_fit.treated_covariates, sc_fit.donor_covariates
        fold_scores: Dict[str, List[float]] = {m: [] for m in _FITTERS}

        for train_end, test_end in self._pre_period_folds(sc_fit):
            try:
                fold_fit = fitter.fit_arrays(
                    sc_fit.treated_series[:test_end],
                    sc_fit.donor_matrix[:test_end],
                    train_end,
                    donor_names=sc_fit.weights.donors,
                    treated_covariates=None if treated_cov is None else treated_cov[:test_end],
                    donor_covariates=None if donor_cov is None else donor_cov[:test_end]
                )
            except InsufficientDataError:
                continue

            test = slice(train_end, test_end)
            observed = fold_fit.treated_series[test]
            baseline = observed - fold_fit.equal_weight_series()[test]

            for model, fit_fn in _FITTERS.items():
                try:
                    correction = fit_fn(fold_fit, self.cv_folds, self.max_rank).correction
                except AugmentationError:
                    fold_scores[model].append(np.inf)
                    continue
                predicted = fold_fit.synthetic_series[test] + correction[test]
                fold_scores[model].append(scaled_l2_imbalance(observed - predicted, baseline))

        return {
            m: float(np.mean(s)) if s else np.nan
            for m, s in fold_scores.items()
        }

    def _pre_period_folds(self, sc_fit: SyntheticControlFit) -> List[Tuple[int, int]]:
        """(train_end, test_end) blocks of a rolling-origin split of the pre-period."""
        n_pre = sc_fit.n_pre
        if n_pre <= self.cv_folds:
            return []
        splitter = TimeSeriesSplit(n_splits=self.cv_folds)
        return [
            (int(test[0]), int(test[-1]) + 1)
            for _, test in splitter.split(np.arange(n_pre))
        ]
