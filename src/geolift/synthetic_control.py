"""
Synthetic Control Method
========================

Implements Abadie et al. (2010) synthetic control weights for
constructing counterfactual outcomes from a donor pool.

Key Features:
- Simplex-constrained donor weights (non-negative, sum to one)
- Optional fixed-effects demeaning by unit pre-period averages
- Optional pre-period covariate balance
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import Bounds, minimize

from .exceptions import InsufficientDataError
from .panel import Panel, TreatmentSpec

logger = logging.getLogger(__name__)


def scaled_l2_imbalance(residuals: np.ndarray, baseline_residuals: np.ndarray) -> float:
    """
    Squared residual mass relative to the equal-weight baseline, in [0, 1].

    A perfect baseline fit yields 0.
    """
    l2 = float(np.sum(np.square(residuals)))
    baseline = float(np.sum(np.square(baseline_residuals)))
    if baseline <= 0:
        return 0.0
    return float(np.clip(l2 / baseline, 0.0, 1.0))


@dataclass(frozen=True)
class WeightVector:
    """Donor weights of a synthetic control."""
    donors: Tuple[str, ...]
    weights: np.ndarray

    def as_dict(self, min_weight: float = 0.0) -> Dict[str, float]:
        return {
            donor: float(w) for donor, w in zip(self.donors, self.weights)
            if w > min_weight
        }

    def __len__(self) -> int:
        return len(self.donors)


@dataclass(frozen=True)
class SyntheticControlFit:
    """
    Container for a fitted synthetic control.

    Series cover the whole horizon [1, T]; the weights only used the first
    ``n_pre`` periods.
    """
    weights: WeightVector
    treated_series: np.ndarray  # (T,) treated aggregate
    donor_matrix: np.ndarray  # (T, n_donors)
    treated_level: float  # pre-period mean added back (0 without fixed effects)
    donor_levels: np.ndarray  # (n_donors,) pre-period means removed
    synthetic_series: np.ndarray  # (T,) base synthetic control estimate
    n_pre: int
    fixed_effects: bool
    treated_covariates: Optional[np.ndarray] = None  # (T, K) when balanced on covariates
    donor_covariates: Optional[np.ndarray] = None  # (T, n_donors, K)

    @property
    def treated_centered(self) -> np.ndarray:
        return self.treated_series - self.treated_level

    @property
    def donors_centered(self) -> np.ndarray:
        return self.donor_matrix - self.donor_levels

    @property
    def pre_residuals(self) -> np.ndarray:
        return (self.treated_series - self.synthetic_series)[:self.n_pre]

    def equal_weight_series(self) -> np.ndarray:
        """Naive baseline: every donor weighted equally."""
        return self.treated_level + self.donors_centered.mean(axis=1)

    def apply(self, weights: np.ndarray) -> np.ndarray:
        """Counterfactual implied by an arbitrary donor weighting."""
        return self.treated_level + self.donors_centered @ weights


class WeightFitter:
    """
    Synthetic Control weight fitting.

    Minimizes the squared pre-period gap between the treated aggregate and
    the weighted donor pool, subject to weights >= 0 and sum(weights) = 1.

    Parameters
    ----------
    fixed_effects : bool
        Demean each unit by its pre-period average before fitting
    optimization_method : str
        scipy optimizer supporting bounds and equality constraints
    regularization : float
        L2 penalty on the weights (default: 0)
    use_covariates : bool
        Append pre-period covariate means as extra balance rows
    max_iter : int
        Optimizer iteration limit
    """

    def __init__(
        self,
        fixed_effects: bool = True,
        optimization_method: str = 'SLSQP',
        regularization: float = 0.0,
        use_covariates: bool = False,
        max_iter: int = 500
    ):
        self.fixed_effects = fixed_effects
        self.optimization_method = optimization_method
        self.regularization = regularization
        self.use_covariates = use_covariates
        self.max_iter = max_iter

    def fit(
        self,
        panel: Panel,
        treatment: TreatmentSpec,
        pre_period_end: Optional[int] = None,
        excluded: Sequence[str] = ()
    ) -> SyntheticControlFit:
        """
        Fit donor weights for a treated group.

        Parameters
        ----------
        panel : Panel
            Validated outcome panel
        treatment : TreatmentSpec
            Treated locations and test window
        pre_period_end : int
            Last period used for fitting (default: treatment.start - 1)
        excluded : sequence of str
            Locations removed from the donor pool

        Returns
        -------
        SyntheticControlFit
        """
        n_pre = treatment.pre_period_end if pre_period_end is None else int(pre_period_end)
        treated = set(treatment.treated)
        blocked = treated | set(excluded)
        donors = [loc for loc in panel.locations if loc not in blocked]

        treated_rows = panel.index_of(treatment.treated)
        donor_rows = panel.index_of(donors)

        treated_cov = donor_cov = None
        if self.use_covariates and panel.covariates is not None:
            treated_cov = panel.covariates[treated_rows].mean(axis=0)
            donor_cov = np.transpose(panel.covariates[donor_rows], (1, 0, 2))

        return self.fit_arrays(
            panel.outcomes[treated_rows].mean(axis=0),
            panel.outcomes[donor_rows].T,
            n_pre,
            donor_names=donors,
            treated_covariates=treated_cov,
            donor_covariates=donor_cov
        )

    def fit_arrays(
        self,
        treated: np.ndarray,
        donors: np.ndarray,
        n_pre: int,
        donor_names: Optional[Sequence[str]] = None,
        treated_covariates: Optional[np.ndarray] = None,
        donor_covariates: Optional[np.ndarray] = None
    ) -> SyntheticControlFit:
        """
        Fit donor weights from arrays.

        Parameters
        ----------
        treated : array (T,)
            Treated aggregate outcome
        donors : array (T, n_donors)
            Donor outcomes
        n_pre : int
            Number of leading periods used for fitting
        donor_names : sequence of str
            Donor identifiers (default: positional names)
        treated_covariates : array (T, K), optional
        donor_covariates : array (T, n_donors, K), optional
        """
        treated = np.asarray(treated, dtype=float)
        donors = np.asarray(donors, dtype=float)
        if donors.ndim != 2 or donors.shape[1] == 0:
            raise InsufficientDataError("Donor pool is empty")
        n_donors = donors.shape[1]
        if n_pre < n_donors + 1:
            raise InsufficientDataError(
                f"Pre-period has {n_pre} periods, need at least {n_donors + 1} "
                f"for {n_donors} donors"
            )
        if donor_names is None:
            donor_names = [f'donor_{j}' for j in range(n_donors)]

        if self.fixed_effects:
            treated_level = float(treated[:n_pre].mean())
            donor_levels = donors[:n_pre].mean(axis=0)
        else:
            treated_level = 0.0
            donor_levels = np.zeros(n_donors)

        y_pre = treated[:n_pre] - treated_level
        X_pre = donors[:n_pre] - donor_levels

        if not self.use_covariates or treated_covariates is None or donor_covariates is None:
            treated_covariates = donor_covariates = None
        else:
            treated_covariates = np.asarray(treated_covariates, dtype=float)
            donor_covariates = np.asarray(donor_covariates, dtype=float)
            y_cov, X_cov = self._covariate_rows(
                y_pre, treated_covariates[:n_pre], donor_covariates[:n_pre]
            )
            y_pre = np.concatenate([y_pre, y_cov])
            X_pre = np.vstack([X_pre, X_cov])

        weights = self._optimize_weights(y_pre, X_pre, n_donors)

        synthetic = treated_level + (donors - donor_levels) @ weights

        return SyntheticControlFit(
            weights=WeightVector(tuple(donor_names), weights),
            treated_series=treated,
            donor_matrix=donors,
            treated_level=treated_level,
            donor_levels=donor_levels,
            synthetic_series=synthetic,
            n_pre=n_pre,
            fixed_effects=self.fixed_effects,
            treated_covariates=treated_covariates,
            donor_covariates=donor_covariates
        )

    def _covariate_rows(
        self,
        y_pre: np.ndarray,
        treated_cov: np.ndarray,
        donor_cov: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Pre-period covariate means rescaled to the outcome's spread."""
        target = treated_cov.mean(axis=0)  # (K,)
        pool = donor_cov.mean(axis=0).T  # (K, n_donors)

        outcome_scale = np.std(y_pre) or 1.0
        spread = pool.std(axis=1)
        spread[spread == 0] = 1.0
        scale = outcome_scale / spread

        return target * scale, pool * scale[:, np.newaxis]

    def _optimize_weights(
        self,
        y: np.ndarray,
        X: np.ndarray,
        n_donors: int
    ) -> np.ndarray:
        """
        Optimize donor weights to minimize pre-period squared error.

        Constraints:
        - Weights sum to 1
        - Weights are non-negative
        """
        if n_donors == 1:
            return np.ones(1)

        scale = max(np.max(np.abs(X)), np.max(np.abs(y)), 1e-12)
        ys = y / scale
        Xs = X / scale
        n = len(ys)

        def objective(w):
            resid = ys - Xs @ w
            return resid @ resid / n + self.regularization * (w @ w)

        def gradient(w):
            resid = ys - Xs @ w
            return -2 * Xs.T @ resid / n + 2 * self.regularization * w

        # Initial weights (uniform)
        w0 = np.ones(n_donors) / n_donors

        result = minimize(
            objective,
            w0,
            jac=gradient,
            method=self.optimization_method,
            bounds=Bounds(lb=0, ub=1),
            constraints={
                'type': 'eq',
                'fun': lambda w: w.sum() - 1,
                'jac': lambda w: np.ones_like(w)
            },
            options={'maxiter': self.max_iter, 'ftol': 1e-12}
        )

        if not result.success:
            logger.debug("Weight optimization did not converge: %s", result.message)

        weights = np.clip(result.x, 0, None)
        total = weights.sum()
        if not np.isfinite(total) or total <= 0:
            return w0
        return weights / total
