"""
Panel Data Model
================

Validated, immutable panel of outcomes per (location, time).

Key Features:
- Contiguous integer time index starting at 1
- Optional covariates per (location, time)
- Treatment specification with pre/test period split
- Synthetic geo panels for demonstrations and tests
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, InsufficientDataError, MalformedPanelError

logger = logging.getLogger(__name__)


def _read_only(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=float, copy=True)
    array.setflags(write=False)
    return array


class Panel:
    """
    Immutable outcome panel.

    Parameters
    ----------
    locations : sequence of str
        Ordered unique location identifiers
    outcomes : array (n_locations, n_periods)
        Outcome value for every (location, time) cell
    covariates : array (n_locations, n_periods, n_covariates), optional
        Covariate values for every cell
    covariate_names : sequence of str
        Names of the covariates, in the order of the last axis
    """

    __slots__ = ('_locations', '_outcomes', '_covariates', '_covariate_names', '_index')

    def __init__(
        self,
        locations: Sequence[str],
        outcomes: np.ndarray,
        covariates: Optional[np.ndarray] = None,
        covariate_names: Sequence[str] = ()
    ):
        locations = tuple(str(loc) for loc in locations)
        if len(set(locations)) != len(locations):
            raise MalformedPanelError("Location identifiers must be unique")
        if not locations:
            raise MalformedPanelError("Panel must contain at least one location")

        outcomes = np.asarray(outcomes, dtype=float)
        if outcomes.ndim != 2 or outcomes.shape[0] != len(locations):
            raise MalformedPanelError(
                f"Outcome matrix must have shape (n_locations, n_periods), got {outcomes.shape}"
            )
        if outcomes.shape[1] < 1:
            raise MalformedPanelError("Panel must contain at least one time period")
        if not np.all(np.isfinite(outcomes)):
            raise MalformedPanelError("Outcome matrix contains missing or non-finite values")

        if covariates is not None:
            covariates = np.asarray(covariates, dtype=float)
            if covariates.ndim == 2:
                covariates = covariates[:, :, np.newaxis]
            if covariates.shape[:2] != outcomes.shape:
                raise MalformedPanelError(
                    "Covariates must have shape (n_locations, n_periods, n_covariates)"
                )
            if not np.all(np.isfinite(covariates)):
                raise MalformedPanelError("Covariates contain missing or non-finite values")
            covariate_names = tuple(covariate_names) or tuple(
                f'x{k}' for k in range(covariates.shape[2])
            )
            if len(covariate_names) != covariates.shape[2]:
                raise MalformedPanelError("One covariate name is required per covariate")
            covariates = _read_only(covariates)
        else:
            covariate_names = ()

        self._locations = locations
        self._outcomes = _read_only(outcomes)
        self._covariates = covariates
        self._covariate_names = tuple(covariate_names)
        self._index = {loc: i for i, loc in enumerate(locations)}

    @classmethod
    def from_frame(
        cls,
        data: pd.DataFrame,
        location_col: str = 'location',
        time_col: str = 'time',
        outcome_col: str = 'Y',
        covariate_cols: Optional[List[str]] = None
    ) -> 'Panel':
        """
        Build a panel from long-format rows.

        Parameters
        ----------
        data : pd.DataFrame
            One row per (location, time) with the outcome and covariates
        location_col : str
            Column name for location identifier
        time_col : str
            Column name for the integer time index (starting at 1)
        outcome_col : str
            Column name for outcome variable
        covariate_cols : list
            Optional covariate columns

        Returns
        -------
        Panel
        """
        covariate_cols = list(covariate_cols or [])
        required = [location_col, time_col, outcome_col] + covariate_cols
        missing = [c for c in required if c not in data.columns]
        if missing:
            raise MalformedPanelError(f"Missing required columns: {missing}")

        frame = data[required].copy()
        if frame[[outcome_col] + covariate_cols].isnull().any().any():
            raise MalformedPanelError("Missing values detected in outcome or covariate columns")
        if not pd.api.types.is_integer_dtype(frame[time_col]):
            raise MalformedPanelError(
                f"Time column '{time_col}' must hold integers, got {frame[time_col].dtype}"
            )
        frame[location_col] = frame[location_col].astype(str)

        if frame.duplicated(subset=[location_col, time_col]).any():
            raise MalformedPanelError("Duplicate (location, time) observations")

        times = np.sort(frame[time_col].unique())
        if times[0] != 1 or not np.array_equal(times, np.arange(1, len(times) + 1)):
            raise MalformedPanelError(
                "Time index must be contiguous integers starting at 1"
            )

        locations = list(pd.unique(frame[location_col]))
        expected = len(locations) * len(times)
        if len(frame) != expected:
            raise MalformedPanelError(
                f"Panel is unbalanced: {len(frame)} rows for "
                f"{len(locations)} locations x {len(times)} periods"
            )

        wide = frame.pivot(index=location_col, columns=time_col, values=outcome_col)
        wide = wide.loc[locations, times]

        covariates = None
        if covariate_cols:
            covariates = np.stack([
                frame.pivot(index=location_col, columns=time_col, values=col)
                .loc[locations, times].values
                for col in covariate_cols
            ], axis=2)

        return cls(locations, wide.values, covariates, covariate_cols)

    @property
    def locations(self) -> Tuple[str, ...]:
        return self._locations

    @property
    def outcomes(self) -> np.ndarray:
        return self._outcomes

    @property
    def covariates(self) -> Optional[np.ndarray]:
        return self._covariates

    @property
    def covariate_names(self) -> Tuple[str, ...]:
        return self._covariate_names

    @property
    def n_locations(self) -> int:
        return len(self._locations)

    @property
    def n_periods(self) -> int:
        return self._outcomes.shape[1]

    @property
    def times(self) -> np.ndarray:
        return np.arange(1, self.n_periods + 1)

    def __contains__(self, location) -> bool:
        return location in self._index

    def __repr__(self) -> str:
        return (
            f"Panel(n_locations={self.n_locations}, n_periods={self.n_periods}, "
            f"covariates={list(self._covariate_names)})"
        )

    def index_of(self, locations: Iterable[str]) -> np.ndarray:
        """Row indices of the given locations."""
        try:
            return np.array([self._index[str(loc)] for loc in locations], dtype=int)
        except KeyError as e:
            raise ConfigurationError(f"Unknown location: {e.args[0]}") from None

    def series(self, locations: Iterable[str]) -> np.ndarray:
        """Per-period mean outcome of a group of locations."""
        rows = self.index_of(locations)
        if len(rows) == 0:
            raise ConfigurationError("Cannot aggregate an empty group of locations")
        return self._outcomes[rows].mean(axis=0)

    def truncate(self, end: int) -> 'Panel':
        """Panel restricted to the periods [1, end]."""
        if not 1 <= end <= self.n_periods:
            raise ConfigurationError(f"Cannot truncate a {self.n_periods}-period panel at {end}")
        covariates = None if self._covariates is None else self._covariates[:, :end]
        return Panel(self._locations, self._outcomes[:, :end], covariates, self._covariate_names)

    def location_totals(self) -> Dict[str, float]:
        """Total outcome of every location over the whole panel."""
        totals = self._outcomes.sum(axis=1)
        return {loc: float(t) for loc, t in zip(self._locations, totals)}

    def outcome_share(self, locations: Iterable[str]) -> float:
        """Share of the total panel outcome produced by the given locations."""
        total = self._outcomes.sum()
        if total == 0:
            return 0.0
        return float(self._outcomes[self.index_of(locations)].sum() / total)

    def to_frame(self) -> pd.DataFrame:
        """Long-format view with location, time, Y and covariate columns."""
        frame = pd.DataFrame({
            'location': np.repeat(self._locations, self.n_periods),
            'time': np.tile(self.times, self.n_locations),
            'Y': self._outcomes.ravel(),
        })
        for k, name in enumerate(self._covariate_names):
            frame[name] = self._covariates[:, :, k].ravel()
        return frame


@dataclass(frozen=True)
class TreatmentSpec:
    """
    Treated locations and test window.

    The pre-period is [1, start - 1] and the test period is [start, end].
    """
    treated: Tuple[str, ...]
    start: int
    end: int

    def __post_init__(self):
        treated = (self.treated,) if isinstance(self.treated, str) else self.treated
        object.__setattr__(self, 'treated', tuple(str(t) for t in treated))
        object.__setattr__(self, 'start', int(self.start))
        object.__setattr__(self, 'end', int(self.end))

    @property
    def pre_period_end(self) -> int:
        return self.start - 1

    @property
    def duration(self) -> int:
        return self.end - self.start + 1

    def validate(self, panel: Panel) -> 'TreatmentSpec':
        """Check this specification against a panel."""
        if not self.treated:
            raise ConfigurationError("At least one treated location is required")
        if len(set(self.treated)) != len(self.treated):
            raise ConfigurationError("Treated locations must be unique")
        unknown = [t for t in self.treated if t not in panel]
        if unknown:
            raise ConfigurationError(f"Treated locations not in panel: {unknown}")
        if not 1 <= self.start <= self.end <= panel.n_periods:
            raise ConfigurationError(
                f"Treatment window [{self.start}, {self.end}] must lie within "
                f"[1, {panel.n_periods}] with start <= end"
            )
        if self.start < 2:
            raise InsufficientDataError("Treatment must leave at least one pre-period")
        return self


def create_synthetic_geo_data(
    n_geos: int = 40,
    n_periods: int = 90,
    base_outcome: float = 1000,
    seasonality_strength: float = 0.1,
    noise_level: float = 0.02,
    geo_heterogeneity: float = 0.5,
    random_state: int = 42
) -> pd.DataFrame:
    """
    Generate synthetic geo-level panel data for testing.

    Parameters
    ----------
    n_geos : int
        Number of geographic regions
    n_periods : int
        Number of time periods (days)
    base_outcome : float
        Base daily outcome per geo
    seasonality_strength : float
        Amplitude of the shared weekly pattern (0-1)
    noise_level : float
        Random noise level (0-1)
    geo_heterogeneity : float
        Variation in base outcome across geos (0-1)

    Returns
    -------
    pd.DataFrame
        Long-format data with location, time, Y and population columns
    """
    rng = np.random.default_rng(random_state)
    times = np.arange(1, n_periods + 1)

    records = []
    for geo in range(n_geos):
        # Geo-specific baseline
        geo_multiplier = float(np.clip(1 + geo_heterogeneity * rng.standard_normal(), 0.3, 2.0))
        phase_shift = rng.uniform(0, np.pi / 4)

        weekly = seasonality_strength * np.sin(2 * np.pi * times / 7 + phase_shift)
        trend = 0.0005 * times
        noise = noise_level * rng.standard_normal(n_periods)
        outcome = base_outcome * geo_multiplier * (1 + weekly + trend + noise)

        population = int(100000 * geo_multiplier)
        for t, y in zip(times, outcome):
            records.append({
                'location': f'geo_{geo:03d}',
                'time': int(t),
                'Y': max(0.0, float(y)),
                'population': population
            })

    return pd.DataFrame(records)


def create_flat_panel(
    n_locations: int = 40,
    n_periods: int = 90,
    level: float = 100.0,
    noise: float = 0.0,
    random_state: int = 0
) -> Panel:
    """Panel with a constant outcome level, optionally with Gaussian noise."""
    rng = np.random.default_rng(random_state)
    outcomes = np.full((n_locations, n_periods), float(level))
    if noise > 0:
        outcomes = outcomes + noise * rng.standard_normal(outcomes.shape)
    locations = [f'loc_{i:02d}' for i in range(n_locations)]
    return Panel(locations, outcomes)
