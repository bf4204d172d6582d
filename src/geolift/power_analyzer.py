"""
Geo Power Simulator
===================

Simulation-based power analysis for geo experiments.

Every candidate treatment group is tested over historical windows with
a lift of known size injected into its real outcomes; power is the share
of windows in which the placebo test detects the injected lift.

Key Features:
- Lazy candidate and window enumeration
- Budget and holdout pruning before any model is fit
- One fit and one placebo distribution per window, reused across effect sizes
- Sequential or process-pool execution with identical results
- Coarse cancellation
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass
from functools import partial
from multiprocessing import Pool
from typing import Iterator, List, NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd

from .config import SimulationConfig
from .estimator import GeoLiftEstimator, compute_effect
from .exceptions import ConfigurationError, GeoLiftError
from .geo_matcher import MarketCandidates
from .inference import InferenceEngine
from .panel import Panel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulationRecord:
    """One simulated test: a candidate group, window and injected effect size."""
    locations: Tuple[str, ...]
    duration: int
    lookback: int  # offset of the window from the end of the panel
    effect_size: float
    treatment_start: int
    treatment_end: int

    # Estimate
    att: float = np.nan  # average ATT over the window
    lift: float = np.nan  # percent lift
    incremental: float = np.nan
    scaled_l2_imbalance: float = np.nan

    # Inference
    p_value: float = np.nan
    significant: bool = False

    # Design
    investment: float = np.nan
    proportion_total_y: float = np.nan
    holdout: float = np.nan

    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error is None

    @property
    def sort_key(self) -> tuple:
        return (self.locations, self.duration, self.lookback, self.effect_size)


class SimulationWindow(NamedTuple):
    """Work unit: a candidate group tested over one historical window."""
    locations: Tuple[str, ...]
    duration: int
    lookback: int
    n_periods: int

    @property
    def treatment_end(self) -> int:
        return self.n_periods - self.lookback

    @property
    def treatment_start(self) -> int:
        return self.treatment_end - self.duration + 1


def records_to_frame(records: List[SimulationRecord]) -> pd.DataFrame:
    """Tabular view of simulation records, one row per record."""
    columns = list(SimulationRecord.__dataclass_fields__)
    frame = pd.DataFrame([asdict(r) for r in records], columns=columns)
    frame['location'] = frame['locations'].map(lambda locs: ', '.join(locs))
    return frame


@dataclass
class PowerSimulationResult:
    """Container for a power simulation run."""
    records: List[SimulationRecord]
    n_windows: int
    n_failed: int  # failed windows
    n_pruned: int  # windows pruned before simulation
    cancelled: bool = False
    runtime: float = 0.0

    def to_frame(self) -> pd.DataFrame:
        return records_to_frame(self.records)

    @property
    def valid_records(self) -> List[SimulationRecord]:
        return [r for r in self.records if r.valid]


def _error_records(window: SimulationWindow, config: SimulationConfig, message: str,
                   **design) -> List[SimulationRecord]:
    return [
        SimulationRecord(
            locations=window.locations,
            duration=window.duration,
            lookback=window.lookback,
            effect_size=e,
            treatment_start=window.treatment_start,
            treatment_end=window.treatment_end,
            error=message,
            **design
        )
        for e in config.effect_size
    ]


def _simulate_window(
    panel: Panel,
    config: SimulationConfig,
    window: SimulationWindow
) -> List[SimulationRecord]:
    """
    Simulate every effect size for one candidate window.

    The panel is cut at the end of the window. Weights, augmentation and
    the placebo distribution are fitted once; each effect size only scales
    the observed treated outcome inside the window.
    """
    start, end = window.treatment_start, window.treatment_end
    locations = window.locations
    n_treated = len(locations)

    share = panel.outcome_share(locations)
    treated_rows = panel.index_of(locations)
    window_total = float(panel.outcomes[treated_rows, start - 1:end].sum())
    design = {'proportion_total_y': share, 'holdout': 1 - share}

    history = panel.truncate(end)
    blocked = set(locations) | set(config.estimator.excluded_donors)
    donor_names = [loc for loc in history.locations if loc not in blocked]
    observed = history.outcomes[treated_rows].mean(axis=0)
    donor_rows = history.index_of(donor_names)
    donor_outcomes = history.outcomes[donor_rows].T

    treated_cov = donor_cov = None
    if config.estimator.use_covariates and history.covariates is not None:
        treated_cov = history.covariates[treated_rows].mean(axis=0)
        donor_cov = np.transpose(history.covariates[donor_rows], (1, 0, 2))

    engine = InferenceEngine(config.estimator)
    try:
        base = GeoLiftEstimator(config.estimator).estimate_arrays(
            observed, donor_outcomes, start, end,
            donor_names=donor_names,
            treated_names=locations,
            n_treated=n_treated,
            treated_covariates=treated_cov,
            donor_covariates=donor_cov
        )
        placebos = engine.placebo_distribution(
            donor_outcomes, donor_names, n_treated, start, end,
            model=base.model, donor_covariates=donor_cov
        )
    except (GeoLiftError, np.linalg.LinAlgError) as e:
        logger.debug("Window %s failed: %s", window, e)
        return _error_records(window, config, f"{type(e).__name__}: {e}", **design)

    counterfactual = base.counterfactual.values
    records = []
    for e in config.effect_size:
        injected = observed.copy()
        injected[start - 1:end] *= 1 + e
        effect = compute_effect(injected, counterfactual, base.baseline, start, end, n_treated)
        inference = engine.evaluate(effect, placebos)

        records.append(SimulationRecord(
            locations=locations,
            duration=window.duration,
            lookback=window.lookback,
            effect_size=e,
            treatment_start=start,
            treatment_end=end,
            att=effect.average_att,
            lift=effect.percent_lift,
            incremental=effect.incremental,
            scaled_l2_imbalance=effect.scaled_l2_imbalance,
            p_value=inference.p_value,
            significant=inference.significant,
            investment=config.cpic * abs(e) * window_total,
            **design
        ))
    return records


class PowerSimulator:
    """
    Power simulation over candidate treatment groups.

    Parameters
    ----------
    config : SimulationConfig
        Candidate sizes, durations, effect sizes, filters and execution mode
    """

    def __init__(self, config: SimulationConfig):
        self.config = config
        self._cancelled = threading.Event()
        self._n_pruned = 0

    def cancel(self):
        """Stop dispatching windows and discard work in flight."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def eligible_locations(self, panel: Panel) -> Tuple[str, ...]:
        """Locations that may be treated: the panel minus excluded markets."""
        config = self.config
        unknown = [
            loc for loc in config.include_markets + config.exclude_markets
            if loc not in panel
        ]
        if unknown:
            raise ConfigurationError(f"Markets not in panel: {unknown}")

        excluded = set(config.exclude_markets)
        pool = tuple(loc for loc in panel.locations if loc not in excluded)
        if not pool:
            raise ConfigurationError("No eligible locations remain after exclusions")
        return pool

    def eligible_durations(self, panel: Panel) -> Tuple[int, ...]:
        """Durations whose earliest window still leaves a pre-period of two or more periods."""
        offset = self.config.lookback_window - 1
        durations = []
        for d in self.config.treatment_periods:
            if panel.n_periods - d - offset > 1:
                durations.append(d)
            else:
                logger.warning(
                    "Duration %d with lookback %d leaves no pre-period in %d periods; skipped",
                    d, self.config.lookback_window, panel.n_periods
                )
        if not durations:
            raise ConfigurationError("No treatment duration fits the panel and lookback window")
        return tuple(durations)

    def candidates(self, panel: Panel) -> MarketCandidates:
        """Lazy candidate treatment groups."""
        pool = self.eligible_locations(panel)
        n_donors = panel.n_locations - len(set(self.config.estimator.excluded_donors))
        if max(self.config.N) >= n_donors:
            raise ConfigurationError(
                f"Test groups of {max(self.config.N)} locations leave no donors"
            )
        return MarketCandidates(
            panel,
            pool,
            self.config.N,
            include=self.config.include_markets,
            max_combinations=self.config.max_combinations
        )

    def work_items(self, panel: Panel) -> Iterator[SimulationWindow]:
        """
        Lazy sequence of simulation windows, pruned by holdout and budget.

        Validation happens eagerly; windows are produced on demand.
        """
        durations = self.eligible_durations(panel)
        candidates = self.candidates(panel)
        return self._windows(panel, candidates, durations)

    def _windows(
        self,
        panel: Panel,
        candidates: MarketCandidates,
        durations: Tuple[int, ...]
    ) -> Iterator[SimulationWindow]:
        config = self.config
        nonzero = [abs(e) for e in config.effect_size if e != 0]
        smallest_effect = min(nonzero) if nonzero else 0.0

        for locations in candidates:
            if config.holdout is not None:
                holdout = 1 - panel.outcome_share(locations)
                low, high = config.holdout
                if not low <= holdout <= high:
                    self._n_pruned += len(durations) * config.lookback_window
                    continue

            rows = panel.index_of(locations)
            for d in durations:
                for o in range(config.lookback_window):
                    if self._cancelled.is_set():
                        return
                    window = SimulationWindow(locations, d, o, panel.n_periods)
                    if config.budget is not None:
                        total = panel.outcomes[rows, window.treatment_start - 1:window.treatment_end].sum()
                        if config.cpic * smallest_effect * total > config.budget:
                            self._n_pruned += 1
                            continue
                    yield window

    def run(self, panel: Panel) -> PowerSimulationResult:
        """
        Simulate every candidate window and effect size.

        Parameters
        ----------
        panel : Panel
            Historical outcome panel

        Returns
        -------
        PowerSimulationResult
            Records sorted by (locations, duration, lookback, effect size)
        """
        started = time.time()
        self._cancelled.clear()
        self._n_pruned = 0
        windows = self.work_items(panel)
        simulate = partial(_simulate_window, panel, self.config)

        batches = []
        if self.config.parallel:
            with Pool(processes=self.config.n_jobs) as pool:
                for batch in pool.imap_unordered(simulate, windows):
                    if self._cancelled.is_set():
                        break
                    batches.append(batch)
        else:
            for window in windows:
                if self._cancelled.is_set():
                    break
                batches.append(simulate(window))

        records = sorted((r for batch in batches for r in batch), key=lambda r: r.sort_key)
        n_failed = sum(1 for batch in batches if batch and not batch[0].valid)
        cancelled = self._cancelled.is_set()

        if n_failed:
            logger.warning("%d of %d simulation windows failed", n_failed, len(batches))
        logger.info(
            "Simulated %d windows (%d records, %d pruned, %d failed)%s",
            len(batches), len(records), self._n_pruned, n_failed,
            " before cancellation" if cancelled else ""
        )

        return PowerSimulationResult(
            records=records,
            n_windows=len(batches),
            n_failed=n_failed,
            n_pruned=self._n_pruned,
            cancelled=cancelled,
            runtime=time.time() - started
        )
