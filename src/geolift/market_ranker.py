"""
Market Ranker
=============

Aggregates power simulation records into one ranked row per candidate
treatment group and test duration.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from .config import SimulationConfig
from .power_analyzer import SimulationRecord, records_to_frame

logger = logging.getLogger(__name__)


RANK_COLUMNS = [
    'rank', 'location', 'duration', 'EffectSize', 'Power', 'AvgATT',
    'Average_MDE', 'AvgScaledL2Imbalance', 'Investment', 'ProportionTotal_Y',
    'Holdout', 'abs_lift_in_zero', 'n_failed', 'score'
]

CURVE_COLUMNS = [
    'location', 'duration', 'EffectSize', 'Power', 'AvgATT', 'AvgLift',
    'AvgScaledL2Imbalance', 'Investment', 'ProportionTotal_Y', 'Holdout', 'n_windows'
]


def _normalize(values: pd.Series) -> pd.Series:
    """Min-max scale to [0, 1]; constant or missing columns map to 0."""
    low, high = values.min(), values.max()
    if not np.isfinite(high - low) or high - low <= 0:
        return pd.Series(0.0, index=values.index)
    return ((values - low) / (high - low)).fillna(0.0)


def _with_group_ids(frame: pd.DataFrame) -> pd.DataFrame:
    """Attach an integer id per location tuple, ordered like the sorted tuples."""
    order = {locs: i for i, locs in enumerate(sorted(set(frame['locations'])))}
    return frame.assign(group=[order[locs] for locs in frame['locations']])


def competition_ranks(scores: np.ndarray, tolerance: float = 0.0) -> np.ndarray:
    """
    Integer ranks of already sorted scores (1, 2, 2, 4, ...).

    A score within ``tolerance`` of its predecessor shares the predecessor's
    rank, so ties chain.
    """
    ranks = np.empty(len(scores), dtype=int)
    for i, score in enumerate(scores):
        if i > 0 and score - scores[i - 1] <= tolerance:
            ranks[i] = ranks[i - 1]
        else:
            ranks[i] = i + 1
    return ranks


class MarketRanker:
    """
    Rank candidate test designs.

    Lower EffectSize (MDE), imbalance, abs_lift_in_zero and investment
    and higher power improve the combined score. Designs that never reach
    the target power rank last.

    Parameters
    ----------
    config : SimulationConfig
        Target power, MDE interpolation, rank weights, tie tolerance and budget
    """

    def __init__(self, config: SimulationConfig):
        self.config = config

    def power_curves(self, records: List[SimulationRecord]) -> pd.DataFrame:
        """
        Power and average estimates per (location set, duration, effect size).

        Failed records are excluded.
        """
        return self._curves(_with_group_ids(records_to_frame(records)))[CURVE_COLUMNS]

    def _curves(self, frame: pd.DataFrame) -> pd.DataFrame:
        valid = frame[frame['error'].isna()]
        if valid.empty:
            return pd.DataFrame(columns=['group'] + CURVE_COLUMNS)

        curves = valid.groupby(['group', 'duration', 'effect_size'], sort=True).agg(
            location=('location', 'first'),
            Power=('significant', 'mean'),
            AvgATT=('att', 'mean'),
            AvgLift=('lift', 'mean'),
            AvgScaledL2Imbalance=('scaled_l2_imbalance', 'mean'),
            Investment=('investment', 'mean'),
            ProportionTotal_Y=('proportion_total_y', 'first'),
            Holdout=('holdout', 'first'),
            n_windows=('lookback', 'nunique'),
        ).reset_index()
        curves = curves.rename(columns={'effect_size': 'EffectSize'})
        curves['Power'] = curves['Power'].astype(float)
        return curves[['group'] + CURVE_COLUMNS]

    def rank(self, records: List[SimulationRecord]) -> pd.DataFrame:
        """
        Rank every (location set, duration) group.

        Parameters
        ----------
        records : list of SimulationRecord
            Output of PowerSimulator.run

        Returns
        -------
        pd.DataFrame
            One row per group, ordered by rank
        """
        frame = records_to_frame(records)
        if frame.empty:
            return pd.DataFrame(columns=RANK_COLUMNS)

        frame = _with_group_ids(frame)
        curves = self._curves(frame)
        failed = (
            frame[frame['error'].notna()]
            .groupby(['group', 'duration'])['lookback'].nunique()
        )

        rows = []
        for (group, duration), members in frame.groupby(['group', 'duration'], sort=True):
            curve = curves[(curves['group'] == group) & (curves['duration'] == duration)]
            row = self._summarize(curve)
            row.update(
                group=group,
                location=members['location'].iloc[0],
                duration=int(duration),
                n_failed=int(failed.get((group, duration), 0))
            )
            rows.append(row)

        table = pd.DataFrame(rows)

        budget = self.config.budget
        if budget is not None:
            over = table['Investment'] > budget
            if over.any():
                logger.debug("Dropping %d designs over budget %.2f", int(over.sum()), budget)
            table = table[~over]

        return self._assign_ranks(table.reset_index(drop=True))

    def _summarize(self, curve: pd.DataFrame) -> dict:
        """Metrics of one group at its minimum detectable effect."""
        row = dict.fromkeys(
            ['EffectSize', 'Power', 'AvgATT', 'Average_MDE', 'AvgScaledL2Imbalance',
             'Investment', 'ProportionTotal_Y', 'Holdout', 'abs_lift_in_zero'],
            np.nan
        )
        if curve.empty:
            return row

        zero = curve[curve['EffectSize'] == 0]
        if not zero.empty:
            row['abs_lift_in_zero'] = abs(float(zero['AvgLift'].iloc[0]))

        effect, point = self._select_mde(curve)
        if point is None:
            # Never reaches the target: report the most powerful design
            nonzero = curve[curve['EffectSize'] != 0]
            if nonzero.empty:
                return row
            point = nonzero.assign(_abs=nonzero['EffectSize'].abs()).sort_values(
                ['Power', '_abs'], ascending=[False, True]
            ).iloc[0]
            investment = point['Investment']
        else:
            investment = point['Investment'] * abs(effect) / abs(point['EffectSize'])

        row.update(
            EffectSize=effect,
            Power=float(point['Power']),
            AvgATT=float(point['AvgATT']),
            Average_MDE=float(point['AvgLift']),
            AvgScaledL2Imbalance=float(point['AvgScaledL2Imbalance']),
            Investment=float(investment),
            ProportionTotal_Y=float(point['ProportionTotal_Y']),
            Holdout=float(point['Holdout'])
        )
        return row

    def _select_mde(self, curve: pd.DataFrame) -> Tuple[float, Optional[pd.Series]]:
        """
        Smallest absolute non-zero effect reaching the target power.

        A positive effect wins a tie on magnitude.
        """
        target = self.config.target_power
        nonzero = curve[curve['EffectSize'] != 0]
        passing = nonzero[nonzero['Power'] >= target]
        if passing.empty:
            return np.nan, None

        passing = passing.assign(
            _abs=passing['EffectSize'].abs(),
            _negative=passing['EffectSize'] < 0
        )
        point = passing.sort_values(['_abs', '_negative']).iloc[0]
        effect = float(point['EffectSize'])

        if self.config.interpolate_mde:
            effect = self._interpolate(curve, point, target)
        return effect, point

    @staticmethod
    def _interpolate(curve: pd.DataFrame, point: pd.Series, target: float) -> float:
        """Linear crossing of the target between ``point`` and the next smaller effect."""
        effect = float(point['EffectSize'])
        sign = np.sign(effect)
        smaller = curve[
            (np.sign(curve['EffectSize']) * sign >= 0)
            & (curve['EffectSize'].abs() < abs(effect))
        ]
        if smaller.empty:
            return effect

        previous = smaller.loc[smaller['EffectSize'].abs().idxmax()]
        p0, p1 = float(previous['Power']), float(point['Power'])
        if p0 >= target or p1 <= p0:
            return effect

        e0 = float(previous['EffectSize'])
        return e0 + (target - p0) * (effect - e0) / (p1 - p0)

    def _assign_ranks(self, table: pd.DataFrame) -> pd.DataFrame:
        """Weighted score over normalised metrics and competition ranks."""
        if table.empty:
            return pd.DataFrame(columns=RANK_COLUMNS)

        weights = self.config.rank_weights
        qualified = table['EffectSize'].notna()
        scored = table[qualified]

        score = (
            weights.effect_size * _normalize(scored['EffectSize'].abs())
            + weights.power * _normalize(-scored['Power'])
            + weights.imbalance * _normalize(scored['AvgScaledL2Imbalance'])
            + weights.abs_lift_in_zero * _normalize(scored['abs_lift_in_zero'])
            + weights.investment * _normalize(scored['Investment'])
        ) / sum(weights.as_dict().values())

        table = table.assign(score=np.nan)
        table.loc[qualified, 'score'] = score

        table = table.assign(_unranked=~qualified).sort_values(
            ['_unranked', 'score', 'group', 'duration'], na_position='last'
        ).reset_index(drop=True)

        n_ranked = int(qualified.sum())
        ranks = np.full(len(table), n_ranked + 1, dtype=int)
        ranks[:n_ranked] = competition_ranks(
            table['score'].to_numpy()[:n_ranked], self.config.tie_tolerance
        )
        table['rank'] = ranks

        return table[RANK_COLUMNS]
