"""
Candidate Market Generation
===========================

Lazy enumeration of candidate treatment groups for market selection.

Key Features:
- Exhaustive combinations when the pool is small enough
- Similarity-seeded groups (most correlated neighbours) beyond the cap
- Forced include markets in every candidate
- Restartable: every iteration starts from the beginning
"""

import logging
import math
from itertools import combinations
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.preprocessing import StandardScaler

from .exceptions import ConfigurationError
from .panel import Panel

logger = logging.getLogger(__name__)


def correlation_distances(panel: Panel, locations: Sequence[str], n_periods: Optional[int] = None) -> np.ndarray:
    """
    Pairwise 1 - correlation distances between standardized location series.

    Parameters
    ----------
    panel : Panel
        Outcome panel
    locations : sequence of str
        Locations to compare
    n_periods : int
        Use only the first ``n_periods`` periods (default: all)
    """
    data = panel.outcomes[panel.index_of(locations)]
    if n_periods is not None:
        data = data[:, :n_periods]

    # Normalize each series over time
    normalized = StandardScaler().fit_transform(data.T).T
    with np.errstate(invalid='ignore', divide='ignore'):
        corr = np.corrcoef(normalized)
    corr = np.nan_to_num(np.atleast_2d(corr), nan=0.0)
    np.fill_diagonal(corr, 1.0)
    return 1 - corr


class MarketCandidates:
    """
    Restartable lazy sequence of candidate treatment groups.

    Parameters
    ----------
    panel : Panel
        Outcome panel
    pool : sequence of str
        Locations eligible for treatment
    sizes : sequence of int
        Candidate group sizes
    include : sequence of str
        Locations that must appear in every candidate
    max_combinations : int
        Cap on candidates per group size
    """

    def __init__(
        self,
        panel: Panel,
        pool: Sequence[str],
        sizes: Sequence[int],
        include: Sequence[str] = (),
        max_combinations: int = 200
    ):
        self.panel = panel
        self.pool = tuple(pool)
        self.sizes = tuple(sizes)
        self.include = tuple(include)
        self.max_combinations = max_combinations
        self._distances = None

        missing = [loc for loc in self.include if loc not in self.pool]
        if missing:
            raise ConfigurationError(f"Include markets are not eligible: {missing}")
        for n in self.sizes:
            if n < len(self.include):
                raise ConfigurationError(
                    f"Group size {n} is smaller than the {len(self.include)} include markets"
                )
            if n > len(self.pool):
                raise ConfigurationError(
                    f"Group size {n} exceeds the {len(self.pool)} eligible markets"
                )

    def __iter__(self) -> Iterator[Tuple[str, ...]]:
        for n in self.sizes:
            yield from self._groups(n)

    def count(self, n: int) -> int:
        """Upper bound on the candidates generated for group size ``n``."""
        free = len(self.pool) - len(self.include)
        return min(math.comb(free, n - len(self.include)), self.max_combinations)

    def _groups(self, n: int) -> Iterator[Tuple[str, ...]]:
        free = [loc for loc in self.pool if loc not in self.include]
        k = n - len(self.include)

        if math.comb(len(free), k) <= self.max_combinations:
            for extra in combinations(free, k):
                yield tuple(sorted(self.include + extra))
            return

        yield from self._similar_groups(free, k)

    def _similar_groups(self, free: List[str], k: int) -> Iterator[Tuple[str, ...]]:
        """Each free location grouped with its most correlated free neighbours."""
        if self._distances is None:
            self._distances = correlation_distances(self.panel, free)
        distances = self._distances

        seen = set()
        for i, seed in enumerate(free):
            order = [j for j in np.argsort(distances[i], kind='stable') if j != i]
            group = tuple(sorted(self.include + (seed,) + tuple(free[j] for j in order[:k - 1])))
            if group in seen:
                continue
            seen.add(group)
            yield group
            if len(seen) >= self.max_combinations:
                return
