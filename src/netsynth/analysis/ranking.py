"""Treatment ranking from pooled or posterior relative effects.

References:
    - Rücker G, Schwarzer G. BMC Med Res Methodol 2015;15:58 (P-scores)
    - Salanti G, Ades AE, Ioannidis JPA. J Clin Epidemiol 2011;64:163-171 (SUCRA)
"""

from typing import Optional, Union

import numpy as np
from scipy import stats

from netsynth.models.network import Direction
from netsynth.models.results import (
    PooledResult,
    PosteriorSample,
    RankingResult,
    TreatmentRank,
)

SCORE_TIE_TOLERANCE = 1e-12


class RankingEngine:
    """Ranks treatments by P-score (frequentist) or SUCRA (Bayesian)."""

    def __init__(self, direction: Union[Direction, str] = Direction.SMALLER_IS_BETTER):
        """Initialize the ranking engine.

        Args:
            direction: Whether small or large effects are beneficial
        """
        self.direction = Direction(direction)

    @property
    def _sign(self) -> float:
        return -1.0 if self.direction == Direction.SMALLER_IS_BETTER else 1.0

    def rank(self, result: Union[PooledResult, PosteriorSample]) -> RankingResult:
        if isinstance(result, PosteriorSample):
            return self.rank_posterior(result)
        return self.rank_pooled(result)

    def rank_pooled(self, result: PooledResult) -> RankingResult:
        """P-scores from the normal approximation of each pairwise difference.

        ``P(i beats j) = Φ(sign · (d_i - d_j) / se_ij)``; the P-score of ``i``
        is the mean over all other treatments.
        """
        effects = result.effect_matrix
        se = result.se_matrix
        n = len(result.treatments)

        wins = np.zeros((n, n))
        for i in range(n):
            for j in range(n):
                if i == j:
                    continue
                signed = self._sign * effects[i, j]
                if se[i, j] > 0:
                    wins[i, j] = stats.norm.cdf(signed / se[i, j])
                else:
                    wins[i, j] = 0.5 if signed == 0 else float(signed > 0)

        scores = wins.sum(axis=1) / (n - 1)
        return RankingResult(
            treatments=result.treatments,
            direction=self.direction,
            method="p_score",
            ranks=self._order(result.treatments, scores),
            win_probabilities=wins,
        )

    def rank_posterior(self, sample: PosteriorSample) -> RankingResult:
        """SUCRA and rank probabilities from posterior draws.

        ``P(i beats j)`` is the fraction of draws in which ``i`` is better
        than ``j`` (ties count one half).
        """
        draws = self._sign * sample.treatment_effects  # larger is better after signing
        n_draws, n = draws.shape

        wins = np.zeros((n, n))
        for i in range(n):
            for j in range(n):
                if i == j:
                    continue
                wins[i, j] = np.mean(draws[:, i] > draws[:, j]) + 0.5 * np.mean(
                    draws[:, i] == draws[:, j]
                )

        order = np.argsort(-draws, axis=1, kind="stable")
        ranks = np.empty_like(order)
        ranks[np.arange(n_draws)[:, None], order] = np.arange(1, n + 1)
        rank_probabilities = np.stack(
            [np.mean(ranks == r, axis=0) for r in range(1, n + 1)], axis=1
        )
        mean_ranks = ranks.mean(axis=0)
        sucra = (n - mean_ranks) / (n - 1)

        return RankingResult(
            treatments=sample.treatments,
            direction=self.direction,
            method="sucra",
            ranks=self._order(sample.treatments, sucra, mean_ranks),
            win_probabilities=wins,
            rank_probabilities=rank_probabilities,
        )

    @staticmethod
    def _order(
        treatments: tuple[str, ...],
        scores: np.ndarray,
        mean_ranks: Optional[np.ndarray] = None,
    ) -> tuple[TreatmentRank, ...]:
        """Order by score descending; equal scores share a rank and list by identifier."""
        indices = sorted(range(len(treatments)), key=lambda i: (-scores[i], treatments[i]))
        ranked: list[TreatmentRank] = []
        for position, i in enumerate(indices, start=1):
            if ranked and abs(scores[i] - ranked[-1].score) <= SCORE_TIE_TOLERANCE:
                rank = ranked[-1].rank
            else:
                rank = position
            ranked.append(
                TreatmentRank(
                    treatment=treatments[i],
                    score=float(scores[i]),
                    rank=rank,
                    mean_rank=float(mean_ranks[i]) if mean_ranks is not None else None,
                )
            )
        return tuple(ranked)
