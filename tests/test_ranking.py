"""Tests for P-score and SUCRA treatment ranking."""

import numpy as np
import pytest

from netsynth.analysis.bayesian import BayesianNMA
from netsynth.analysis.frequentist import FrequentistNMA
from netsynth.analysis.network import EvidenceNetwork
from netsynth.analysis.ranking import RankingEngine
from netsynth.exceptions import UnknownTreatmentError
from netsynth.models import Direction, ModelKind, StudyRecord


@pytest.fixture
def network() -> EvidenceNetwork:
    """Effects relative to A: B = 0.5, C = 1.0, D = -0.4."""
    return EvidenceNetwork.from_records(
        [
            StudyRecord("S1", "A", "B", 0.5, 0.2),
            StudyRecord("S2", "A", "C", 1.0, 0.2),
            StudyRecord("S3", "B", "C", 0.5, 0.2),
            StudyRecord("S4", "A", "D", -0.4, 0.2),
        ]
    )


@pytest.fixture
def pooled(network: EvidenceNetwork):
    return FrequentistNMA(model_kind=ModelKind.FIXED).fit(network)


class TestPScores:
    """Tests for frequentist P-scores."""

    def test_win_probabilities_complementary(self, pooled) -> None:
        ranking = RankingEngine().rank(pooled)
        wins = ranking.win_probabilities

        for i in range(len(ranking.treatments)):
            for j in range(len(ranking.treatments)):
                if i != j:
                    assert wins[i, j] + wins[j, i] == pytest.approx(1.0)
        assert np.all(np.diag(wins) == 0.0)

    def test_scores_sum_to_half_the_treatments(self, pooled) -> None:
        ranking = RankingEngine().rank(pooled)

        assert sum(r.score for r in ranking.ranks) == pytest.approx(len(ranking.treatments) / 2)
        assert all(0.0 <= r.score <= 1.0 for r in ranking.ranks)

    def test_smaller_is_better(self, pooled) -> None:
        ranking = RankingEngine(Direction.SMALLER_IS_BETTER).rank(pooled)

        assert ranking.method == "p_score"
        assert ranking.order == ["d", "a", "b", "c"]
        assert [r.rank for r in ranking.ranks] == [1, 2, 3, 4]
        assert ranking.probability_better("D", "C") > 0.99

    def test_larger_is_better(self, pooled) -> None:
        ranking = RankingEngine("larger_is_better").rank(pooled)

        assert ranking.order == ["c", "b", "a", "d"]
        assert ranking.score("C") == max(r.score for r in ranking.ranks)

    def test_direction_reverses_scores(self, pooled) -> None:
        smaller = RankingEngine(Direction.SMALLER_IS_BETTER).rank(pooled)
        larger = RankingEngine(Direction.LARGER_IS_BETTER).rank(pooled)

        for treatment in pooled.treatments:
            assert smaller.score(treatment) == pytest.approx(1 - larger.score(treatment))

    def test_ties_share_rank(self) -> None:
        """Equal scores share a rank and are listed by identifier."""
        network = EvidenceNetwork.from_records(
            [StudyRecord("S1", "A", "Z", 0.5, 0.2), StudyRecord("S2", "A", "M", 0.5, 0.2)]
        )
        pooled = FrequentistNMA(model_kind=ModelKind.FIXED).fit(network, emit_warnings=False)
        ranking = RankingEngine().rank(pooled)

        assert ranking.order == ["a", "m", "z"]
        assert [r.rank for r in ranking.ranks] == [1, 2, 2]

    def test_unknown_treatment(self, pooled) -> None:
        ranking = RankingEngine().rank(pooled)

        with pytest.raises(UnknownTreatmentError):
            ranking.score("Q")

    def test_to_dict(self, pooled) -> None:
        data = RankingEngine().rank(pooled).to_dict()

        assert data["direction"] == "smaller_is_better"
        assert data["rank_probabilities"] is None
        assert [r["treatment"] for r in data["ranks"]] == ["d", "a", "b", "c"]


class TestSucra:
    """Tests for Bayesian SUCRA ranking."""

    @pytest.fixture
    def ranking(self, network: EvidenceNetwork):
        sample = BayesianNMA(
            n_chains=2, n_iterations=500, burn_in=100, tau_prior_bounds=(0.0, 0.5), seed=4
        ).fit(network)
        return RankingEngine(Direction.LARGER_IS_BETTER).rank(sample)

    def test_rank_probabilities(self, ranking) -> None:
        probabilities = ranking.rank_probabilities
        n = len(ranking.treatments)

        assert ranking.method == "sucra"
        assert probabilities.shape == (n, n)
        np.testing.assert_allclose(probabilities.sum(axis=1), 1.0)
        np.testing.assert_allclose(probabilities.sum(axis=0), 1.0)

    def test_sucra_from_mean_rank(self, ranking) -> None:
        n = len(ranking.treatments)
        for entry in ranking.ranks:
            assert entry.score == pytest.approx((n - entry.mean_rank) / (n - 1))

    def test_order_follows_effects(self, ranking) -> None:
        assert ranking.order[0] == "c"
        assert ranking.order[-1] == "d"

    def test_win_probabilities_complementary(self, ranking) -> None:
        wins = ranking.win_probabilities
        n = len(ranking.treatments)

        for i in range(n):
            for j in range(i + 1, n):
                assert wins[i, j] + wins[j, i] == pytest.approx(1.0)
