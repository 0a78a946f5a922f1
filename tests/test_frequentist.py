"""Tests for the frequentist consistency model."""

import math
import warnings

import numpy as np
import pytest

from netsynth.analysis.frequentist import (
    FrequentistNMA,
    NetworkDesign,
    sampling_covariance,
    within_study_structure,
)
from netsynth.analysis.network import EvidenceNetwork
from netsynth.exceptions import (
    DisconnectedNetworkError,
    EmptyNetworkError,
    HeterogeneityWarning,
    UnknownTreatmentError,
)
from netsynth.models import ModelKind, StudyRecord, TauEstimator, canonicalize


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def three_study_network() -> EvidenceNetwork:
    """Three studies; the second compares A with both B and C."""
    return EvidenceNetwork.from_records(
        [
            StudyRecord("Study1", "A", "B", 0.70, 0.20),
            StudyRecord("Study2", "A", "B", 0.30, 0.25),
            StudyRecord("Study2", "A", "C", 0.10, 0.30),
            StudyRecord("Study3", "A", "B", 1.00, 0.30),
        ]
    )


@pytest.fixture
def heterogeneous_pair() -> EvidenceNetwork:
    """Three A-vs-B studies with equal SEs and widely spread effects."""
    return EvidenceNetwork.from_records(
        [
            StudyRecord("S1", "A", "B", 0.0, 0.1),
            StudyRecord("S2", "A", "B", 1.0, 0.1),
            StudyRecord("S3", "A", "B", 2.0, 0.1),
        ]
    )


@pytest.fixture
def spanning_tree() -> EvidenceNetwork:
    """A chain A-B-C-D with one study per edge."""
    return EvidenceNetwork.from_records(
        [
            StudyRecord("S1", "A", "B", 0.5, 0.2),
            StudyRecord("S2", "C", "B", -0.3, 0.3),
            StudyRecord("S3", "C", "D", -0.2, 0.25),
        ]
    )


# ============================================================================
# Fixed effect
# ============================================================================


class TestFixedEffect:
    """Tests for the fixed-effect consistency model."""

    def test_three_study_scenario(self, three_study_network: EvidenceNetwork) -> None:
        """B's effect is the inverse-variance mean of the three A-vs-B observations."""
        result = FrequentistNMA(model_kind=ModelKind.FIXED).fit(
            three_study_network, reference_treatment="A"
        )

        weights = [1 / 0.20**2, 1 / 0.25**2, 1 / 0.30**2]
        expected = (weights[0] * 0.70 + weights[1] * 0.30 + weights[2] * 1.00) / sum(weights)

        assert result.effect("B") == pytest.approx(expected)
        assert result.effect("B") == pytest.approx(0.641, abs=1e-3)
        assert result.se("B") == pytest.approx(math.sqrt(1 / sum(weights)))
        assert result.effect("C") == pytest.approx(0.10)
        assert result.k == 3
        assert result.n_edges == 4
        assert result.heterogeneity.df == 2
        assert math.isfinite(result.heterogeneity.q_statistic)
        assert result.heterogeneity.tau_squared == 0.0

    def test_q_statistic(self, three_study_network: EvidenceNetwork) -> None:
        result = FrequentistNMA(model_kind="fixed").fit(three_study_network)

        b = result.effect("b")
        expected_q = (
            (0.70 - b) ** 2 / 0.04 + (0.30 - b) ** 2 / 0.0625 + (1.00 - b) ** 2 / 0.09
        )
        assert result.heterogeneity.q_statistic == pytest.approx(expected_q)

    def test_spanning_tree_path_sums(self, spanning_tree: EvidenceNetwork) -> None:
        """Without redundant edges every pooled effect is the sum along the path."""
        result = FrequentistNMA(model_kind=ModelKind.FIXED).fit(
            spanning_tree, emit_warnings=False
        )

        assert result.heterogeneity.df == 0
        assert result.heterogeneity.tau_squared == 0.0
        assert result.effect("b", "a") == pytest.approx(0.5)
        assert result.effect("c", "a") == pytest.approx(0.8)
        assert result.effect("d", "a") == pytest.approx(0.6)
        assert result.effect("d", "b") == pytest.approx(0.1)
        assert result.se("d", "a") == pytest.approx(math.sqrt(0.04 + 0.09 + 0.0625))

    def test_effect_matrix_antisymmetric(self, three_study_network: EvidenceNetwork) -> None:
        result = FrequentistNMA(model_kind=ModelKind.FIXED).fit(three_study_network)

        np.testing.assert_allclose(result.effect_matrix, -result.effect_matrix.T)
        np.testing.assert_allclose(result.se_matrix, result.se_matrix.T)
        assert np.all(np.diag(result.se_matrix) == 0)

    def test_result_arrays_read_only(self, three_study_network: EvidenceNetwork) -> None:
        result = FrequentistNMA(model_kind=ModelKind.FIXED).fit(three_study_network)

        with pytest.raises(ValueError):
            result.effect_matrix[0, 1] = 1.0

    def test_reference_changes_only_the_zero_point(
        self, three_study_network: EvidenceNetwork
    ) -> None:
        model = FrequentistNMA(model_kind=ModelKind.FIXED)
        by_a = model.fit(three_study_network, reference_treatment="A")
        by_c = model.fit(three_study_network, reference_treatment="C")

        assert by_c.reference_treatment == "c"
        assert by_c.effect("b", "a") == pytest.approx(by_a.effect("b", "a"))
        assert by_c.effect("a") == pytest.approx(-0.10)

    def test_confidence_and_prediction_intervals(
        self, three_study_network: EvidenceNetwork
    ) -> None:
        result = FrequentistNMA(model_kind=ModelKind.FIXED).fit(three_study_network)
        ci = result.confidence_interval("b")

        assert ci.lower == pytest.approx(result.effect("b") - 1.959964 * result.se("b"), abs=1e-5)
        assert ci.upper == pytest.approx(result.effect("b") + 1.959964 * result.se("b"), abs=1e-5)
        # tau² = 0, so the prediction interval equals the confidence interval
        pi = result.prediction_interval("b")
        assert pi.lower == pytest.approx(ci.lower)
        assert pi.upper == pytest.approx(ci.upper)
        assert 0 < result.p_value("b") < 0.05


# ============================================================================
# Random effects
# ============================================================================


class TestRandomEffects:
    """Tests for between-study variance estimation."""

    def test_dersimonian_laird(self, heterogeneous_pair: EvidenceNetwork) -> None:
        """With two treatments the generalized estimator reduces to DerSimonian-Laird."""
        result = FrequentistNMA(tau_estimator=TauEstimator.DERSIMONIAN_LAIRD).fit(
            heterogeneous_pair
        )

        # Q = 200, df = 2, C = 300 - 100 = 200
        assert result.heterogeneity.q_statistic == pytest.approx(200.0)
        assert result.heterogeneity.tau_squared == pytest.approx(0.99)
        assert result.heterogeneity.i_squared == pytest.approx(99.0)
        assert result.effect("b") == pytest.approx(1.0)
        assert result.se("b") == pytest.approx(math.sqrt(1.0 / 3))

    def test_reml(self, heterogeneous_pair: EvidenceNetwork) -> None:
        """Equal within-study variances: REML gives the sample variance minus se²."""
        result = FrequentistNMA(tau_estimator=TauEstimator.REML).fit(heterogeneous_pair)

        assert result.heterogeneity.tau_squared == pytest.approx(0.99, rel=1e-6)
        assert result.heterogeneity.converged
        assert result.heterogeneity.tau_estimator == "REML"

    def test_ml(self, heterogeneous_pair: EvidenceNetwork) -> None:
        """ML divides by n rather than n - 1."""
        result = FrequentistNMA(tau_estimator="ML").fit(heterogeneous_pair)

        assert result.heterogeneity.tau_squared == pytest.approx(2 / 3 - 0.01, rel=1e-6)
        assert result.heterogeneity.converged

    @pytest.mark.parametrize("estimator", list(TauEstimator))
    def test_tau_squared_never_negative(self, estimator: TauEstimator) -> None:
        """Effects closer together than their SEs imply give tau² = 0."""
        network = EvidenceNetwork.from_records(
            [
                StudyRecord("S1", "A", "B", 0.50, 0.3),
                StudyRecord("S2", "A", "B", 0.52, 0.3),
                StudyRecord("S3", "A", "C", 0.20, 0.3),
                StudyRecord("S4", "B", "C", -0.31, 0.3),
            ]
        )
        result = FrequentistNMA(tau_estimator=estimator).fit(network)

        assert result.heterogeneity.tau_squared >= 0.0

    def test_homogeneous_effects_collapse_to_fixed(self) -> None:
        """Identical effects give tau² = 0 and fixed-effect weights."""
        network = EvidenceNetwork.from_records(
            [
                StudyRecord("S1", "A", "B", 0.4, 0.2),
                StudyRecord("S2", "A", "B", 0.4, 0.3),
                StudyRecord("S3", "A", "C", 0.1, 0.25),
                StudyRecord("S4", "B", "C", -0.3, 0.2),
            ]
        )
        random_fit = FrequentistNMA(model_kind=ModelKind.RANDOM).fit(network)
        fixed_fit = FrequentistNMA(model_kind=ModelKind.FIXED).fit(network)

        assert random_fit.heterogeneity.tau_squared == pytest.approx(0.0, abs=1e-12)
        assert random_fit.effect("b") == pytest.approx(fixed_fit.effect("b"))
        assert random_fit.se("c") == pytest.approx(fixed_fit.se("c"))

    def test_supplied_tau_squared(self, heterogeneous_pair: EvidenceNetwork) -> None:
        result = FrequentistNMA().fit(heterogeneous_pair, tau_squared=0.5)

        assert result.heterogeneity.tau_squared == 0.5
        assert result.heterogeneity.tau_estimator == "fixed"
        assert result.se("b") == pytest.approx(math.sqrt(0.51 / 3))

    def test_prediction_interval_wider(self, heterogeneous_pair: EvidenceNetwork) -> None:
        result = FrequentistNMA().fit(heterogeneous_pair)
        ci = result.confidence_interval("b")
        pi = result.prediction_interval("b")

        assert pi.lower < ci.lower
        assert pi.upper > ci.upper

    def test_audit_trail(self, heterogeneous_pair: EvidenceNetwork) -> None:
        result = FrequentistNMA().fit(heterogeneous_pair)
        steps = [step["step_name"] for step in result.audit_trail["steps"]]

        assert steps == ["design", "heterogeneity", "tau_squared", "pooled_effects"]
        assert result.audit_trail["method_name"] == "random_effects (DL)"


# ============================================================================
# Degenerate networks
# ============================================================================


class TestDegenerateNetworks:
    """Tests for networks without redundant evidence and structural errors."""

    def test_single_study(self) -> None:
        """A single A-vs-B study has no heterogeneity information."""
        network = EvidenceNetwork.from_records([StudyRecord("S1", "A", "B", 0.3, 0.2)])

        with pytest.warns(HeterogeneityWarning, match="df <= 0"):
            result = FrequentistNMA().fit(network)

        assert result.heterogeneity.tau_squared == 0.0
        assert result.heterogeneity.i_squared == 0.0
        assert result.heterogeneity.df == 0
        assert result.effect("b") == pytest.approx(0.3)
        assert result.se("b") == pytest.approx(0.2)
        assert any("df <= 0" in w for w in result.warnings)
        assert result.audit_trail["warnings"]

    def test_warnings_can_be_suppressed(self) -> None:
        network = EvidenceNetwork.from_records([StudyRecord("S1", "A", "B", 0.3, 0.2)])

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            result = FrequentistNMA().fit(network, emit_warnings=False)
        assert result.warnings

    def test_disconnected(self) -> None:
        network = EvidenceNetwork.from_records(
            [StudyRecord("S1", "A", "B", 0.3, 0.2), StudyRecord("S2", "C", "D", 0.1, 0.2)]
        )

        with pytest.raises(DisconnectedNetworkError):
            FrequentistNMA().fit(network)

    def test_empty(self) -> None:
        with pytest.raises(EmptyNetworkError):
            FrequentistNMA().fit(EvidenceNetwork())

    def test_unknown_reference(self, three_study_network: EvidenceNetwork) -> None:
        with pytest.raises(UnknownTreatmentError):
            FrequentistNMA().fit(three_study_network, reference_treatment="Z")


# ============================================================================
# Multi-arm covariance
# ============================================================================


class TestMultiArmCovariance:
    """Tests for the covariance structure of multi-arm contrasts."""

    @pytest.fixture
    def three_arm_edges(self):
        records = [
            StudyRecord("S1", "A", "B", 0.5, 0.3, baseline_treatment="A", baseline_variance=0.04),
            StudyRecord("S1", "A", "C", 0.7, 0.3, baseline_treatment="A", baseline_variance=0.04),
        ]
        return [canonicalize(r) for r in records]

    def test_shared_baseline_covariance(self, three_arm_edges) -> None:
        covariance = sampling_covariance(three_arm_edges, correct_multiarm=True)

        assert covariance[0, 0] == pytest.approx(0.09)
        assert covariance[0, 1] == pytest.approx(0.04)

    def test_independence_without_correction(self, three_arm_edges) -> None:
        covariance = sampling_covariance(three_arm_edges, correct_multiarm=False)
        assert covariance[0, 1] == 0.0

    def test_within_study_structure(self, three_arm_edges) -> None:
        structure = within_study_structure(three_arm_edges)

        np.testing.assert_allclose(structure, [[1.0, 0.5], [0.5, 1.0]])

    def test_design_matrix(self, three_arm_edges) -> None:
        network = EvidenceNetwork.from_records(three_arm_edges)
        design = NetworkDesign(network, "a")

        assert design.parameters == ["b", "c"]
        np.testing.assert_allclose(design.X, [[1.0, 0.0], [0.0, 1.0]])
        assert design.df == 0

    def test_multiarm_study_effects(self, three_arm_edges) -> None:
        """A lone three-arm study reproduces its own contrasts."""
        network = EvidenceNetwork.from_records(three_arm_edges)
        result = FrequentistNMA(model_kind=ModelKind.FIXED).fit(network, emit_warnings=False)

        assert result.effect("b") == pytest.approx(0.5)
        assert result.effect("c") == pytest.approx(0.7)
        # Var(C - B) = 0.09 + 0.09 - 2 * 0.04
        assert result.se("c", "b") == pytest.approx(math.sqrt(0.10))

    def test_pairwise_rows_independent_of_order(self) -> None:
        """A three-arm study given as all its pairwise rows pools the same either way."""
        rows = [
            StudyRecord("S1", "A", "B", 0.4, 0.2),
            StudyRecord("S2", "B", "C", 0.3, 0.25),
            StudyRecord("T", "A", "B", 0.5, 0.3),
            StudyRecord("T", "A", "C", 0.9, 0.3),
            StudyRecord("T", "B", "C", 0.2, 0.3),
        ]
        model = FrequentistNMA(model_kind=ModelKind.FIXED)
        forward = model.fit(EvidenceNetwork.from_records(rows), reference_treatment="A")
        backward = model.fit(
            EvidenceNetwork.from_records(list(reversed(rows))), reference_treatment="A"
        )

        assert backward.effect("c") == pytest.approx(forward.effect("c"))
        assert backward.se("c") == pytest.approx(forward.se("c"))
        assert backward.effect("b") == pytest.approx(forward.effect("b"))
