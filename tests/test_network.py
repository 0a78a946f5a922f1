"""Tests for canonical edges and the evidence network."""

import math

import pytest

from netsynth.analysis.network import EvidenceNetwork, resolve_reference
from netsynth.exceptions import (
    DegenerateEdgeError,
    DisconnectedNetworkError,
    EmptyNetworkError,
    UnknownTreatmentError,
)
from netsynth.models import CanonicalEdge, StudyRecord, canonicalize, normalize_treatment


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def triangle_records() -> list[StudyRecord]:
    return [
        StudyRecord("S1", "Placebo", "Drug A", 0.5, 0.2),
        StudyRecord("S2", "Placebo", "Drug B", 0.8, 0.25),
        StudyRecord("S3", "Drug A", "Drug B", 0.2, 0.3),
    ]


@pytest.fixture
def two_component_records() -> list[StudyRecord]:
    return [
        StudyRecord("S1", "A", "B", 0.1, 0.2),
        StudyRecord("S2", "C", "D", 0.3, 0.2),
        StudyRecord("S3", "D", "E", -0.2, 0.3),
    ]


# ============================================================================
# Treatment normalization
# ============================================================================


class TestNormalizeTreatment:
    """Tests for treatment identifier normalization."""

    def test_equivalent_spellings(self) -> None:
        """Whitespace, underscores and case do not distinguish treatments."""
        assert normalize_treatment("Drug A") == "drug a"
        assert normalize_treatment(" drug_a ") == "drug a"
        assert normalize_treatment("DRUG  A") == "drug a"

    def test_empty_identifier_rejected(self) -> None:
        with pytest.raises(DegenerateEdgeError):
            normalize_treatment("  ")


# ============================================================================
# Canonicalization
# ============================================================================


class TestCanonicalize:
    """Tests for canonical edge ordering."""

    def test_orders_treatments_lexicographically(self) -> None:
        edge = canonicalize(StudyRecord("S1", "Placebo", "Aspirin", 0.4, 0.1))

        assert edge.pair == ("aspirin", "placebo")
        assert edge.effect == pytest.approx(-0.4)
        assert edge.std_error == 0.1

    def test_already_ordered_keeps_sign(self) -> None:
        edge = canonicalize(StudyRecord("S1", "Aspirin", "Placebo", 0.4, 0.1))

        assert edge.pair == ("aspirin", "placebo")
        assert edge.effect == pytest.approx(0.4)

    def test_idempotent(self) -> None:
        """Canonicalizing an edge twice yields the same edge."""
        once = canonicalize(StudyRecord("S1", "Placebo", "Aspirin", 0.4, 0.1))
        twice = canonicalize(once)

        assert isinstance(twice, CanonicalEdge)
        assert twice == once

    @pytest.mark.parametrize(
        "a, b, effect",
        [("A", "B", 0.3), ("B", "A", 0.3), ("x", "y", -1.5), ("Zeta", "alpha", 0.0)],
    )
    def test_swap_with_negated_effect_is_identical(self, a: str, b: str, effect: float) -> None:
        """Swapping arms and negating the effect gives an identical canonical edge."""
        forward = canonicalize(StudyRecord("S1", a, b, effect, 0.2))
        backward = canonicalize(StudyRecord("S1", b, a, -effect, 0.2))

        assert forward == backward

    def test_self_comparison_rejected(self) -> None:
        """Treatments equal after normalization are a self-comparison."""
        with pytest.raises(DegenerateEdgeError, match="with itself"):
            canonicalize(StudyRecord("S1", "Drug A", "drug_a", 0.1, 0.2))

    @pytest.mark.parametrize("std_error", [0.0, -0.1, math.nan, math.inf])
    def test_invalid_standard_error_rejected(self, std_error: float) -> None:
        with pytest.raises(DegenerateEdgeError, match="standard error"):
            canonicalize(StudyRecord("S1", "A", "B", 0.1, std_error))

    def test_non_finite_effect_rejected(self) -> None:
        with pytest.raises(DegenerateEdgeError, match="non-finite effect"):
            canonicalize(StudyRecord("S1", "A", "B", math.inf, 0.2))

    def test_baseline_sign(self) -> None:
        edge = canonicalize(
            StudyRecord("S1", "B", "C", 0.2, 0.3, baseline_treatment="B", baseline_variance=0.01)
        )
        assert edge.baseline_sign() == -1

        swapped = canonicalize(
            StudyRecord("S1", "C", "B", 0.2, 0.3, baseline_treatment="C", baseline_variance=0.01)
        )
        assert swapped.baseline_sign() == 1

    def test_baseline_dropped_without_variance(self) -> None:
        edge = canonicalize(StudyRecord("S1", "A", "B", 0.2, 0.3, baseline_treatment="A"))
        assert edge.baseline_treatment is None
        assert edge.baseline_variance is None


# ============================================================================
# Evidence network
# ============================================================================


class TestEvidenceNetwork:
    """Tests for EvidenceNetwork construction and queries."""

    def test_from_records(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)

        assert len(network) == 3
        assert network.treatments == ("drug a", "drug b", "placebo")
        assert network.studies == ("S1", "S2", "S3")
        assert network.study_count == 3
        assert network.is_connected

    def test_labels_keep_first_spelling(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(
            triangle_records + [StudyRecord("S4", "PLACEBO", "drug_a", 0.4, 0.3)]
        )

        assert network.label("placebo") == "Placebo"
        assert network.label("drug a") == "Drug A"
        assert network.label("unknown") == "unknown"

    def test_add_returns_new_network(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)
        extended = network.add(StudyRecord("S4", "Placebo", "Drug C", 0.1, 0.2))

        assert len(network) == 3
        assert len(extended) == 4
        assert "drug c" in extended.treatments
        assert not network.contains("Drug C")

    def test_add_rejects_degenerate_edge(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)

        with pytest.raises(DegenerateEdgeError):
            network.add(StudyRecord("S4", "Placebo", "placebo", 0.1, 0.2))
        assert len(network) == 3

    def test_redundant_multiarm_contrast_dropped(self) -> None:
        """A third contrast of a three-arm study is implied by the other two."""
        network = EvidenceNetwork.from_records(
            [
                StudyRecord("S1", "A", "B", 0.5, 0.2),
                StudyRecord("S1", "A", "C", 0.7, 0.2),
                StudyRecord("S1", "B", "C", 0.2, 0.2),
            ]
        )

        assert len(network) == 2
        assert len(network.dropped_edges) == 1
        assert network.dropped_edges[0].pair == ("b", "c")

    def test_pairwise_rows_keep_star_regardless_of_order(self) -> None:
        """All pairwise rows of a three-arm study keep the star on its first treatment."""
        rows = [
            StudyRecord("T", "A", "B", 0.5, 0.2),
            StudyRecord("T", "A", "C", 0.7, 0.2),
            StudyRecord("T", "B", "C", 0.2, 0.2),
        ]
        forward = EvidenceNetwork.from_records(rows)
        backward = EvidenceNetwork.from_records(list(reversed(rows)))

        assert {e.pair for e in forward.edges} == {("a", "b"), ("a", "c")}
        assert set(backward.edges) == set(forward.edges)
        assert [e.pair for e in backward.dropped_edges] == [("b", "c")]

    def test_add_reconsiders_kept_contrasts(self) -> None:
        """Adding a row to a study picks the same contrasts as building it at once."""
        network = EvidenceNetwork.from_records(
            [StudyRecord("T", "B", "C", 0.2, 0.2), StudyRecord("T", "A", "B", 0.5, 0.2)]
        )
        extended = network.add(StudyRecord("T", "A", "C", 0.7, 0.2))

        assert {e.pair for e in extended.edges} == {("a", "b"), ("a", "c")}
        assert [e.pair for e in extended.dropped_edges] == [("b", "c")]

    def test_graph(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(
            triangle_records + [StudyRecord("S4", "Placebo", "Drug A", 0.4, 0.3)]
        )
        graph = network.graph()

        assert set(graph.nodes) == {"drug a", "drug b", "placebo"}
        assert graph.number_of_edges() == 4
        assert graph.number_of_edges("drug a", "placebo") == 2

    def test_same_pair_from_different_studies_kept(self) -> None:
        network = EvidenceNetwork.from_records(
            [StudyRecord("S1", "A", "B", 0.5, 0.2), StudyRecord("S2", "B", "A", -0.4, 0.2)]
        )

        assert len(network) == 2
        assert [e.effect for e in network.direct_edges("a", "b")] == [0.5, 0.4]

    def test_comparisons_is_lazy(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)
        comparisons = network.comparisons("Placebo")

        assert not isinstance(comparisons, list)
        assert {e.study_id for e in comparisons} == {"S1", "S2"}

    def test_compared_pairs(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)

        assert network.compared_pairs() == [
            ("drug a", "drug b"),
            ("drug a", "placebo"),
            ("drug b", "placebo"),
        ]

    def test_connected_components(self, two_component_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(two_component_records)

        assert network.connected_components() == [{"a", "b"}, {"c", "d", "e"}]
        assert not network.is_connected
        assert network.has_path("c", "e")
        assert not network.has_path("a", "e")

    def test_require_connected_raises_with_components(
        self, two_component_records: list[StudyRecord]
    ) -> None:
        network = EvidenceNetwork.from_records(two_component_records)

        with pytest.raises(DisconnectedNetworkError) as exc_info:
            network.require_connected()
        assert exc_info.value.components == [{"a", "b"}, {"c", "d", "e"}]
        assert "2 components" in str(exc_info.value)

    def test_empty_network(self) -> None:
        network = EvidenceNetwork()

        assert len(network) == 0
        assert not network.is_connected
        with pytest.raises(EmptyNetworkError):
            network.require_connected()

    def test_without_studies(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)
        reduced = network.without_studies(["S3"])

        assert reduced.studies == ("S1", "S2")
        assert reduced.is_connected
        assert network.studies == ("S1", "S2", "S3")

    def test_restricted_to(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)
        subset = network.restricted_to(["S1"])

        assert subset.treatments == ("drug a", "placebo")
        assert set(subset.labels) == {"drug a", "placebo"}

    def test_without_pair(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)
        reduced = network.without_pair("Placebo", "Drug A")

        assert reduced.direct_edges("placebo", "drug a") == []
        assert reduced.has_path("placebo", "drug a")

    def test_to_dict(self, triangle_records: list[StudyRecord]) -> None:
        data = EvidenceNetwork.from_records(triangle_records).to_dict()

        assert data["treatments"] == ["drug a", "drug b", "placebo"]
        assert len(data["edges"]) == 3
        assert data["components"] == [["drug a", "drug b", "placebo"]]


class TestResolveReference:
    """Tests for reference treatment resolution."""

    def test_defaults_to_first_treatment(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)
        assert resolve_reference(network, None) == "drug a"

    def test_normalizes(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)
        assert resolve_reference(network, " PLACEBO ") == "placebo"

    def test_unknown_treatment(self, triangle_records: list[StudyRecord]) -> None:
        network = EvidenceNetwork.from_records(triangle_records)

        with pytest.raises(UnknownTreatmentError) as exc_info:
            resolve_reference(network, "Drug Z")
        assert exc_info.value.treatment == "drug z"
