"""Evidence network: canonical study contrasts as a treatment multigraph.

Treatments are nodes and each study contrast is an edge. The network is an
immutable value; every operation that changes it returns a new network.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import networkx as nx

from netsynth.exceptions import (
    DisconnectedNetworkError,
    EmptyNetworkError,
    UnknownTreatmentError,
)
from netsynth.logging import get_logger, log_warning
from netsynth.models.network import (
    CanonicalEdge,
    StudyRecord,
    canonicalize,
    normalize_treatment,
)

_logger = get_logger("network")


def _label(raw: str) -> str:
    return " ".join(str(raw).split())


def _spanning_contrasts(edges: list[CanonicalEdge]) -> list[bool]:
    """Flag the contrasts kept from each study, independent of input order.

    Within a study, contrasts are taken in canonical pair order and one is
    kept only if its treatments are not already joined by the study's kept
    contrasts. A study given as all pairwise rows therefore keeps the star on
    its first treatment.
    """
    by_study: dict[str, list[int]] = {}
    for i, edge in enumerate(edges):
        by_study.setdefault(edge.study_id, []).append(i)

    keep = [False] * len(edges)
    for indices in by_study.values():
        study_graph = nx.Graph()
        ordered = sorted(indices, key=lambda i: (edges[i].pair, edges[i].effect, edges[i].std_error))
        for i in ordered:
            a, b = edges[i].pair
            if a in study_graph and b in study_graph and nx.has_path(study_graph, a, b):
                continue
            study_graph.add_edge(a, b)
            keep[i] = True
    return keep


@dataclass(frozen=True)
class EvidenceNetwork:
    """Multigraph of canonical edges, one per study contrast.

    Attributes:
        edges: Canonical edges in insertion order
        labels: Display label (first seen spelling) per normalized treatment
        dropped_edges: Redundant multi-arm contrasts removed on insertion
    """

    edges: tuple[CanonicalEdge, ...] = ()
    labels: dict[str, str] = field(default_factory=dict)
    dropped_edges: tuple[CanonicalEdge, ...] = ()

    @classmethod
    def from_records(cls, records: Iterable[Union[StudyRecord, CanonicalEdge]]) -> EvidenceNetwork:
        """Build a network from study records in order."""
        return cls()._extend(records)

    def add(self, record: Union[StudyRecord, CanonicalEdge]) -> EvidenceNetwork:
        """Return a new network with the record's canonical edge appended.

        Raises:
            DegenerateEdgeError: Self-comparison or non-positive standard error
        """
        return self._extend([record])

    def _extend(self, records: Iterable[Union[StudyRecord, CanonicalEdge]]) -> EvidenceNetwork:
        candidates = list(self.edges) + list(self.dropped_edges)
        labels = dict(self.labels)
        for record in records:
            candidates.append(canonicalize(record))
            for raw in (record.treatment_a, record.treatment_b):
                labels.setdefault(normalize_treatment(raw), _label(raw))

        keep = _spanning_contrasts(candidates)
        edges = [edge for edge, kept in zip(candidates, keep) if kept]
        dropped = [edge for edge, kept in zip(candidates, keep) if not kept]

        previously_dropped = set(self.dropped_edges)
        for edge in dropped:
            if edge not in previously_dropped:
                # Implied by the study's other contrasts (multi-arm duplicate)
                log_warning(
                    _logger,
                    "add_edge",
                    "dropping redundant contrast from multi-arm study",
                    {"study": edge.study_id, "pair": f"{edge.treatment_a} vs {edge.treatment_b}"},
                )

        return EvidenceNetwork(edges=tuple(edges), labels=labels, dropped_edges=tuple(dropped))

    def __len__(self) -> int:
        return len(self.edges)

    @property
    def treatments(self) -> tuple[str, ...]:
        """Treatments in canonical (sorted) order."""
        return tuple(sorted({t for edge in self.edges for t in edge.pair}))

    @property
    def studies(self) -> tuple[str, ...]:
        """Study identifiers in first-seen order."""
        return tuple(dict.fromkeys(edge.study_id for edge in self.edges))

    @property
    def study_count(self) -> int:
        return len(self.studies)

    def label(self, treatment: str) -> str:
        return self.labels.get(treatment, treatment)

    def contains(self, treatment: str) -> bool:
        return normalize_treatment(treatment) in self.treatments

    def comparisons(self, treatment: str) -> Iterator[CanonicalEdge]:
        """Lazily yield the edges touching a treatment."""
        key = normalize_treatment(treatment)
        return (edge for edge in self.edges if edge.touches(key))

    def direct_edges(self, treatment_a: str, treatment_b: str) -> list[CanonicalEdge]:
        pair = tuple(sorted((normalize_treatment(treatment_a), normalize_treatment(treatment_b))))
        return [edge for edge in self.edges if edge.pair == pair]

    def compared_pairs(self) -> list[tuple[str, str]]:
        """Distinct directly compared treatment pairs, sorted."""
        return sorted({edge.pair for edge in self.edges})

    def graph(self) -> nx.MultiGraph:
        """Treatment multigraph with one edge per study contrast."""
        graph = nx.MultiGraph()
        graph.add_nodes_from(self.treatments)
        for edge in self.edges:
            graph.add_edge(edge.treatment_a, edge.treatment_b, study_id=edge.study_id)
        return graph

    def connected_components(self) -> list[set[str]]:
        """Partition treatments into sets reachable via edges, ordered by smallest member."""
        return sorted((set(c) for c in nx.connected_components(self.graph())), key=min)

    @property
    def is_connected(self) -> bool:
        return bool(self.edges) and nx.is_connected(self.graph())

    def has_path(self, treatment_a: str, treatment_b: str) -> bool:
        a, b = normalize_treatment(treatment_a), normalize_treatment(treatment_b)
        graph = self.graph()
        return a in graph and b in graph and nx.has_path(graph, a, b)

    def require_connected(self) -> None:
        """Raise unless the network is non-empty and has a single component.

        Raises:
            EmptyNetworkError: No edges
            DisconnectedNetworkError: More than one component
        """
        if not self.edges:
            raise EmptyNetworkError()
        components = self.connected_components()
        if len(components) > 1:
            raise DisconnectedNetworkError(components)

    def _filtered(self, keep) -> EvidenceNetwork:
        edges = tuple(edge for edge in self.edges if keep(edge))
        remaining = {t for edge in edges for t in edge.pair}
        return EvidenceNetwork(
            edges=edges,
            labels={k: v for k, v in self.labels.items() if k in remaining},
            dropped_edges=tuple(e for e in self.dropped_edges if keep(e)),
        )

    def without_studies(self, study_ids: Iterable[str]) -> EvidenceNetwork:
        excluded = {str(s).strip() for s in study_ids}
        return self._filtered(lambda edge: edge.study_id not in excluded)

    def restricted_to(self, study_ids: Iterable[str]) -> EvidenceNetwork:
        included = {str(s).strip() for s in study_ids}
        return self._filtered(lambda edge: edge.study_id in included)

    def without_pair(self, treatment_a: str, treatment_b: str) -> EvidenceNetwork:
        """Remove every direct edge between two treatments."""
        pair = tuple(sorted((normalize_treatment(treatment_a), normalize_treatment(treatment_b))))
        return self._filtered(lambda edge: edge.pair != pair)

    def to_dict(self) -> dict[str, Any]:
        return {
            "treatments": list(self.treatments),
            "labels": dict(self.labels),
            "studies": list(self.studies),
            "edges": [
                {
                    "study_id": e.study_id,
                    "treatment_a": e.treatment_a,
                    "treatment_b": e.treatment_b,
                    "effect": e.effect,
                    "std_error": e.std_error,
                }
                for e in self.edges
            ],
            "dropped_edges": len(self.dropped_edges),
            "components": [sorted(c) for c in self.connected_components()],
        }


def resolve_reference(network: EvidenceNetwork, reference: Optional[str]) -> str:
    """Normalize a reference treatment, defaulting to the first in canonical order."""
    if reference is None:
        if not network.edges:
            raise EmptyNetworkError()
        return network.treatments[0]
    key = normalize_treatment(reference)
    if key not in network.treatments:
        raise UnknownTreatmentError(key)
    return key
