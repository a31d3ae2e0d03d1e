"""Group consolidation for duplicate detection passes.

Duplicate pairs found during a pass are edges of an undirected graph over
incident ids. Groups are the connected components of that graph (union-find),
so a record reached from two anchors, or already grouped by a previous pass,
always ends up with exactly one label.

Per-pass state lives in a ``DuplicatePass`` arena, never in module globals:
    pass_state = DuplicatePass(run_id, records)
    consolidator.resolve_anchor(pass_state, anchor, duplicate_ids)
    labels = consolidator.materialize(pass_state)
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union
import logging
import threading

from src.duplicate_detection.models import (
    NO_DUPLICATE,
    DuplicateGroup,
    IncidentRecord,
    build_canonical_label,
)

logger = logging.getLogger(__name__)


PairMember = Union[IncidentRecord, str]


def _sort_key(record: IncidentRecord) -> Tuple[str, str]:
    return (record.incident_number, record.incident_id)


def _member_id(member: PairMember, pool: Dict[str, IncidentRecord]) -> str:
    if isinstance(member, IncidentRecord):
        pool.setdefault(member.incident_id, member)
        return member.incident_id
    return member


class DuplicatePass:
    """Mutable state of one duplicate detection pass.

    The resolved set, the label map and the pair collection each have their
    own lock. Evaluator workers only touch the pair collection, through
    ``add_pair``.
    """

    def __init__(self, run_id: str, records: Iterable[IncidentRecord]):
        self.run_id = run_id
        self.records: Dict[str, IncidentRecord] = {r.incident_id: r for r in records}
        self.prior_groups: List[List[str]] = []

        self._resolved: Set[str] = set()
        self._resolved_lock = threading.Lock()
        self._labels: Dict[str, str] = {}
        self._labels_lock = threading.Lock()
        self._pairs: Set[Tuple[str, str]] = set()
        self._pairs_lock = threading.Lock()

    def add_pair(self, incident_id_a: str, incident_id_b: str) -> None:
        """Record an undirected duplicate edge. Safe to call from worker threads."""
        if incident_id_a == incident_id_b:
            return
        edge = tuple(sorted((incident_id_a, incident_id_b)))
        with self._pairs_lock:
            self._pairs.add(edge)

    def pairs(self) -> List[Tuple[str, str]]:
        with self._pairs_lock:
            return sorted(self._pairs)

    def is_resolved(self, incident_id: str) -> bool:
        with self._resolved_lock:
            return incident_id in self._resolved

    def mark_resolved(self, incident_ids: Iterable[str]) -> None:
        with self._resolved_lock:
            self._resolved.update(incident_ids)

    def set_label(self, incident_id: str, label: str) -> None:
        with self._labels_lock:
            self._labels[incident_id] = label

    def labels(self) -> Dict[str, str]:
        with self._labels_lock:
            return dict(self._labels)

    def seed_prior_groups(self) -> int:
        """Load groups persisted by earlier passes into the arena.

        Records sharing an identical well-formed label that contains their own
        incident number form one prior group. Returns the number of groups.
        """
        by_label: Dict[str, List[str]] = {}
        for record in sorted(self.records.values(), key=_sort_key):
            if record.is_resolved():
                by_label.setdefault(record.duplicate_label, []).append(record.incident_id)

        self.prior_groups = [ids for _, ids in sorted(by_label.items())]
        return len(self.prior_groups)


class DuplicateGraph:
    """Union-find over incident ids."""

    def __init__(self):
        self._parent: Dict[str, str] = {}

    def add(self, node: str) -> None:
        self._parent.setdefault(node, node)

    def find(self, node: str) -> str:
        self.add(node)
        root = node
        while self._parent[root] != root:
            root = self._parent[root]
        # Path compression
        while self._parent[node] != root:
            self._parent[node], node = root, self._parent[node]
        return root

    def union(self, node_a: str, node_b: str) -> None:
        root_a, root_b = self.find(node_a), self.find(node_b)
        if root_a == root_b:
            return
        # Smallest id becomes the root so the structure is order independent
        if root_b < root_a:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a

    def components(self) -> List[List[str]]:
        """Return every component as a sorted id list, ordered by first member."""
        grouped: Dict[str, List[str]] = {}
        for node in self._parent:
            grouped.setdefault(self.find(node), []).append(node)
        return sorted(sorted(members) for members in grouped.values())


class GroupConsolidator:
    """Turns per-anchor duplicate findings into canonical group labels."""

    def resolve_anchor(
        self,
        duplicate_pass: DuplicatePass,
        anchor: IncidentRecord,
        duplicate_ids: Sequence[str],
    ) -> None:
        """Resolve one anchor after its candidates have been evaluated.

        The anchor and its duplicates are marked resolved so they are skipped
        as anchors later in the pass. The anchor gets a provisional
        NO_DUPLICATE label; ``materialize`` replaces it with the group label
        when an edge reaches it.
        """
        members = [anchor.incident_id] + sorted(set(duplicate_ids) - {anchor.incident_id})
        duplicate_pass.mark_resolved(members)
        duplicate_pass.set_label(anchor.incident_id, NO_DUPLICATE)

        logger.debug(
            "anchor_resolved",
            extra={
                "event": "anchor_resolved",
                "run_id": duplicate_pass.run_id,
                "incident_id": anchor.incident_id,
                "duplicates": len(members) - 1,
            },
        )

    def _build_graph(self, duplicate_pass: DuplicatePass) -> Tuple[DuplicateGraph, Set[str]]:
        graph = DuplicateGraph()
        for members in duplicate_pass.prior_groups:
            for member in members:
                graph.add(member)
            for other in members[1:]:
                graph.union(members[0], other)

        pairs = duplicate_pass.pairs()
        for incident_id_a, incident_id_b in pairs:
            graph.union(incident_id_a, incident_id_b)

        touched_roots = {graph.find(incident_id_a) for incident_id_a, _ in pairs}
        return graph, touched_roots

    def groups(self, duplicate_pass: DuplicatePass) -> List[DuplicateGroup]:
        """Groups whose membership was touched by an edge of this pass.

        Prior groups that gained no new edge are not returned; their labels
        are already correct in the record store.
        """
        graph, touched_roots = self._build_graph(duplicate_pass)
        result = []
        for component in graph.components():
            if graph.find(component[0]) not in touched_roots:
                continue
            members = sorted(
                (duplicate_pass.records[incident_id] for incident_id in component),
                key=_sort_key,
            )
            numbers = [m.incident_number for m in members]
            label = build_canonical_label(numbers)
            if label == NO_DUPLICATE:
                # Members sharing one incident number collapse to a single entry
                continue
            result.append(
                DuplicateGroup(
                    label=label,
                    incident_ids=[m.incident_id for m in members],
                    incident_numbers=numbers,
                )
            )
        return result

    def materialize(self, duplicate_pass: DuplicatePass) -> Dict[str, str]:
        """Compute the final label of every record touched by this pass.

        Returns:
            Mapping of incident_id to canonical group label or NO_DUPLICATE.
        """
        labels = duplicate_pass.labels()
        for group in self.groups(duplicate_pass):
            for incident_id in group.incident_ids:
                labels[incident_id] = group.label
        return labels

    def consolidate(
        self,
        anchors: Sequence[IncidentRecord],
        duplicate_pairs: Iterable[Tuple[PairMember, PairMember]],
        records: Optional[Mapping[str, IncidentRecord]] = None,
        run_id: str = "consolidate",
    ) -> Dict[str, str]:
        """Consolidate a complete set of (anchor, candidate) findings.

        Anchors are taken in (incident_number, incident_id) order; an anchor
        already resolved as another anchor's duplicate is skipped together
        with its own findings.

        Args:
            anchors: Anchors that were evaluated.
            duplicate_pairs: Duplicate findings as (anchor, candidate), each side
                an IncidentRecord or an incident id.
            records: Records referenced by id in the pairs, keyed by id. Not
                needed when the pairs carry records.
            run_id: Correlation id for logs.

        Raises:
            ValueError: If a pair references an id with no known record.
        """
        pool = dict(records) if records is not None else {}
        for anchor in anchors:
            pool.setdefault(anchor.incident_id, anchor)

        by_anchor: Dict[str, Set[str]] = {}
        for anchor_side, candidate_side in duplicate_pairs:
            anchor_id = _member_id(anchor_side, pool)
            by_anchor.setdefault(anchor_id, set()).add(_member_id(candidate_side, pool))

        unknown = sorted(
            incident_id
            for incident_id in set(by_anchor).union(*by_anchor.values())
            if incident_id not in pool
        )
        if unknown:
            raise ValueError(f"No record for incident ids: {', '.join(unknown)}")

        duplicate_pass = DuplicatePass(run_id, pool.values())
        duplicate_pass.seed_prior_groups()

        for anchor in sorted(anchors, key=_sort_key):
            if duplicate_pass.is_resolved(anchor.incident_id):
                continue
            duplicate_ids = sorted(by_anchor.get(anchor.incident_id, set()))
            for candidate_id in duplicate_ids:
                duplicate_pass.add_pair(anchor.incident_id, candidate_id)
            self.resolve_anchor(duplicate_pass, anchor, duplicate_ids)

        return self.materialize(duplicate_pass)
