"""
Duplicate contact detection over the local contacts table.

Scores every pair of contacts from three signals:
- Exact email match (normalized, case-insensitive)
- Exact phone match (digits only, minimum length)
- Company-name similarity (rapidfuzz over normalized names)

Pairs at or above the threshold are grouped transitively with union-find,
so A~B and B~C put A, B and C in one group even when A~C scores low.

Detection is advisory: nothing is merged or deleted.
"""

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Optional

from rapidfuzz import fuzz

from accounting_sync.storage.db import SyncDatabase
from accounting_sync.utils.normalization import (
    normalize_company_name,
    normalize_email,
    normalize_phone,
)

DEFAULT_THRESHOLD = 0.8
DEFAULT_CONTACT_THRESHOLD = 0.7

# Name similarity reported as a match reason from this level up
NAME_REASON_THRESHOLD = 0.85

logger = logging.getLogger(__name__)


@dataclass
class PairScore:
    """Similarity of two contacts."""

    score: float
    reasons: list[str] = field(default_factory=list)


@dataclass
class DuplicateGroup:
    """
    A set of contacts that likely describe the same business.

    Attributes:
        contact_ids: Member ids, ascending
        similarity_score: Highest pairwise score inside the group
        match_reasons: Why members were linked
        suggested_canonical_id: Member to keep if an operator merges
    """

    contact_ids: list[int]
    similarity_score: float
    match_reasons: list[str]
    suggested_canonical_id: int
    names: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "contact_ids": self.contact_ids,
            "similarity_score": round(self.similarity_score, 3),
            "match_reasons": self.match_reasons,
            "suggested_canonical_id": self.suggested_canonical_id,
            "names": {str(k): v for k, v in self.names.items()},
        }


@dataclass
class DuplicateMatch:
    """One likely duplicate of a given contact."""

    contact_id: int
    name: str
    similarity_score: float
    match_reasons: list[str]


class _UnionFind:
    def __init__(self, items: list[int]):
        self.parent = {item: item for item in items}

    def find(self, item: int) -> int:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            # Smaller id becomes the root for stable output
            if root_b < root_a:
                root_a, root_b = root_b, root_a
            self.parent[root_b] = root_a


@dataclass
class _Prepared:
    id: int
    name: str
    normalized_name: str
    email: str
    phone: str
    external_id: Optional[str]
    created_at: Any


class DuplicateContactDetector:
    """
    Fuzzy duplicate finder for local contacts.

    Usage:
        detector = DuplicateContactDetector(db)
        for group in detector.scan_duplicates(threshold=0.8):
            print(group.contact_ids, group.match_reasons)
    """

    def __init__(self, db: SyncDatabase):
        self.db = db

    @staticmethod
    def name_similarity(name1: str, name2: str) -> float:
        """Similarity of two normalized names in [0, 1]."""
        if not name1 or not name2:
            return 0.0
        return max(fuzz.ratio(name1, name2), fuzz.token_set_ratio(name1, name2)) / 100.0

    def score_pair(self, a: _Prepared, b: _Prepared) -> PairScore:
        """
        Weighted similarity of two contacts.

        An exact email scores at least 0.9; an exact phone at least 0.75;
        a name alone tops out at 0.75.
        """
        name_sim = self.name_similarity(a.normalized_name, b.normalized_name)
        email_match = bool(a.email) and a.email == b.email
        phone_match = bool(a.phone) and a.phone == b.phone

        reasons: list[str] = []
        if email_match:
            reasons.append("exact email match")
        if phone_match:
            reasons.append("exact phone match")
        if name_sim >= NAME_REASON_THRESHOLD:
            reasons.append(
                "same name" if name_sim >= 1.0 else f"similar name ({name_sim:.0%})"
            )

        if email_match:
            score = 0.9 + 0.1 * max(name_sim, 1.0 if phone_match else 0.0)
        elif phone_match:
            score = 0.75 + 0.2 * name_sim
        else:
            score = 0.75 * name_sim
        return PairScore(score=min(score, 1.0), reasons=reasons)

    def scan_duplicates(self, threshold: float = DEFAULT_THRESHOLD) -> list[DuplicateGroup]:
        """
        Group likely duplicates among all local contacts.

        Returns:
            Groups of two or more contacts, highest score first
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be between 0.0 and 1.0, got {threshold}")

        contacts = self._load()
        by_id = {c.id: c for c in contacts}
        uf = _UnionFind([c.id for c in contacts])
        edges: list[tuple[int, int, PairScore]] = []

        for a, b in combinations(contacts, 2):
            pair = self.score_pair(a, b)
            if pair.score >= threshold:
                uf.union(a.id, b.id)
                edges.append((a.id, b.id, pair))

        members: dict[int, list[int]] = {}
        for contact in contacts:
            members.setdefault(uf.find(contact.id), []).append(contact.id)

        groups: list[DuplicateGroup] = []
        for root, ids in members.items():
            if len(ids) < 2:
                continue
            group_edges = [e for e in edges if uf.find(e[0]) == root]
            reasons = sorted({r for _, _, pair in group_edges for r in pair.reasons})
            groups.append(
                DuplicateGroup(
                    contact_ids=sorted(ids),
                    similarity_score=max(pair.score for _, _, pair in group_edges),
                    match_reasons=reasons,
                    suggested_canonical_id=self._canonical([by_id[i] for i in ids]),
                    names={i: by_id[i].name for i in sorted(ids)},
                )
            )

        groups.sort(key=lambda g: (-g.similarity_score, g.contact_ids[0]))
        if groups:
            logger.warning(
                f"Found {len(groups)} potential duplicate contact groups "
                f"({sum(len(g.contact_ids) for g in groups)} contacts)"
            )
        return groups

    def find_duplicates_for_contact(
        self, contact_id: int, threshold: float = DEFAULT_CONTACT_THRESHOLD
    ) -> list[DuplicateMatch]:
        """
        List contacts that likely duplicate one contact, best match first.

        Raises:
            ValueError: If the contact does not exist
        """
        contacts = self._load()
        target = next((c for c in contacts if c.id == contact_id), None)
        if target is None:
            raise ValueError(f"Contact {contact_id} not found")

        matches: list[DuplicateMatch] = []
        for other in contacts:
            if other.id == contact_id:
                continue
            pair = self.score_pair(target, other)
            if pair.score >= threshold:
                matches.append(
                    DuplicateMatch(
                        contact_id=other.id,
                        name=other.name,
                        similarity_score=pair.score,
                        match_reasons=pair.reasons,
                    )
                )
        matches.sort(key=lambda m: (-m.similarity_score, m.contact_id))
        return matches

    def duplicate_stats(self, threshold: float = DEFAULT_THRESHOLD) -> dict[str, Any]:
        """Summary numbers for a dashboard."""
        groups = self.scan_duplicates(threshold)
        return {
            "total_contacts": self.db.count_entities("contacts"),
            "duplicate_groups": len(groups),
            "contacts_in_groups": sum(len(g.contact_ids) for g in groups),
            "largest_group": max((len(g.contact_ids) for g in groups), default=0),
            "threshold": threshold,
        }

    @staticmethod
    def _canonical(contacts: list[_Prepared]) -> int:
        # Mapped contacts first, then the oldest, then the lowest id
        best = min(
            contacts,
            key=lambda c: (c.external_id is None, c.created_at, c.id),
        )
        return best.id

    def _load(self) -> list[_Prepared]:
        return [
            _Prepared(
                id=row["id"],
                name=row["name"],
                normalized_name=normalize_company_name(row["name"]),
                email=normalize_email(row.get("email")),
                phone=normalize_phone(row.get("phone")),
                external_id=row.get("external_id"),
                created_at=row["created_at"],
            )
            for row in self.db.list_entities("contacts")
        ]
