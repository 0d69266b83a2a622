"""Identity Graph Store.

WHAT:
    Maps identifiers (visitor_id, contact_id, device_signature) to a primary
    identity, and groups primary identities that turn out to be the same
    person with an explicit union-find over `identity_nodes`.

WHY:
    - Attribution and session linking need "every visitor id this person ever
      used", which is a transitive closure over links made at different times
    - Links are immutable: the first (type, value) -> identity mapping wins
      forever, so historical attribution never shifts under readers
    - Merging two people is a union of roots, never a rewrite of links

HOW:
    - `identity_links` has a unique (identifier_type, identifier_value) key;
      inserts go through INSERT ... ON CONFLICT DO NOTHING so concurrent
      writers race safely and the loser re-reads the winner
    - `identity_nodes.parent_id` is NULL for roots; `find` compresses paths,
      `union` links by rank with the older node winning ties

REFERENCES:
    - leadgraph/services/session_linker.py (main consumer)
    - leadgraph/database.py:insert_ignore
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Hashable, Iterable, List, Optional

from sqlalchemy.orm import Session

from leadgraph.database import insert_ignore
from leadgraph.models import IdentifierTypeEnum, IdentityLink, IdentityNode
from leadgraph.telemetry import capture_message

logger = logging.getLogger(__name__)


# =============================================================================
# IN-MEMORY DISJOINT SET
# =============================================================================

class DisjointSet:
    """Plain union-find over hashable items (used for batch grouping).

    Groups are returned in first-seen order so callers stay deterministic.
    """

    def __init__(self, items: Iterable[Hashable] = ()):
        self._parent: Dict[Hashable, Hashable] = {}
        self._rank: Dict[Hashable, int] = {}
        for item in items:
            self.add(item)

    def add(self, item: Hashable) -> None:
        if item not in self._parent:
            self._parent[item] = item
            self._rank[item] = 0

    def find(self, item: Hashable) -> Hashable:
        self.add(item)
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        # Path compression
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: Hashable, b: Hashable) -> Hashable:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self._rank[ra] < self._rank[rb]:
            ra, rb = rb, ra
        self._parent[rb] = ra
        if self._rank[ra] == self._rank[rb]:
            self._rank[ra] += 1
        return ra

    def groups(self) -> List[List[Hashable]]:
        by_root: Dict[Hashable, List[Hashable]] = {}
        for item in self._parent:
            by_root.setdefault(self.find(item), []).append(item)
        return list(by_root.values())

    def __contains__(self, item: Hashable) -> bool:
        return item in self._parent

    def __len__(self) -> int:
        return len(self._parent)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class LinkOutcome:
    """Result of `link_identifier`.

    WHAT: The link that is in force for the identifier after the call
    WHY: Conflicts are reported, never raised; callers decide whether to union
    """
    link: IdentityLink
    created: bool
    conflict: bool = False


# =============================================================================
# PERSISTENT GRAPH
# =============================================================================

class IdentityGraph:
    """DB-backed identity graph bound to one SQLAlchemy session.

    Nothing here commits; the caller owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # -- nodes ---------------------------------------------------------------

    def create_identity(self) -> str:
        identity_id = f"pid_{uuid.uuid4().hex}"
        self.db.add(IdentityNode(identity_id=identity_id, parent_id=None, rank=0))
        self.db.flush()
        logger.debug(f"[IDENTITY] Created primary identity {identity_id}")
        return identity_id

    def _node(self, identity_id: str) -> IdentityNode:
        node = self.db.get(IdentityNode, identity_id)
        if node is None:
            raise LookupError(f"Unknown primary identity {identity_id}")
        return node

    def find(self, identity_id: str) -> str:
        """Root of the set containing `identity_id` (with path compression)."""
        path = []
        node = self._node(identity_id)
        while node.parent_id is not None:
            path.append(node)
            node = self._node(node.parent_id)
        root_id = node.identity_id

        for visited in path:
            if visited.parent_id != root_id:
                visited.parent_id = root_id
        if path:
            self.db.flush()
        return root_id

    def union(self, a: str, b: str) -> str:
        """Merge the sets of `a` and `b`; return the surviving root.

        Union by rank; on equal rank the older identity stays the root.
        """
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return root_a

        node_a, node_b = self._node(root_a), self._node(root_b)
        if node_a.rank != node_b.rank:
            winner, loser = (node_a, node_b) if node_a.rank > node_b.rank else (node_b, node_a)
        else:
            # Older identity stays the root
            winner, loser = sorted(
                (node_a, node_b),
                key=lambda n: (n.created_at or datetime.min, n.identity_id),
            )
            winner.rank += 1

        loser.parent_id = winner.identity_id
        self.db.flush()
        logger.info(
            f"[IDENTITY] Unioned {loser.identity_id} into {winner.identity_id}",
            extra={"winner": winner.identity_id, "loser": loser.identity_id},
        )
        return winner.identity_id

    def members(self, identity_id: str) -> List[str]:
        """Every identity id in the same set, root first."""
        root_id = self.find(identity_id)
        found = [root_id]
        frontier = [root_id]
        while frontier:
            children = (
                self.db.query(IdentityNode.identity_id)
                .filter(IdentityNode.parent_id.in_(frontier))
                .all()
            )
            frontier = [row.identity_id for row in children]
            found.extend(frontier)
        return found

    # -- links ---------------------------------------------------------------

    def get_link(self, identifier_type: str, identifier_value: str) -> Optional[IdentityLink]:
        return (
            self.db.query(IdentityLink)
            .filter(
                IdentityLink.identifier_type == _type_value(identifier_type),
                IdentityLink.identifier_value == identifier_value,
            )
            .first()
        )

    def resolve(self, identifier_type: str, identifier_value: Optional[str]) -> Optional[str]:
        """Root primary identity for an identifier, or None if never linked."""
        if not identifier_value:
            return None
        link = self.get_link(identifier_type, identifier_value)
        if link is None:
            return None
        return self.find(link.primary_identity_id)

    def link_identifier(
        self,
        primary_identity_id: str,
        identifier_type: str,
        identifier_value: str,
        source: Optional[str] = None,
        confidence: float = 1.0,
    ) -> LinkOutcome:
        """Idempotently map an identifier to `primary_identity_id`.

        If the identifier already belongs to a different identity set the
        existing link is kept and the outcome is flagged as a conflict.
        """
        identifier_type = _type_value(identifier_type)
        created = insert_ignore(
            self.db,
            IdentityLink,
            {
                "id": uuid.uuid4(),
                "primary_identity_id": primary_identity_id,
                "identifier_type": identifier_type,
                "identifier_value": identifier_value,
                "source": source,
                "confidence": confidence,
                "created_at": datetime.utcnow(),
            },
            index_elements=["identifier_type", "identifier_value"],
        )
        link = self.get_link(identifier_type, identifier_value)

        if created:
            logger.info(
                f"[IDENTITY] Linked {identifier_type}:{identifier_value} -> {primary_identity_id}",
                extra={"source": source, "confidence": confidence},
            )
            return LinkOutcome(link=link, created=True)

        conflict = self.find(link.primary_identity_id) != self.find(primary_identity_id)
        if conflict:
            logger.warning(
                f"[IDENTITY] Conflict: {identifier_type}:{identifier_value} already linked to "
                f"{link.primary_identity_id}, keeping it (requested {primary_identity_id})",
                extra={
                    "identifier_type": identifier_type,
                    "existing_identity": link.primary_identity_id,
                    "requested_identity": primary_identity_id,
                },
            )
            capture_message(
                "Identity link conflict",
                level="warning",
                extra={
                    "identifier": f"{identifier_type}:{identifier_value}",
                    "existing_identity": link.primary_identity_id,
                    "requested_identity": primary_identity_id,
                },
            )
        return LinkOutcome(link=link, created=False, conflict=conflict)

    def resolve_or_create(
        self,
        identifier_type: str,
        identifier_value: str,
        source: Optional[str] = None,
        confidence: float = 1.0,
    ) -> str:
        """Root identity for an identifier, creating and linking one if needed."""
        existing = self.resolve(identifier_type, identifier_value)
        if existing is not None:
            return existing

        identity_id = self.create_identity()
        outcome = self.link_identifier(identity_id, identifier_type, identifier_value, source, confidence)
        # A concurrent writer may have linked it first; theirs wins
        return self.find(outcome.link.primary_identity_id)

    # -- reads ---------------------------------------------------------------

    def _links_for(self, primary_identity_id: str, identifier_type: Optional[str] = None):
        query = self.db.query(IdentityLink).filter(
            IdentityLink.primary_identity_id.in_(self.members(primary_identity_id))
        )
        if identifier_type is not None:
            query = query.filter(IdentityLink.identifier_type == _type_value(identifier_type))
        return query.order_by(IdentityLink.created_at.asc(), IdentityLink.identifier_value.asc())

    def get_all_identifiers(self, primary_identity_id: str) -> List[dict]:
        return [
            {
                "primary_identity_id": link.primary_identity_id,
                "identifier_type": link.identifier_type,
                "identifier_value": link.identifier_value,
                "source": link.source,
                "confidence": link.confidence,
                "created_at": link.created_at,
            }
            for link in self._links_for(primary_identity_id).all()
        ]

    def get_visitor_ids(self, primary_identity_id: str) -> List[str]:
        """All visitor ids of the identity set, oldest link first."""
        links = self._links_for(primary_identity_id, IdentifierTypeEnum.visitor_id).all()
        return [link.identifier_value for link in links]

    def get_oldest_visitor_id(self, primary_identity_id: str) -> Optional[str]:
        link = self._links_for(primary_identity_id, IdentifierTypeEnum.visitor_id).first()
        return link.identifier_value if link else None

    def get_identity_stats(self, primary_identity_id: str) -> dict:
        links = self._links_for(primary_identity_id).all()
        counts: Dict[str, int] = defaultdict(int)
        for link in links:
            counts[link.identifier_type] += 1

        return {
            "primary_identity_id": self.find(primary_identity_id),
            "member_identities": len(self.members(primary_identity_id)),
            "identifier_counts": dict(counts),
            "total_links": len(links),
            "first_linked_at": links[0].created_at if links else None,
            "last_linked_at": links[-1].created_at if links else None,
        }


def _type_value(identifier_type) -> str:
    if isinstance(identifier_type, IdentifierTypeEnum):
        return identifier_type.value
    return str(identifier_type)
