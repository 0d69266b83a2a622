"""Session Linker.

WHAT:
    On a conversion, resolves the converting visitor to a primary identity,
    links the contact to it, seeds the graph with fingerprint look-alikes,
    and stamps `contact_id` on every unclaimed session of every visitor id
    in the identity set.

WHY:
    - Attribution walks sessions by contact_id; sessions recorded before the
      visitor identified themselves must be claimed retroactively
    - Visitors clear cookies and switch browsers, so the same person shows up
      under several visitor ids; the identity graph is the closure of those

FLOW (unify_sessions_on_conversion):
    1. Resolve visitor_id (then device_signature) to a root, or create one
    2. Link visitor_id, device_signature and contact_id to the root
    3. Score look-alike sessions; auto-link visitors with probability >= 0.70,
       record every candidate in identity_match_reviews
    4. Collect all visitor ids of the (possibly grown) identity set
    5. Under the named lock "identity:{root}", set contact_id where it is NULL
       and backfill contact.visitor_id; skip entirely if the lock is held
    6. Commit; on any failure roll back and raise SessionLinkError

    The only writer of tracking_sessions.contact_id is step 5.

REFERENCES:
    - leadgraph/services/identity_graph.py
    - leadgraph/services/fingerprint_scorer.py
    - leadgraph/services/named_lock.py
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from leadgraph.errors import SessionLinkError
from leadgraph.models import (
    Contact,
    IdentifierTypeEnum,
    IdentityMatchReview,
    TrackingSession,
)
from leadgraph.services import fingerprint_scorer
from leadgraph.services.fingerprint_scorer import FingerprintScore, FingerprintSet
from leadgraph.services.identity_graph import IdentityGraph, LinkOutcome
from leadgraph.services.named_lock import NamedLockProvider
from leadgraph.telemetry import capture_exception

logger = logging.getLogger(__name__)


# Session column holding each scored signal
SIGNAL_COLUMNS = {
    "canvas": TrackingSession.canvas_fingerprint,
    "webgl": TrackingSession.webgl_fingerprint,
    "audio": TrackingSession.audio_fingerprint,
    "fonts": TrackingSession.fonts_fingerprint,
    "screen": TrackingSession.screen_fingerprint,
    "device_signature": TrackingSession.device_signature,
}


@dataclass
class SimilarSession:
    """A look-alike session and how it scored against the reference."""
    session: TrackingSession
    score: FingerprintScore

    @property
    def visitor_id(self) -> str:
        return self.session.visitor_id


@dataclass
class LinkResult:
    """What one unify call did.

    `skipped` means the identity lock was held elsewhere; graph links were
    still committed but sessions were left for the lock holder.
    """
    primary_identity_id: str
    contact_id: str
    visitor_ids: List[str] = field(default_factory=list)
    sessions_linked: int = 0
    contact_visitor_backfilled: bool = False
    auto_linked_visitors: List[str] = field(default_factory=list)
    review_candidates: int = 0
    skipped: bool = False


class SessionLinker:
    """Links anonymous sessions to a converting contact.

    Tunables default to the values in `leadgraph.deps.Settings`.
    """

    def __init__(
        self,
        db: Session,
        locks: NamedLockProvider,
        lookback_days: int = 30,
        limit: int = 20,
        ip_timezone_recency_hours: int = 2,
        auto_link_min_probability: float = 0.70,
    ):
        self.db = db
        self.locks = locks
        self.graph = IdentityGraph(db)
        self.lookback = timedelta(days=lookback_days)
        self.limit = limit
        self.recency = timedelta(hours=ip_timezone_recency_hours)
        self.auto_link_min_probability = auto_link_min_probability

    @classmethod
    def from_settings(cls, db: Session, locks: NamedLockProvider, settings) -> "SessionLinker":
        return cls(
            db,
            locks,
            lookback_days=settings.SIMILAR_SESSION_LOOKBACK_DAYS,
            limit=settings.SIMILAR_SESSION_LIMIT,
            ip_timezone_recency_hours=settings.IP_TIMEZONE_RECENCY_HOURS,
            auto_link_min_probability=settings.AUTO_LINK_MIN_PROBABILITY,
        )

    # =========================================================================
    # SIMILAR SESSIONS
    # =========================================================================

    def find_similar_sessions(
        self,
        current_session: TrackingSession,
        now: Optional[datetime] = None,
    ) -> List[SimilarSession]:
        """Look-alike sessions of other visitors from the lookback window.

        Returns candidates scoring >= 25, best first, capped at `limit`.
        """
        reference = FingerprintSet.from_session(current_session)
        if reference.is_empty():
            return []

        now = now or datetime.utcnow()

        # Pre-filter in SQL on any shared strong signal; exact scoring below
        predicates = [
            column == reference.signal(name)
            for name, column in SIGNAL_COLUMNS.items()
            if reference.signal(name)
        ]
        if reference.ip and reference.timezone:
            predicates.append(
                and_(TrackingSession.ip == reference.ip, TrackingSession.timezone == reference.timezone)
            )

        rows = (
            self.db.query(TrackingSession)
            .filter(
                TrackingSession.started_at >= now - self.lookback,
                TrackingSession.visitor_id != current_session.visitor_id,
                or_(*predicates),
            )
            .all()
        )

        matches = []
        for row in rows:
            result = fingerprint_scorer.score(FingerprintSet.from_session(row), reference, self.recency)
            if result.is_candidate:
                matches.append(SimilarSession(session=row, score=result))

        matches.sort(key=lambda m: (-m.score.score, -m.session.started_at.timestamp(), m.session.session_id))
        matches = matches[: self.limit]

        if matches:
            logger.info(
                f"[FINGERPRINT] {len(matches)} similar sessions for visitor {current_session.visitor_id}",
                extra={"top_score": matches[0].score.score},
            )
        return matches

    # =========================================================================
    # UNIFY
    # =========================================================================

    def unify_sessions_on_conversion(
        self,
        contact_id: str,
        current_session: TrackingSession,
        now: Optional[datetime] = None,
    ) -> LinkResult:
        """Link every session of the converting person to `contact_id`.

        Raises:
            SessionLinkError: after a full rollback
        """
        try:
            result = self._unify(contact_id, current_session, now)
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"[LINKER] Failed to link sessions for contact {contact_id}: {e}",
                extra={"contact_id": contact_id, "session_id": current_session.session_id},
            )
            raise SessionLinkError(f"Session linking failed for contact {contact_id}", cause=e) from e
        return result

    def _unify(self, contact_id: str, current_session: TrackingSession, now: Optional[datetime]) -> LinkResult:
        visitor_id = current_session.visitor_id
        device_signature = current_session.device_signature

        root = (
            self.graph.resolve(IdentifierTypeEnum.visitor_id, visitor_id)
            or self.graph.resolve(IdentifierTypeEnum.device_signature, device_signature)
            or self.graph.create_identity()
        )

        self.graph.link_identifier(root, IdentifierTypeEnum.visitor_id, visitor_id, source="session")
        if device_signature:
            # Shared devices exist; a device conflict is logged, not unioned
            self.graph.link_identifier(
                root, IdentifierTypeEnum.device_signature, device_signature,
                source="fingerprint", confidence=0.9,
            )

        outcome = self.graph.link_identifier(root, IdentifierTypeEnum.contact_id, contact_id, source="conversion")
        root = self._union_on_conflict(root, outcome)

        auto_linked: Dict[str, float] = {}
        similar = self.find_similar_sessions(current_session, now=now)
        for match in similar:
            is_auto = match.score.probability >= self.auto_link_min_probability
            if is_auto and match.visitor_id not in auto_linked:
                outcome = self.graph.link_identifier(
                    root, IdentifierTypeEnum.visitor_id, match.visitor_id,
                    source="fingerprint", confidence=match.score.probability,
                )
                root = self._union_on_conflict(root, outcome)
                auto_linked[match.visitor_id] = match.score.probability
            self._record_review(root, contact_id, current_session, match, is_auto)

        root = self.graph.find(root)
        visitor_ids = self.graph.get_visitor_ids(root)
        result = LinkResult(
            primary_identity_id=root,
            contact_id=contact_id,
            visitor_ids=visitor_ids,
            auto_linked_visitors=list(auto_linked),
            review_candidates=len(similar),
        )

        with self.locks.hold(f"identity:{root}") as handle:
            if handle is None:
                self.db.commit()
                result.skipped = True
                return result

            result.sessions_linked = self._claim_sessions(contact_id, visitor_ids, auto_linked)
            result.contact_visitor_backfilled = self._backfill_contact_visitor(contact_id, visitor_id)
            self.db.commit()

        logger.info(
            f"[LINKER] Linked {result.sessions_linked} sessions across {len(visitor_ids)} visitors "
            f"to contact {contact_id}",
            extra={"primary_identity_id": root, "auto_linked": len(auto_linked)},
        )
        return result

    def _union_on_conflict(self, root: str, outcome: LinkOutcome) -> str:
        if outcome.conflict:
            return self.graph.union(root, outcome.link.primary_identity_id)
        return root

    def _record_review(
        self,
        root: str,
        contact_id: str,
        current_session: TrackingSession,
        match: SimilarSession,
        auto_linked: bool,
    ) -> None:
        exists = (
            self.db.query(IdentityMatchReview.id)
            .filter(
                IdentityMatchReview.contact_id == contact_id,
                IdentityMatchReview.candidate_session_id == match.session.session_id,
            )
            .first()
        )
        if exists:
            return
        self.db.add(IdentityMatchReview(
            primary_identity_id=root,
            contact_id=contact_id,
            reference_session_id=current_session.session_id,
            candidate_session_id=match.session.session_id,
            candidate_visitor_id=match.visitor_id,
            score=match.score.score,
            probability=match.score.probability,
            matched_signals=sorted(match.score.matched_signals),
            auto_linked=auto_linked,
        ))

    def _claim_sessions(self, contact_id: str, visitor_ids: List[str], auto_linked: Dict[str, float]) -> int:
        """NULL -> contact_id only; a session already claimed keeps its contact."""
        if not visitor_ids:
            return 0

        # Probability first, so only sessions claimed by this call get it
        for visitor, probability in auto_linked.items():
            (
                self.db.query(TrackingSession)
                .filter(
                    TrackingSession.visitor_id == visitor,
                    TrackingSession.contact_id.is_(None),
                )
                .update({TrackingSession.fingerprint_probability: probability}, synchronize_session=False)
            )

        return (
            self.db.query(TrackingSession)
            .filter(
                TrackingSession.visitor_id.in_(visitor_ids),
                TrackingSession.contact_id.is_(None),
            )
            .update({TrackingSession.contact_id: contact_id}, synchronize_session=False)
        )

    def _backfill_contact_visitor(self, contact_id: str, visitor_id: str) -> bool:
        contact = self.db.get(Contact, contact_id)
        if contact is None or contact.visitor_id:
            return False
        contact.visitor_id = visitor_id
        return True

    # =========================================================================
    # HELPERS
    # =========================================================================

    def latest_session_for_visitor(self, visitor_id: str) -> Optional[TrackingSession]:
        return (
            self.db.query(TrackingSession)
            .filter(TrackingSession.visitor_id == visitor_id)
            .order_by(TrackingSession.started_at.desc(), TrackingSession.session_id.desc())
            .first()
        )


def link_sessions_best_effort(
    linker: SessionLinker,
    contact_id: str,
    current_session: Optional[TrackingSession],
) -> Optional[LinkResult]:
    """Run the linker without letting its failure abort the caller.

    Errors are logged and sent to Sentry; the conversion that triggered the
    link has already been committed.
    """
    if current_session is None:
        return None
    try:
        return linker.unify_sessions_on_conversion(contact_id, current_session)
    except Exception as e:
        logger.exception(f"[LINKER] Best-effort session linking failed for contact {contact_id}")
        capture_exception(e, extra={"contact_id": contact_id, "session_id": current_session.session_id})
        return None
