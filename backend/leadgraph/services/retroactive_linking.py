"""Retroactive session linking.

WHAT:
    Finds recent contacts that own no session yet, matches them to unclaimed
    sessions by the email or phone typed into a tracked form (or by a known
    visitor_id), and runs every matched visitor through the session linker.
    Afterwards fills a missing rstk_adid / rstk_source from the contact's
    first attributed session.

WHY:
    The CRM webhook often arrives before the tracking pixel has written the
    visitor's session, or without any visitor id at all. Linking at webhook
    time then finds nothing; this job catches those contacts once their
    sessions exist. The linker stays the only writer of session.contact_id.

REFERENCES:
    - leadgraph/workers/arq_worker.py:link_orphan_contacts_job (cron, every 5 min)
    - leadgraph/services/session_linker.py
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import exists, func, or_
from sqlalchemy.orm import Session

from leadgraph.errors import SessionLinkError
from leadgraph.models import Contact, TrackingSession
from leadgraph.services.named_lock import NamedLockProvider
from leadgraph.services.session_linker import SessionLinker
from leadgraph.telemetry import capture_exception
from leadgraph.utils.normalize import normalize_email

logger = logging.getLogger(__name__)


def find_orphan_contacts(db: Session, since: datetime, batch_size: int) -> List[Contact]:
    """Recent contacts with something to match on and no linked session."""
    owns_session = exists().where(TrackingSession.contact_id == Contact.contact_id)
    return (
        db.query(Contact)
        .filter(
            Contact.created_at >= since,
            or_(
                Contact.email.isnot(None),
                Contact.phone_key.isnot(None),
                Contact.visitor_id.isnot(None),
            ),
            ~owns_session,
        )
        .order_by(Contact.created_at.asc())
        .limit(batch_size)
        .all()
    )


def matching_visitor_ids(db: Session, contact: Contact, since: datetime) -> List[str]:
    """Visitors with unclaimed sessions that share the contact's email, phone or visitor_id.

    Ordered by each visitor's first session, oldest first.
    """
    predicates = []
    email = normalize_email(contact.email)
    if email:
        predicates.append(func.lower(func.trim(TrackingSession.email)) == email)
    if contact.phone_key:
        predicates.append(TrackingSession.phone_key == contact.phone_key)
    if contact.visitor_id:
        predicates.append(TrackingSession.visitor_id == contact.visitor_id)
    if not predicates:
        return []

    first_seen = func.min(TrackingSession.started_at)
    rows = (
        db.query(TrackingSession.visitor_id, first_seen)
        .filter(
            TrackingSession.contact_id.is_(None),
            TrackingSession.started_at >= since,
            or_(*predicates),
        )
        .group_by(TrackingSession.visitor_id)
        .order_by(first_seen.asc(), TrackingSession.visitor_id.asc())
        .all()
    )
    return [row[0] for row in rows]


def backfill_attribution(db: Session, contact_id: str) -> bool:
    """Fill a missing rstk_adid / rstk_source from the first attributed session.

    Values already on the contact are never replaced.
    """
    contact = db.get(Contact, contact_id)
    if contact is None or (contact.rstk_adid and contact.rstk_source):
        return False

    session = (
        db.query(TrackingSession)
        .filter(
            TrackingSession.contact_id == contact_id,
            or_(
                TrackingSession.ad_id.isnot(None),
                TrackingSession.fbclid.isnot(None),
                TrackingSession.gclid.isnot(None),
                TrackingSession.utm_source.isnot(None),
            ),
        )
        .order_by(TrackingSession.started_at.asc(), TrackingSession.session_id.asc())
        .first()
    )
    if session is None:
        return False

    ad_id = session.ad_id or session.fbclid or session.gclid
    changed = False
    if not contact.rstk_adid and ad_id:
        contact.rstk_adid = ad_id
        changed = True
    if not contact.rstk_source and session.utm_source:
        contact.rstk_source = session.utm_source
        changed = True
    if changed:
        db.commit()
        logger.info(f"[RETRO-LINK] Backfilled attribution for contact {contact_id} from {session.session_id}")
    return changed


def link_orphan_contacts(
    db: Session,
    locks: NamedLockProvider,
    lookback_hours: int = 2,
    batch_size: int = 50,
    session_days: int = 7,
    now: Optional[datetime] = None,
    linker: Optional[SessionLinker] = None,
) -> dict:
    """Link sessions for up to `batch_size` recent orphan contacts.

    A failure on one contact is reported and the batch moves on.
    """
    now = now or datetime.utcnow()
    linker = linker or SessionLinker(db, locks)
    stats = {
        "checked": 0, "linked": 0, "no_sessions": 0, "skipped": 0, "failed": 0,
        "sessions_linked": 0, "attribution_backfilled": 0,
    }

    orphans = find_orphan_contacts(db, now - timedelta(hours=lookback_hours), batch_size)
    if not orphans:
        return stats

    logger.info(f"[RETRO-LINK] {len(orphans)} orphan contacts to link")
    stats["checked"] = len(orphans)
    session_since = now - timedelta(days=session_days)

    for contact_id in [c.contact_id for c in orphans]:
        contact = db.get(Contact, contact_id)
        visitor_ids = matching_visitor_ids(db, contact, session_since)
        if not visitor_ids:
            stats["no_sessions"] += 1
            continue

        linked = skipped = 0
        try:
            for visitor_id in visitor_ids:
                session = linker.latest_session_for_visitor(visitor_id)
                result = linker.unify_sessions_on_conversion(contact_id, session, now=now)
                if result.skipped:
                    skipped += 1
                else:
                    linked += result.sessions_linked
        except SessionLinkError as e:
            stats["failed"] += 1
            logger.error(f"[RETRO-LINK] Contact {contact_id} failed: {e}")
            capture_exception(e, extra={"contact_id": contact_id, "visitor_ids": visitor_ids})
            continue

        if linked:
            stats["linked"] += 1
            stats["sessions_linked"] += linked
            if backfill_attribution(db, contact_id):
                stats["attribution_backfilled"] += 1
        elif skipped:
            stats["skipped"] += 1
        else:
            stats["no_sessions"] += 1

    logger.info(
        f"[RETRO-LINK] Done: {stats['linked']} linked ({stats['sessions_linked']} sessions), "
        f"{stats['no_sessions']} without sessions, {stats['skipped']} skipped, {stats['failed']} failed"
    )
    return stats
