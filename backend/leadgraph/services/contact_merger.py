"""Contact Merger.

WHAT:
    Collapses a set of duplicate contacts (plus optional incoming data) into
    one master record, repoints every dependent row to it and deletes the
    losers, all inside the caller's transaction.

WHY:
    - One live row per real person is what every read path assumes
    - Payment and appointment history must be re-owned, never lost
    - Status only moves up (lead -> appointment -> client)

RULES:
    Master: highest completeness score, ties to the earliest created_at
        first/last name 2 each, email 3, phone 3, company 1,
        rstk_adid 2, ext_crm_id 5, status == client 10
    Fields: non-empty beats empty; between two non-empty values the longer wins
    Status: maximum rank across all inputs
    The master's contact_id and created_at are never changed.

REFERENCES:
    - leadgraph/services/contact_duplicates.py (finder)
    - leadgraph/services/identity_graph.py:DisjointSet (cleanup grouping)
"""

import logging
import secrets
import string
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from leadgraph.errors import ContactMergeError
from leadgraph.models import (
    Appointment,
    Contact,
    ContactStatusEnum,
    Payment,
    STATUS_RANK,
    TrackingSession,
)
from leadgraph.services.contact_duplicates import ContactCandidate, find_duplicates
from leadgraph.services.identity_graph import DisjointSet
from leadgraph.utils.normalize import is_blank, normalize_email

logger = logging.getLogger(__name__)


# =============================================================================
# RULE TABLES
# =============================================================================

COMPLETENESS_WEIGHTS: Dict[str, int] = {
    "first_name": 2,
    "last_name": 2,
    "email": 3,
    "phone": 3,
    "company": 1,
    "rstk_adid": 2,
    "ext_crm_id": 5,
}
CLIENT_STATUS_BONUS = 10

MERGED_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "rstk_adid",
    "ext_crm_id",
    "source",
    "rstk_source",
    "visitor_id",
)

# Tables whose contact_id follows a merge
REFERENCE_MODELS = (Payment, Appointment, TrackingSession)

CONTACT_ID_PREFIX = "cntct_"
CONTACT_ID_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
CONTACT_ID_LENGTH = 16
DEFAULT_SOURCE = "Direct"


# =============================================================================
# PURE RULES
# =============================================================================

def completeness_score(contact) -> int:
    score = sum(weight for name, weight in COMPLETENESS_WEIGHTS.items() if not is_blank(getattr(contact, name)))
    if contact.status == ContactStatusEnum.client.value:
        score += CLIENT_STATUS_BONUS
    return score


def select_master(duplicates: Sequence[Contact]) -> Contact:
    """Most complete contact; ties go to the oldest."""
    return sorted(
        duplicates,
        key=lambda c: (-completeness_score(c), c.created_at, c.contact_id),
    )[0]


def pick_best(current, new):
    """Never replace a value with an empty one; otherwise keep the longer."""
    if is_blank(new):
        return current
    if is_blank(current):
        return new
    if len(str(new)) > len(str(current)):
        return new
    return current


def status_rank(status: Optional[str]) -> int:
    return STATUS_RANK.get(status, 0)


def pick_best_status(current: Optional[str], new: Optional[str]) -> Optional[str]:
    return new if status_rank(new) > status_rank(current) else current


def generate_contact_id() -> str:
    suffix = "".join(secrets.choice(CONTACT_ID_ALPHABET) for _ in range(CONTACT_ID_LENGTH))
    return f"{CONTACT_ID_PREFIX}{suffix}"


# =============================================================================
# MERGE
# =============================================================================

def migrate_references(db: Session, loser_ids: List[str], master_id: str) -> Dict[str, int]:
    """Repoint payments, appointments and sessions from losers to the master."""
    counts = {}
    for model in REFERENCE_MODELS:
        counts[model.__tablename__] = (
            db.query(model)
            .filter(model.contact_id.in_(loser_ids))
            .update({model.contact_id: master_id}, synchronize_session=False)
        )
    logger.info(
        f"[MERGE] Migrated references of {len(loser_ids)} contacts to {master_id}",
        extra=counts,
    )
    return counts


def unify(db: Session, duplicates: Sequence[Contact], incoming: Optional[ContactCandidate] = None) -> Contact:
    """Merge `duplicates` (and `incoming`) into one surviving contact.

    Does not commit. Losers are deleted only after their references moved.
    """
    if not duplicates:
        raise ValueError("unify requires at least one contact")

    master = select_master(duplicates)
    losers = [c for c in duplicates if c.contact_id != master.contact_id]

    merged = {name: getattr(master, name) for name in MERGED_FIELDS}
    status = master.status
    sources = list(losers)
    if incoming is not None:
        sources.append(incoming)
    for other in sources:
        for name in MERGED_FIELDS:
            merged[name] = pick_best(merged[name], getattr(other, name))
        status = pick_best_status(status, other.status)

    for name, value in merged.items():
        if getattr(master, name) != value:
            setattr(master, name, value)
    if status != master.status:
        master.status = status
    db.flush()

    if losers:
        loser_ids = [c.contact_id for c in losers]
        migrate_references(db, loser_ids, master.contact_id)
        # Bulk delete so no ORM cascade touches the already-migrated children
        db.query(Contact).filter(Contact.contact_id.in_(loser_ids)).delete(synchronize_session=False)
        for loser in losers:
            db.expunge(loser)
        logger.info(
            f"[MERGE] Unified {len(duplicates)} contacts into {master.contact_id}",
            extra={"master": master.contact_id, "deleted": loser_ids},
        )

    return master


def create_contact(db: Session, candidate: ContactCandidate) -> Contact:
    status = candidate.status if status_rank(candidate.status) else ContactStatusEnum.lead.value
    contact = Contact(
        contact_id=candidate.contact_id or generate_contact_id(),
        ext_crm_id=candidate.ext_crm_id,
        first_name=candidate.first_name,
        last_name=candidate.last_name,
        email=candidate.email,
        phone=candidate.phone,
        company=candidate.company,
        visitor_id=candidate.visitor_id,
        rstk_adid=candidate.rstk_adid,
        rstk_source=candidate.rstk_source,
        source=candidate.source or DEFAULT_SOURCE,
        status=status,
    )
    db.add(contact)
    db.flush()
    logger.info(f"[MERGE] Created contact {contact.contact_id}")
    return contact


def unify_or_create(db: Session, candidate: ContactCandidate) -> Contact:
    """Find duplicates of `candidate` and merge them, or create a new contact."""
    duplicates = find_duplicates(db, candidate)
    if duplicates:
        return unify(db, duplicates, candidate)
    return create_contact(db, candidate)


def find_or_create_unified(db: Session, candidate: ContactCandidate) -> Contact:
    """`unify_or_create` in its own transaction.

    Raises:
        ContactMergeError: after a full rollback
    """
    try:
        contact = unify_or_create(db, candidate)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"[MERGE] Unification failed, rolled back: {e}")
        raise ContactMergeError("Contact unification failed", cause=e) from e
    db.refresh(contact)
    return contact


# =============================================================================
# CLEANUP
# =============================================================================

def _chunks(items: List, size: int) -> Iterable[List]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def find_duplicate_components(db: Session) -> dict:
    """Group existing contacts sharing an email or a phone key.

    Email groups and phone groups are unioned, so A~B by email and B~C by
    phone yield one component {A, B, C}.
    """
    rows = (
        db.query(Contact.contact_id, Contact.email, Contact.phone_key)
        .order_by(Contact.created_at.asc(), Contact.contact_id.asc())
        .all()
    )

    by_email: Dict[str, List[str]] = defaultdict(list)
    by_phone: Dict[str, List[str]] = defaultdict(list)
    for row in rows:
        email = normalize_email(row.email)
        if email:
            by_email[email].append(row.contact_id)
        if row.phone_key:
            by_phone[row.phone_key].append(row.contact_id)

    email_groups = [ids for ids in by_email.values() if len(ids) > 1]
    phone_groups = [ids for ids in by_phone.values() if len(ids) > 1]

    components = DisjointSet()
    for group in email_groups + phone_groups:
        for contact_id in group[1:]:
            components.union(group[0], contact_id)

    return {
        "email_groups": len(email_groups),
        "phone_groups": len(phone_groups),
        "components": components.groups(),
    }


def cleanup_existing_duplicates(db: Session, chunk_size: int = 50) -> dict:
    """Merge every duplicate component, `chunk_size` components per transaction.

    Raises:
        ContactMergeError: the failing chunk is rolled back; earlier chunks stay
    """
    found = find_duplicate_components(db)
    components = found["components"]
    logger.info(
        f"[CLEANUP] {found['email_groups']} email groups, {found['phone_groups']} phone groups, "
        f"{len(components)} components"
    )

    unified = 0
    removed = 0
    chunks = 0
    for chunk in _chunks(components, chunk_size):
        try:
            for component in chunk:
                contacts = (
                    db.query(Contact)
                    .filter(Contact.contact_id.in_(component))
                    .order_by(Contact.created_at.asc(), Contact.contact_id.asc())
                    .all()
                )
                if len(contacts) > 1:
                    unify(db, contacts, None)
                    unified += 1
                    removed += len(contacts) - 1
            db.commit()
            chunks += 1
        except Exception as e:
            db.rollback()
            logger.error(f"[CLEANUP] Chunk {chunks + 1} failed, rolled back: {e}")
            raise ContactMergeError(f"Duplicate cleanup failed in chunk {chunks + 1}", cause=e) from e

    logger.info(f"[CLEANUP] Unified {unified} groups, removed {removed} contacts in {chunks} chunks")
    return {
        "email_groups": found["email_groups"],
        "phone_groups": found["phone_groups"],
        "components": len(components),
        "groups_unified": unified,
        "contacts_removed": removed,
        "chunks": chunks,
    }
