"""Contact Duplicate Finder.

WHAT:
    Returns every existing contact overlapping a candidate on any of:
    external CRM id, contact id, normalized email, phone key (last 10 digits).

WHY:
    CRMs resend the same person with partial data (an email one day, a phone
    with a country code the next). Any single overlap is enough to consider
    two records the same person; the merger decides what survives.

REFERENCES:
    - leadgraph/services/contact_merger.py (consumer)
    - leadgraph/utils/normalize.py
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from leadgraph.models import Contact
from leadgraph.utils.normalize import is_blank, normalize_email, phone_key

logger = logging.getLogger(__name__)


@dataclass
class ContactCandidate:
    """Incoming contact data (from a webhook or a cleanup group)."""
    ext_crm_id: Optional[str] = None
    contact_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    visitor_id: Optional[str] = None
    rstk_adid: Optional[str] = None
    rstk_source: Optional[str] = None
    source: Optional[str] = None
    status: Optional[str] = None

    @property
    def email_key(self) -> Optional[str]:
        return normalize_email(self.email)

    @property
    def phone_key(self) -> Optional[str]:
        return phone_key(self.phone)

    def has_match_fields(self) -> bool:
        return any([
            not is_blank(self.ext_crm_id),
            not is_blank(self.contact_id),
            self.email_key,
            self.phone_key,
        ])


def find_duplicates(db: Session, candidate: ContactCandidate) -> List[Contact]:
    """All contacts matching any non-empty match field, oldest first.

    Empty fields contribute no predicate; no predicates means no matches.
    """
    predicates = []
    if not is_blank(candidate.ext_crm_id):
        predicates.append(Contact.ext_crm_id == candidate.ext_crm_id.strip())
    if not is_blank(candidate.contact_id):
        predicates.append(Contact.contact_id == candidate.contact_id.strip())
    if candidate.email_key:
        predicates.append(func.lower(func.trim(Contact.email)) == candidate.email_key)
    if candidate.phone_key:
        predicates.append(Contact.phone_key == candidate.phone_key)

    if not predicates:
        return []

    duplicates = (
        db.query(Contact)
        .filter(or_(*predicates))
        .order_by(Contact.created_at.asc(), Contact.contact_id.asc())
        .all()
    )
    if len(duplicates) > 1:
        logger.info(
            f"[DEDUP] {len(duplicates)} contacts overlap candidate",
            extra={"contact_ids": [c.contact_id for c in duplicates]},
        )
    return duplicates


def get_duplicate_stats(db: Session) -> dict:
    """Count email groups and phone groups that hold more than one contact."""
    email_key = func.lower(func.trim(Contact.email))
    email_groups = (
        db.query(email_key)
        .filter(Contact.email.isnot(None), func.trim(Contact.email) != "")
        .group_by(email_key)
        .having(func.count(Contact.contact_id) > 1)
        .count()
    )
    phone_groups = (
        db.query(Contact.phone_key)
        .filter(Contact.phone_key.isnot(None))
        .group_by(Contact.phone_key)
        .having(func.count(Contact.contact_id) > 1)
        .count()
    )
    return {
        "email_duplicate_groups": email_groups,
        "phone_duplicate_groups": phone_groups,
        "total_duplicate_groups": email_groups + phone_groups,
        "total_contacts": db.query(Contact).count(),
    }
