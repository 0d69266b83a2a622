"""Conversion ingestion (contact, payment and appointment webhooks).

WHAT:
    Turns CRM webhook payloads into unified contacts and conversion rows:
        contact:     finder -> merger (or create) -> best-effort session linking
        payment:     resolve owner -> upsert on transaction_id -> status client
        appointment: resolve owner -> upsert on appointment_id -> status appointment

WHY:
    - Webhooks are retried and duplicated by the CRM; natural keys make a
      replay a no-op instead of a second sale
    - Owner resolution goes through the same finder/merger so a payment for a
      person known under two records lands on the single master
    - Session linking is a secondary effect: its failure never fails the
      webhook that triggered it

REFERENCES:
    - leadgraph/routers/webhooks.py (HTTP surface)
    - leadgraph/services/contact_merger.py
    - leadgraph/services/session_linker.py
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from leadgraph.database import insert_ignore
from leadgraph.deps import Settings, get_settings
from leadgraph.errors import ConversionValidationError, TransactionError
from leadgraph.models import (
    Appointment,
    Contact,
    ContactStatusEnum,
    Payment,
    PaymentStatusEnum,
)
from leadgraph.schemas import AppointmentWebhook, ContactWebhook, PaymentWebhook
from leadgraph.services.contact_duplicates import ContactCandidate
from leadgraph.services.contact_merger import find_or_create_unified, unify_or_create
from leadgraph.services.named_lock import NamedLockProvider
from leadgraph.services.session_linker import LinkResult, SessionLinker, link_sessions_best_effort
from leadgraph.utils.normalize import is_blank

logger = logging.getLogger(__name__)


@dataclass
class ContactIngestionResult:
    contact: Contact
    session_link: Optional[LinkResult] = None


def _require(payload, fields: List[str]) -> None:
    missing = [name for name in fields if is_blank(getattr(payload, name))]
    if missing:
        logger.warning(f"[WEBHOOK] Rejected {type(payload).__name__}: missing {missing}")
        raise ConversionValidationError(missing)


# =============================================================================
# CONTACTS
# =============================================================================

def process_contact_webhook(
    db: Session,
    payload: ContactWebhook,
    locks: NamedLockProvider,
    settings: Optional[Settings] = None,
) -> ContactIngestionResult:
    """Unify the contact, then link its visitor's sessions (best effort).

    Raises:
        ConversionValidationError: ext_crm_id missing, nothing written
        ContactMergeError: unification rolled back
    """
    _require(payload, ["ext_crm_id"])
    settings = settings or get_settings()

    candidate = ContactCandidate(
        ext_crm_id=payload.ext_crm_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        phone=payload.phone,
        company=payload.company,
        visitor_id=payload.visitor_id,
        rstk_adid=payload.rstk_adid,
        rstk_source=payload.rstk_source,
        source=payload.source,
        status=payload.status,
    )
    contact = find_or_create_unified(db, candidate)
    logger.info(f"[WEBHOOK] Contact {payload.ext_crm_id} -> {contact.contact_id}")

    visitor_id = payload.visitor_id or contact.visitor_id
    link = None
    if visitor_id:
        linker = SessionLinker.from_settings(db, locks, settings)
        session = linker.latest_session_for_visitor(visitor_id)
        if session is None:
            logger.info(f"[WEBHOOK] No sessions yet for visitor {visitor_id}; retro-link job will retry")
        link = link_sessions_best_effort(linker, contact.contact_id, session)

    return ContactIngestionResult(contact=contact, session_link=link)


# =============================================================================
# PAYMENTS / APPOINTMENTS
# =============================================================================

def _owner_candidate(payload, status: Optional[str]) -> ContactCandidate:
    return ContactCandidate(
        ext_crm_id=payload.ext_crm_id,
        email=payload.email,
        phone=payload.phone,
        status=status,
    )


def process_payment_webhook(db: Session, payload: PaymentWebhook) -> Payment:
    """Record a payment idempotently; a replay only refreshes amount/description.

    Raises:
        ConversionValidationError: transaction_id, amount or ext_crm_id missing
        TransactionError: rolled back
    """
    _require(payload, ["transaction_id", "amount", "ext_crm_id"])

    completed = payload.status == PaymentStatusEnum.completed.value
    owner_status = ContactStatusEnum.client.value if completed else None
    now = datetime.utcnow()

    try:
        contact = unify_or_create(db, _owner_candidate(payload, owner_status))
        created = insert_ignore(
            db,
            Payment,
            {
                "transaction_id": payload.transaction_id,
                "contact_id": contact.contact_id,
                "amount": payload.amount,
                "currency": payload.currency,
                "status": payload.status,
                "payment_method": payload.payment_method or "unknown",
                "description": payload.description,
                "paid_at": payload.paid_at or now,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["transaction_id"],
        )
        payment = db.query(Payment).filter(Payment.transaction_id == payload.transaction_id).one()
        if not created:
            payment.amount = payload.amount
            payment.description = payload.description
            payment.updated_at = now
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"[WEBHOOK] Payment {payload.transaction_id} failed, rolled back: {e}")
        raise TransactionError(f"Payment ingestion failed for {payload.transaction_id}", cause=e) from e

    db.refresh(payment)
    logger.info(
        f"[WEBHOOK] Payment {payload.transaction_id} {'recorded' if created else 'replayed'} "
        f"for {payment.contact_id}"
    )
    return payment


def process_appointment_webhook(db: Session, payload: AppointmentWebhook) -> Appointment:
    """Record an appointment idempotently on appointment_id.

    Raises:
        ConversionValidationError: appointment_id or ext_crm_id missing
        TransactionError: rolled back
    """
    _require(payload, ["appointment_id", "ext_crm_id"])
    now = datetime.utcnow()

    try:
        contact = unify_or_create(db, _owner_candidate(payload, ContactStatusEnum.appointment.value))
        values = {
            "title": payload.title or "Untitled appointment",
            "scheduled_at": payload.scheduled_at or now,
            "duration_minutes": payload.duration_minutes,
            "status": payload.status,
            "notes": payload.notes,
        }
        created = insert_ignore(
            db,
            Appointment,
            {
                "appointment_id": payload.appointment_id,
                "contact_id": contact.contact_id,
                "created_at": now,
                "updated_at": now,
                **values,
            },
            index_elements=["appointment_id"],
        )
        appointment = db.get(Appointment, payload.appointment_id)
        if not created:
            for name, value in values.items():
                setattr(appointment, name, value)
            appointment.updated_at = now
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"[WEBHOOK] Appointment {payload.appointment_id} failed, rolled back: {e}")
        raise TransactionError(f"Appointment ingestion failed for {payload.appointment_id}", cause=e) from e

    db.refresh(appointment)
    logger.info(f"[WEBHOOK] Appointment {payload.appointment_id} stored for {appointment.contact_id}")
    return appointment
