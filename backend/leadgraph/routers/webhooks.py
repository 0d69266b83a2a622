"""CRM webhook endpoints.

WHAT:
    POST /webhooks/contacts, /webhooks/payments, /webhooks/appointments
    adapting CRM JSON payloads to conversion ingestion.

WHY:
    Thin HTTP seam: payload parsing and status-code mapping live here, all
    identity and merge decisions live in the services.

ERRORS:
    ConversionValidationError -> 422 with the missing fields
    TransactionError          -> 503 (rolled back, safe for the CRM to retry)

REFERENCES:
    - leadgraph/services/conversion_ingestion.py
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_lock_provider, get_settings, Settings
from ..errors import ConversionValidationError, TransactionError
from ..schemas import (
    AppointmentWebhook,
    ContactIngestionOut,
    ContactOut,
    ContactWebhook,
    PaymentWebhook,
    SessionLinkOut,
)
from ..services.conversion_ingestion import (
    process_appointment_webhook,
    process_contact_webhook,
    process_payment_webhook,
)
from ..services.named_lock import NamedLockProvider

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ConversionValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.to_dict())
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_dict())


@router.post("/contacts", response_model=ContactIngestionOut)
def receive_contact(
    payload: ContactWebhook,
    db: Session = Depends(get_db),
    locks: NamedLockProvider = Depends(get_lock_provider),
    settings: Settings = Depends(get_settings),
):
    """Create or unify a contact and link its visitor's sessions.

    Raises:
        HTTPException 422: ext_crm_id missing
        HTTPException 503: unification rolled back
    """
    try:
        result = process_contact_webhook(db, payload, locks, settings)
    except (ConversionValidationError, TransactionError) as e:
        raise _http_error(e)

    link = result.session_link
    return ContactIngestionOut(
        contact=ContactOut.model_validate(result.contact),
        session_link=SessionLinkOut(
            primary_identity_id=link.primary_identity_id,
            visitor_ids=link.visitor_ids,
            sessions_linked=link.sessions_linked,
            skipped=link.skipped,
        ) if link else None,
    )


@router.post("/payments")
def receive_payment(payload: PaymentWebhook, db: Session = Depends(get_db)):
    """Record a payment (idempotent on transaction_id)."""
    try:
        payment = process_payment_webhook(db, payload)
    except (ConversionValidationError, TransactionError) as e:
        raise _http_error(e)

    return {
        "transaction_id": payment.transaction_id,
        "contact_id": payment.contact_id,
        "amount": float(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
    }


@router.post("/appointments")
def receive_appointment(payload: AppointmentWebhook, db: Session = Depends(get_db)):
    """Record an appointment (idempotent on appointment_id)."""
    try:
        appointment = process_appointment_webhook(db, payload)
    except (ConversionValidationError, TransactionError) as e:
        raise _http_error(e)

    return {
        "appointment_id": appointment.appointment_id,
        "contact_id": appointment.contact_id,
        "scheduled_at": appointment.scheduled_at,
        "status": appointment.status,
    }
