"""Contact maintenance endpoints (duplicate stats, cleanup, identity view)."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_settings
from ..errors import ContactMergeError
from ..models import IdentifierTypeEnum, TrackingSession
from ..services.contact_duplicates import get_duplicate_stats
from ..services.contact_merger import cleanup_existing_duplicates
from ..services.fingerprint_scorer import FingerprintSet, analyze_fingerprint_quality
from ..services.identity_graph import IdentityGraph
from ..workers.arq_enqueue import enqueue_cleanup, enqueue_session_link

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/contacts",
    tags=["Contacts"],
)


@router.get("/duplicates/stats")
def duplicate_stats(db: Session = Depends(get_db)):
    return get_duplicate_stats(db)


@router.post("/duplicates/cleanup")
def cleanup_duplicates(
    chunk_size: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Merge all existing email/phone duplicate groups, chunk by chunk.

    Raises:
        HTTPException 503: A chunk failed and was rolled back (earlier chunks stay merged)
    """
    try:
        return cleanup_existing_duplicates(db, chunk_size=chunk_size or settings.CLEANUP_CHUNK_SIZE)
    except ContactMergeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())


@router.get("/{contact_id}/identity")
def contact_identity(contact_id: str, db: Session = Depends(get_db)):
    """Identifiers, stats and latest-session fingerprint quality of the contact's identity.

    Raises:
        HTTPException 404: Contact never linked to an identity
    """
    graph = IdentityGraph(db)
    primary = graph.resolve(IdentifierTypeEnum.contact_id, contact_id)
    if primary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact has no identity yet")

    latest = (
        db.query(TrackingSession)
        .filter(TrackingSession.contact_id == contact_id)
        .order_by(TrackingSession.started_at.desc(), TrackingSession.session_id.desc())
        .first()
    )

    return {
        "stats": graph.get_identity_stats(primary),
        "identifiers": graph.get_all_identifiers(primary),
        "fingerprint_quality": (
            analyze_fingerprint_quality(FingerprintSet.from_session(latest)) if latest else None
        ),
    }


@router.post("/duplicates/cleanup/enqueue", status_code=status.HTTP_202_ACCEPTED)
async def enqueue_duplicate_cleanup():
    """Hand a full cleanup to the ARQ worker; a queued cleanup is not queued twice."""
    return await enqueue_cleanup()


@router.post("/{contact_id}/link-sessions", status_code=status.HTTP_202_ACCEPTED)
async def enqueue_contact_session_link(contact_id: str):
    """Queue session linking for one contact (e.g. after a manual merge)."""
    return await enqueue_session_link(contact_id)
