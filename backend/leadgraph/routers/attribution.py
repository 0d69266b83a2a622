"""Attribution endpoints.

WHAT:
    - Per-contact attribution lookup
    - Ad / adset / campaign attribution report with the unattributed bucket
    - Bulk touchpoint replacement for the ad-platform sync

WHY:
    Dashboards read attribution results from here instead of re-deriving them
    in SQL per metric, so leads, appointments and sales always agree.

REFERENCES:
    - leadgraph/services/attribution_resolver.py
    - leadgraph/services/attribution_report.py
    - leadgraph/services/touchpoint_sync.py
"""

import logging
from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_settings
from ..errors import TouchpointSyncError
from ..models import Contact
from ..schemas import AttributionOut, ContactAttributionOut, TouchpointReplaceRequest
from ..services.attribution_report import build_attribution_report
from ..services.attribution_resolver import AttributionResolver
from ..services.touchpoint_sync import TouchpointRecord, replace_touchpoints
from ..workers.arq_enqueue import enqueue_touchpoint_replace

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/attribution",
    tags=["Attribution"],
)


@router.get("/contacts/{contact_id}", response_model=ContactAttributionOut)
def get_contact_attribution(
    contact_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Last-touch attribution of a contact (shared by all its conversions).

    Raises:
        HTTPException 404: Unknown contact
    """
    contact = db.get(Contact, contact_id)
    if contact is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")

    result = AttributionResolver.from_settings(db, settings).attribute_contact(contact)
    return ContactAttributionOut(
        contact_id=contact_id,
        attributed=result is not None,
        attribution=AttributionOut(**result.to_dict()) if result else None,
    )


@router.get("/report")
def get_attribution_report(
    start: date = Query(..., description="First contact creation date (inclusive)"),
    end: date = Query(..., description="Last contact creation date (inclusive)"),
    level: Literal["ad", "adset", "campaign"] = Query("ad"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Spend, funnel and ROAS rollup for contacts created in [start, end]."""
    if end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must not be before start")

    resolver = AttributionResolver.from_settings(db, settings)
    return build_attribution_report(db, start, end, level=level, resolver=resolver)


@router.post("/touchpoints/replace")
def replace_ad_touchpoints(payload: TouchpointReplaceRequest, db: Session = Depends(get_db)):
    """Atomically replace one platform's touchpoints for a date range.

    Raises:
        HTTPException 422: A touchpoint is dated outside the range
        HTTPException 503: Replacement rolled back
    """
    records = [TouchpointRecord(**tp.model_dump()) for tp in payload.touchpoints]
    try:
        return replace_touchpoints(db, payload.platform, payload.start, payload.end, records)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except TouchpointSyncError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())


@router.post("/touchpoints/replace/enqueue", status_code=status.HTTP_202_ACCEPTED)
async def enqueue_ad_touchpoints_replace(payload: TouchpointReplaceRequest):
    """Queue a large touchpoint replacement on the ARQ worker.

    Raises:
        HTTPException 400: start is after end
    """
    if payload.start > payload.end:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start must be on or before end")
    touchpoints = [tp.model_dump(mode="json") for tp in payload.touchpoints]
    return await enqueue_touchpoint_replace(payload.platform, payload.start, payload.end, touchpoints)
