"""Ad touchpoint replacement.

WHAT:
    Replaces every touchpoint of one platform within [start, end] with a new
    batch from the ad-platform sync, in a single transaction.

WHY:
    The resolver reads touchpoints concurrently with the sync. Delete + insert
    in one transaction means readers see either the old or the new complete
    dataset for the range, never a half-written one.

REFERENCES:
    - leadgraph/workers/arq_worker.py:replace_touchpoints_job
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from leadgraph.errors import TouchpointSyncError
from leadgraph.models import AdTouchpoint

logger = logging.getLogger(__name__)


@dataclass
class TouchpointRecord:
    """One ad-day row as delivered by the platform sync."""
    ad_id: str
    date: date
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    spend: Decimal = Decimal("0")
    clicks: int = 0
    reach: int = 0
    ad_name: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_name: Optional[str] = None


def replace_touchpoints(
    db: Session,
    platform: str,
    start: date,
    end: date,
    records: Iterable[TouchpointRecord],
) -> dict:
    """Swap the platform's touchpoints for [start, end] with `records`.

    Raises:
        ValueError: a record is dated outside the range (nothing written)
        TouchpointSyncError: the swap failed and was rolled back
    """
    records: List[TouchpointRecord] = list(records)
    outside = [r for r in records if not (start <= r.date <= end)]
    if outside:
        raise ValueError(
            f"{len(outside)} touchpoints fall outside {start}..{end} (first: {outside[0].ad_id} {outside[0].date})"
        )

    synced_at = datetime.utcnow()
    try:
        deleted = (
            db.query(AdTouchpoint)
            .filter(
                AdTouchpoint.platform == platform,
                AdTouchpoint.date >= start,
                AdTouchpoint.date <= end,
            )
            .delete(synchronize_session=False)
        )
        db.add_all([
            AdTouchpoint(
                platform=platform,
                ad_id=r.ad_id,
                ad_name=r.ad_name,
                campaign_id=r.campaign_id,
                campaign_name=r.campaign_name,
                adset_id=r.adset_id,
                adset_name=r.adset_name,
                date=r.date,
                spend=r.spend,
                clicks=r.clicks,
                reach=r.reach,
                synced_at=synced_at,
            )
            for r in records
        ])
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"[TOUCHPOINTS] Replace failed for {platform} {start}..{end}, rolled back: {e}")
        raise TouchpointSyncError(f"Touchpoint replacement failed for {platform}", cause=e) from e

    logger.info(
        f"[TOUCHPOINTS] Replaced {platform} {start}..{end}: {deleted} removed, {len(records)} inserted"
    )
    return {"platform": platform, "deleted": deleted, "inserted": len(records)}
