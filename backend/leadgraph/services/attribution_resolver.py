"""Attribution Resolver.

WHAT:
    Last-touch attribution of a conversion (lead, appointment, sale) to the
    ad touchpoint that acquired the contact.

WHY:
    Reporting needs one answer per contact that is identical across the lead,
    appointment and sales views. Every window check is therefore anchored on
    the contact's `created_at`, never on the conversion's own timestamp: a
    sale 200 days after the lead still belongs to the lead's ad.

STRATEGY CHAIN (first success wins):
    1. session:  latest session of the contact (by contact_id or visitor_id)
                 that started before the anchor, carries an ad_id known to the
                 touchpoint feed, and whose channel / source_platform /
                 utm_source contains an ad-platform keyword
    2. fallback: contact.rstk_adid when rstk_source contains a keyword and a
                 touchpoint for that ad exists in [anchor_date - 3d, anchor_date]
    3. None:     unattributed (an explicit result, never a default campaign)

REFERENCES:
    - leadgraph/services/attribution_report.py (consumer)
    - https://support.google.com/analytics/answer/10596866 (last-click model)
"""

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import exists, or_
from sqlalchemy.orm import Session

from leadgraph.models import AdTouchpoint, Contact, TrackingSession

logger = logging.getLogger(__name__)


DEFAULT_AD_PLATFORM_KEYWORDS = (
    "facebook", "fb", "meta", "instagram", "google", "gclid", "adwords", "tiktok", "cpc", "paid",
)

STRATEGY_SESSION = "session"
STRATEGY_FALLBACK = "fallback"


# =============================================================================
# TYPES
# =============================================================================

class ConversionKind(str, enum.Enum):
    lead = "lead"
    appointment = "appointment"
    sale = "sale"


@dataclass(frozen=True)
class ConversionEvent:
    """A conversion to attribute. Only `contact_id` drives the answer."""
    kind: ConversionKind
    contact_id: str
    occurred_at: Optional[datetime] = None
    reference_id: Optional[str] = None


@dataclass(frozen=True)
class AttributionWindow:
    """Trailing window bounds.

    fallback_days: touchpoint must be dated within this many days before the
        anchor date (inclusive) for the rstk_adid fallback
    session_lookback_days: optional bound on how old a qualifying session may
        be; None means any session before the anchor
    """
    fallback_days: int = 3
    session_lookback_days: Optional[int] = None


@dataclass(frozen=True)
class AttributionResult:
    ad_id: str
    campaign_id: Optional[str]
    adset_id: Optional[str]
    touchpoint_date: date
    strategy: str
    anchor_at: datetime
    session_id: Optional[str] = None
    ad_name: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_name: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ad_id": self.ad_id,
            "ad_name": self.ad_name,
            "campaign_id": self.campaign_id,
            "campaign_name": self.campaign_name,
            "adset_id": self.adset_id,
            "adset_name": self.adset_name,
            "touchpoint_date": self.touchpoint_date.isoformat(),
            "strategy": self.strategy,
            "session_id": self.session_id,
            "anchor_at": self.anchor_at.isoformat(),
        }


def matches_keywords(keywords: Iterable[str], *values: Optional[str]) -> bool:
    """Case-insensitive substring match of any keyword in any value."""
    haystacks = [v.lower() for v in values if v]
    return any(keyword in haystack for haystack in haystacks for keyword in keywords)


# =============================================================================
# RESOLVER
# =============================================================================

class AttributionResolver:
    """Read-only resolver; safe to run concurrently with writers."""

    def __init__(
        self,
        db: Session,
        keywords: Sequence[str] = DEFAULT_AD_PLATFORM_KEYWORDS,
        window: AttributionWindow = AttributionWindow(),
    ):
        self.db = db
        self.keywords = tuple(k.lower() for k in keywords)
        self.window = window

    @classmethod
    def from_settings(cls, db: Session, settings) -> "AttributionResolver":
        return cls(
            db,
            keywords=settings.ad_platform_keywords,
            window=AttributionWindow(
                fallback_days=settings.FALLBACK_WINDOW_DAYS,
                session_lookback_days=settings.SESSION_LOOKBACK_DAYS,
            ),
        )

    def attribute(self, event: ConversionEvent) -> Optional[AttributionResult]:
        """Attribute one conversion event; None means unattributed."""
        contact = self.db.get(Contact, event.contact_id)
        if contact is None:
            logger.warning(f"[ATTRIBUTION] Unknown contact {event.contact_id} for {event.kind.value}")
            return None
        return self.attribute_contact(contact)

    def attribute_contacts(self, contacts: Iterable[Contact]) -> Dict[str, Optional[AttributionResult]]:
        """One result per contact, shared by all of its conversions."""
        return {contact.contact_id: self.attribute_contact(contact) for contact in contacts}

    def attribute_contact(self, contact: Contact) -> Optional[AttributionResult]:
        anchor = contact.created_at
        result = self._from_sessions(contact, anchor) or self._from_fallback(contact, anchor)
        if result is None:
            logger.debug(f"[ATTRIBUTION] {contact.contact_id} unattributed")
        return result

    # -- strategy 1 ----------------------------------------------------------

    def _from_sessions(self, contact: Contact, anchor: datetime) -> Optional[AttributionResult]:
        owners = [TrackingSession.contact_id == contact.contact_id]
        if contact.visitor_id:
            owners.append(TrackingSession.visitor_id == contact.visitor_id)

        known_ad = exists().where(AdTouchpoint.ad_id == TrackingSession.ad_id)
        query = self.db.query(TrackingSession).filter(
            or_(*owners),
            TrackingSession.started_at < anchor,
            TrackingSession.ad_id.isnot(None),
            known_ad,
        )
        if self.window.session_lookback_days is not None:
            query = query.filter(
                TrackingSession.started_at >= anchor - timedelta(days=self.window.session_lookback_days)
            )

        sessions: List[TrackingSession] = (
            query.order_by(TrackingSession.started_at.desc(), TrackingSession.session_id.desc()).all()
        )
        for session in sessions:
            if not matches_keywords(self.keywords, session.channel, session.source_platform, session.utm_source):
                continue
            touchpoint = self._touchpoint_near(session.ad_id, anchor.date())
            logger.debug(f"[ATTRIBUTION] {contact.contact_id} -> {session.ad_id} via session {session.session_id}")
            return _result(touchpoint, STRATEGY_SESSION, anchor, session.session_id)
        return None

    def _touchpoint_near(self, ad_id: str, anchor_date: date) -> AdTouchpoint:
        """Latest touchpoint on or before the anchor date, else the earliest one."""
        base = self.db.query(AdTouchpoint).filter(AdTouchpoint.ad_id == ad_id)
        before = (
            base.filter(AdTouchpoint.date <= anchor_date)
            .order_by(AdTouchpoint.date.desc(), AdTouchpoint.platform.asc())
            .first()
        )
        if before is not None:
            return before
        return base.order_by(AdTouchpoint.date.asc(), AdTouchpoint.platform.asc()).first()

    # -- strategy 2 ----------------------------------------------------------

    def _from_fallback(self, contact: Contact, anchor: datetime) -> Optional[AttributionResult]:
        if not contact.rstk_adid or not matches_keywords(self.keywords, contact.rstk_source):
            return None

        anchor_date = anchor.date()
        touchpoint = (
            self.db.query(AdTouchpoint)
            .filter(
                AdTouchpoint.ad_id == contact.rstk_adid,
                AdTouchpoint.date >= anchor_date - timedelta(days=self.window.fallback_days),
                AdTouchpoint.date <= anchor_date,
            )
            .order_by(AdTouchpoint.date.desc(), AdTouchpoint.platform.asc())
            .first()
        )
        if touchpoint is None:
            return None

        logger.debug(f"[ATTRIBUTION] {contact.contact_id} -> {contact.rstk_adid} via fallback")
        return _result(touchpoint, STRATEGY_FALLBACK, anchor)


def _result(touchpoint: AdTouchpoint, strategy: str, anchor: datetime, session_id: Optional[str] = None):
    return AttributionResult(
        ad_id=touchpoint.ad_id,
        campaign_id=touchpoint.campaign_id,
        adset_id=touchpoint.adset_id,
        touchpoint_date=touchpoint.date,
        strategy=strategy,
        anchor_at=anchor,
        session_id=session_id,
        ad_name=touchpoint.ad_name,
        campaign_name=touchpoint.campaign_name,
        adset_name=touchpoint.adset_name,
    )
