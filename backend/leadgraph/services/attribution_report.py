"""Attribution report rollups.

WHAT:
    Spend, clicks, reach, leads, appointments, sales, revenue, CPL and ROAS per
    ad / adset / campaign for contacts created in a date range, plus an
    explicit `unattributed` bucket.

WHY:
    Reporting reads attribution results; it never re-derives them. Each contact
    is resolved once and that single result feeds the lead, appointment and
    sales columns, so the three views always agree.

REFERENCES:
    - leadgraph/services/attribution_resolver.py
    - leadgraph/routers/attribution.py (HTTP surface)
"""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from leadgraph.models import AdTouchpoint, Appointment, Contact, Payment, PaymentStatusEnum
from leadgraph.services.attribution_resolver import AttributionResolver

logger = logging.getLogger(__name__)

LEVEL_COLUMNS = {
    "ad": ("ad_id", "ad_name"),
    "adset": ("adset_id", "adset_name"),
    "campaign": ("campaign_id", "campaign_name"),
}


def _empty_row(key: Optional[str], name: Optional[str]) -> dict:
    return {
        "id": key,
        "name": name,
        "spend": 0.0,
        "clicks": 0,
        "reach": 0,
        "leads": 0,
        "appointments": 0,
        "sales": 0,
        "revenue": 0.0,
    }


def _finish(row: dict) -> dict:
    row["spend"] = round(row["spend"], 2)
    row["revenue"] = round(row["revenue"], 2)
    row["cpl"] = round(row["spend"] / row["leads"], 2) if row["leads"] else None
    row["roas"] = round(row["revenue"] / row["spend"], 2) if row["spend"] else None
    return row


def build_attribution_report(
    db: Session,
    start: date,
    end: date,
    level: str = "ad",
    resolver: Optional[AttributionResolver] = None,
) -> dict:
    """Roll up attributed conversions of contacts created in [start, end].

    Raises:
        ValueError: unknown level
    """
    if level not in LEVEL_COLUMNS:
        raise ValueError(f"Unknown report level: {level}")
    key_attr, name_attr = LEVEL_COLUMNS[level]
    resolver = resolver or AttributionResolver(db)

    start_at = datetime.combine(start, time.min)
    end_at = datetime.combine(end + timedelta(days=1), time.min)

    rows: Dict[str, dict] = {}

    # Spend side, straight from the touchpoint feed
    key_col = getattr(AdTouchpoint, key_attr)
    spend_rows = (
        db.query(
            key_col.label("key"),
            func.max(getattr(AdTouchpoint, name_attr)).label("name"),
            func.coalesce(func.sum(AdTouchpoint.spend), 0).label("spend"),
            func.coalesce(func.sum(AdTouchpoint.clicks), 0).label("clicks"),
            func.coalesce(func.sum(AdTouchpoint.reach), 0).label("reach"),
        )
        .filter(AdTouchpoint.date >= start, AdTouchpoint.date <= end, key_col.isnot(None))
        .group_by(key_col)
        .all()
    )
    for r in spend_rows:
        row = rows.setdefault(r.key, _empty_row(r.key, r.name))
        row["spend"] += float(r.spend)
        row["clicks"] += int(r.clicks)
        row["reach"] += int(r.reach)

    # Conversion side, one attribution per contact
    contacts = (
        db.query(Contact)
        .filter(Contact.created_at >= start_at, Contact.created_at < end_at)
        .order_by(Contact.created_at.asc())
        .all()
    )
    contact_ids = [c.contact_id for c in contacts]
    attributions = resolver.attribute_contacts(contacts)

    appointments = defaultdict(int)
    sales = defaultdict(int)
    revenue = defaultdict(float)
    if contact_ids:
        for contact_id, count in (
            db.query(Appointment.contact_id, func.count(Appointment.appointment_id))
            .filter(Appointment.contact_id.in_(contact_ids))
            .group_by(Appointment.contact_id)
        ):
            appointments[contact_id] = count
        for contact_id, count, amount in (
            db.query(Payment.contact_id, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
            .filter(
                Payment.contact_id.in_(contact_ids),
                Payment.status == PaymentStatusEnum.completed.value,
            )
            .group_by(Payment.contact_id)
        ):
            sales[contact_id] = count
            revenue[contact_id] = float(amount)

    unattributed = _empty_row(None, "Unattributed")
    for contact in contacts:
        result = attributions[contact.contact_id]
        key = getattr(result, key_attr) if result else None
        if key is None:
            row = unattributed
        else:
            row = rows.setdefault(key, _empty_row(key, getattr(result, name_attr)))
            if row["name"] is None:
                row["name"] = getattr(result, name_attr)
        row["leads"] += 1
        row["appointments"] += appointments[contact.contact_id]
        row["sales"] += sales[contact.contact_id]
        row["revenue"] += revenue[contact.contact_id]

    ordered = sorted(rows.values(), key=lambda r: (-r["spend"], -r["leads"], r["id"]))
    totals = _empty_row(None, "Total")
    for row in ordered + [unattributed]:
        for metric in ("spend", "clicks", "reach", "leads", "appointments", "sales", "revenue"):
            totals[metric] += row[metric]

    logger.info(
        f"[REPORT] {level} report {start}..{end}: {len(ordered)} rows, "
        f"{unattributed['leads']} of {len(contacts)} contacts unattributed"
    )
    return {
        "level": level,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "rows": [_finish(row) for row in ordered],
        "unattributed": _finish(unattributed),
        "totals": _finish(totals),
    }
