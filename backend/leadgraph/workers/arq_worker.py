"""ARQ async worker for the identity and attribution engine.

WHAT:
    Background jobs plus the cron entries that drive the periodic work:
    - link_orphan_contacts_job: every 5 minutes
    - cleanup_duplicates_job:   nightly at 03:30 UTC
    - replace_touchpoints_job / link_contact_sessions_job: on demand

WHY:
    - The engine holds no timers; ARQ cron is the external trigger
    - Each job opens its own session and reports failures to Sentry

USAGE:
    # Start worker
    arq leadgraph.workers.arq_worker.WorkerSettings

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - leadgraph/workers/arq_enqueue.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

from arq import cron

from leadgraph.database import SessionLocal
from leadgraph.deps import get_settings
from leadgraph.errors import LeadgraphError
from leadgraph.models import Contact
from leadgraph.services.contact_merger import cleanup_existing_duplicates
from leadgraph.services.named_lock import build_lock_provider
from leadgraph.services.retroactive_linking import link_orphan_contacts
from leadgraph.services.session_linker import SessionLinker
from leadgraph.services.touchpoint_sync import TouchpointRecord, replace_touchpoints
from leadgraph.telemetry import capture_exception, init_observability
from leadgraph.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# SCHEDULED JOBS
# =============================================================================

async def link_orphan_contacts_job(ctx: Dict) -> Dict:
    """Link sessions for recent contacts whose sessions arrived late."""
    settings = get_settings()
    db = SessionLocal()
    try:
        linker = SessionLinker.from_settings(db, ctx["locks"], settings)
        return await asyncio.to_thread(
            link_orphan_contacts,
            db,
            ctx["locks"],
            lookback_hours=settings.RETRO_LINK_LOOKBACK_HOURS,
            batch_size=settings.RETRO_LINK_BATCH_SIZE,
            session_days=settings.RETRO_LINK_SESSION_DAYS,
            linker=linker,
        )
    except Exception as e:
        logger.exception("[ARQ] Retro-link job failed")
        capture_exception(e, extra={"job": "link_orphan_contacts"})
        raise
    finally:
        db.close()


async def cleanup_duplicates_job(ctx: Dict) -> Dict:
    """Merge all duplicate contact groups, chunked."""
    db = SessionLocal()
    try:
        return await asyncio.to_thread(
            cleanup_existing_duplicates, db, chunk_size=get_settings().CLEANUP_CHUNK_SIZE
        )
    except LeadgraphError as e:
        logger.error(f"[ARQ] Cleanup job failed: {e}")
        capture_exception(e, extra={"job": "cleanup_duplicates"})
        raise
    finally:
        db.close()


# =============================================================================
# ON-DEMAND JOBS
# =============================================================================

async def replace_touchpoints_job(
    ctx: Dict,
    platform: str,
    start: str,
    end: str,
    touchpoints: List[Dict[str, Any]],
) -> Dict:
    records = [
        TouchpointRecord(**{
            **tp,
            "date": date.fromisoformat(str(tp["date"])),
            "spend": Decimal(str(tp.get("spend") or "0")),
        })
        for tp in touchpoints
    ]
    db = SessionLocal()
    try:
        return await asyncio.to_thread(
            replace_touchpoints, db, platform, date.fromisoformat(start), date.fromisoformat(end), records
        )
    except LeadgraphError as e:
        capture_exception(e, extra={"job": "replace_touchpoints", "platform": platform})
        raise
    finally:
        db.close()


def _link_contact_sessions(db, locks, contact_id: str) -> Dict:
    contact = db.get(Contact, contact_id)
    if contact is None or not contact.visitor_id:
        return {"contact_id": contact_id, "status": "no_visitor"}

    linker = SessionLinker.from_settings(db, locks, get_settings())
    session = linker.latest_session_for_visitor(contact.visitor_id)
    if session is None:
        return {"contact_id": contact_id, "status": "no_sessions"}

    result = linker.unify_sessions_on_conversion(contact_id, session)
    return {
        "contact_id": contact_id,
        "status": "skipped" if result.skipped else "linked",
        "sessions_linked": result.sessions_linked,
    }


async def link_contact_sessions_job(ctx: Dict, contact_id: str) -> Dict:
    db = SessionLocal()
    try:
        return await asyncio.to_thread(_link_contact_sessions, db, ctx["locks"], contact_id)
    except LeadgraphError as e:
        capture_exception(e, extra={"job": "link_contact_sessions", "contact_id": contact_id})
        raise
    finally:
        db.close()


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    init_observability()
    ctx["locks"] = build_lock_provider(get_settings())
    logger.info("[ARQ] Worker started")


async def shutdown(ctx: Dict) -> None:
    logger.info("[ARQ] Worker shutting down")


class WorkerSettings:
    """ARQ worker configuration.

    - max_jobs=4: engine jobs are short DB transactions
    - retry_jobs with max_tries=3: every job is idempotent
    """

    functions = [
        link_orphan_contacts_job,
        cleanup_duplicates_job,
        replace_touchpoints_job,
        link_contact_sessions_job,
    ]

    cron_jobs = [
        cron(link_orphan_contacts_job, minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55}, unique=True),
        cron(cleanup_duplicates_job, hour={3}, minute={30}, unique=True),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = get_redis_settings()
    queue_name = QUEUE_NAME

    max_jobs = 4
    job_timeout = 600
    keep_result = 3600
    retry_jobs = True
    max_tries = 3
