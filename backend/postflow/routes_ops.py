"""
Operations endpoints: reconciliation sweep and publication health.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.db import get_session
from postflow.models import Publication, PublicationStatus
from postflow.routes_publications import get_publish_queue
from postflow.services.publication_queue import PublishQueue
from postflow.services.watchdog_service import reconcile_publications
from postflow.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ops", tags=["ops"])

SessionDep = Depends(get_session)


@router.post("/reconcile")
async def run_reconcile_endpoint(
    dry_run: bool = Query(default=True),
    session: AsyncSession = SessionDep,
    queue: PublishQueue = Depends(get_publish_queue),
):
    """Re-enqueue orphaned SCHEDULED publications and fail stuck PUBLISHING ones."""
    return await reconcile_publications(session, queue, dry_run=dry_run)


@router.get("/health")
async def health_endpoint(session: AsyncSession = SessionDep):
    """Publication counts by status plus rows the next sweep would touch."""
    settings = get_settings()
    now = datetime.now(timezone.utc)

    counts_q = await session.execute(
        select(Publication.status, func.count(Publication.id))
        .where(Publication.deleted_at.is_(None))
        .group_by(Publication.status)
    )
    counts = {row[0]: row[1] for row in counts_q.all()}

    orphan_q = await session.execute(
        select(func.count(Publication.id)).where(and_(
            Publication.status == PublicationStatus.scheduled.value,
            Publication.job_id.is_(None),
            Publication.created_at < now - timedelta(minutes=settings.orphan_scheduled_minutes),
        ))
    )
    stuck_q = await session.execute(
        select(func.count(Publication.id)).where(and_(
            Publication.status == PublicationStatus.publishing.value,
            Publication.updated_at < now - timedelta(minutes=settings.stuck_publishing_minutes),
        ))
    )
    return {
        "counts": counts,
        "orphaned_scheduled": orphan_q.scalar() or 0,
        "stuck_publishing": stuck_q.scalar() or 0,
        "checked_at": now.isoformat(),
    }
