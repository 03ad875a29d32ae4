"""
Watchdog: reconciles publications the queue lost track of.

- SCHEDULED, job_id IS NULL, created more than ORPHAN_SCHEDULED_MINUTES ago:
  the row committed but its enqueue failed or the process died. Re-enqueued
  with the remaining delay.
- PUBLISHING, not updated for STUCK_PUBLISHING_MINUTES: the worker died
  mid-attempt. Marked FAILED.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from postflow.errors import QueueError
from postflow.models import PublicationPlatform, PublicationStatus, as_utc
from postflow.services.content_status import refresh_content_status
from postflow.services.notify import notify_warn
from postflow.services.publication_queue import PublishQueue, build_job
from postflow.services.publication_repository import PublicationRepository
from postflow.services.publication_service import compute_delay_ms
from postflow.settings import get_settings

logger = logging.getLogger(__name__)


async def reconcile_publications(
    session: AsyncSession,
    queue: PublishQueue,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Re-enqueue orphaned SCHEDULED rows and fail stuck PUBLISHING ones.

    Returns a report dict.
    """
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    repo = PublicationRepository(session)

    orphans = await repo.find_orphaned_scheduled(now - timedelta(minutes=settings.orphan_scheduled_minutes))
    stuck = await repo.find_stuck_publishing(now - timedelta(minutes=settings.stuck_publishing_minutes))

    items: list[dict] = []

    for publication in orphans:
        item = {
            "publication_id": publication.id,
            "old_status": publication.status,
            "action": "would_requeue",
        }
        if not dry_run:
            delay_ms = compute_delay_ms(publication.scheduled_at, now)
            try:
                job_id = queue.enqueue(
                    PublicationPlatform(publication.platform),
                    build_job(publication.id, publication.workspace_id, publication.brand_id),
                    delay_ms,
                )
            except QueueError as exc:
                item.update(action="requeue_failed", error=exc.message)
            else:
                await repo.set_job_id(publication.id, job_id)
                item.update(action="requeued", job_id=job_id, delay_ms=delay_ms)
        items.append(item)

    for publication in stuck:
        age_minutes = (now - as_utc(publication.updated_at)).total_seconds() / 60
        error_msg = f"watchdog: stuck publishing > {settings.stuck_publishing_minutes}m (age={age_minutes:.0f}m)"
        item = {
            "publication_id": publication.id,
            "old_status": publication.status,
            "age_minutes": round(age_minutes),
            "action": "would_mark_failed",
            "error_message": error_msg,
        }
        if not dry_run:
            changed = await repo.update_status(
                publication.id,
                PublicationStatus.failed,
                provider_response_json={"error": "STUCK_PUBLISHING", "message": error_msg, "jobId": publication.job_id},
            )
            item["action"] = "marked_failed" if changed else "skipped"
            if changed and publication.content_id:
                await refresh_content_status(session, publication.content_id)
        items.append(item)

    if not dry_run and items:
        await session.commit()
        summary = ", ".join(f"{it['publication_id']}({it['action']})" for it in items[:10])
        await notify_warn(f"Watchdog: {len(items)} publications reconciled", summary)

    logger.info(
        f"[reconcile] orphaned={len(orphans)} stuck={len(stuck)} dry_run={dry_run}"
    )
    return {
        "orphaned_scheduled": len(orphans),
        "stuck_publishing": len(stuck),
        "items": items,
        "dry_run": dry_run,
        "run_at": now.isoformat(),
    }
