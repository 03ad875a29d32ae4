"""
Aggregate status of a Content derived from its publications.

    any PUBLISHING                    -> PUBLISHING
    all PUBLISHED                     -> PUBLISHED
    all FAILED                        -> FAILED
    some PUBLISHED/FAILED, rest mixed -> PARTIALLY_PUBLISHED
    otherwise (incl. none counted)    -> SCHEDULED if content.scheduled_at else DRAFT

SKIPPED and CANCELLED publications are left out of the count. The result is
cached on contents.status; the publications remain the source of truth.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from postflow.models import Content, ContentStatus, PublicationStatus
from postflow.services.publication_repository import PublicationRepository

logger = logging.getLogger(__name__)

_EXCLUDED = {PublicationStatus.skipped.value, PublicationStatus.cancelled.value}


def compute_content_status(statuses: Iterable[str], scheduled_at: datetime | None) -> ContentStatus:
    counted = [s for s in statuses if s not in _EXCLUDED]
    if PublicationStatus.publishing.value in counted:
        return ContentStatus.publishing
    if counted:
        if all(s == PublicationStatus.published.value for s in counted):
            return ContentStatus.published
        if all(s == PublicationStatus.failed.value for s in counted):
            return ContentStatus.failed
        if any(s in (PublicationStatus.published.value, PublicationStatus.failed.value) for s in counted):
            return ContentStatus.partially_published
    return ContentStatus.scheduled if scheduled_at else ContentStatus.draft


async def refresh_content_status(session: AsyncSession, content_id: str) -> tuple[Content | None, bool]:
    """Recompute and cache the status. Returns (content, changed). Caller commits."""
    content = await session.get(Content, content_id)
    if content is None:
        return None, False
    publications = await PublicationRepository(session).list_for_content(content_id)
    status = compute_content_status((p.status for p in publications), content.scheduled_at)
    if content.status == status.value:
        return content, False
    logger.info(f"[content] {content_id}: {content.status} -> {status.value}")
    content.status = status.value
    return content, True
