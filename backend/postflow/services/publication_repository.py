"""
Durable store of Publication rows.

Status changes are compare-and-set UPDATEs guarded by the allowed-from set in
models.ALLOWED_TRANSITIONS, so a row that reached PUBLISHED / FAILED /
CANCELLED / SKIPPED is never moved again, no matter who races whom. The
repository never commits; callers own the transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.models import ALLOWED_TRANSITIONS, Publication, PublicationStatus

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class PublicationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields: Any) -> Publication:
        publication = Publication(**fields)
        self.session.add(publication)
        await self.session.flush()
        return publication

    async def get_by_client_request_id(
        self, workspace_id: str, brand_id: str, client_request_id: str
    ) -> Publication | None:
        result = await self.session.execute(
            sa.select(Publication).where(
                Publication.workspace_id == workspace_id,
                Publication.brand_id == brand_id,
                Publication.client_request_id == client_request_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, publication_id: str, workspace_id: str) -> Publication | None:
        result = await self.session.execute(
            sa.select(Publication)
            .where(
                Publication.id == publication_id,
                Publication.workspace_id == workspace_id,
                Publication.deleted_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        publication_id: str,
        new_status: PublicationStatus,
        *,
        job_id: str | None = None,
        **fields: Any,
    ) -> bool:
        """Move a publication to `new_status` if its current status allows it.

        Returns False when the row is missing or its status forbids the move.
        PUBLISHING -> PUBLISHING is only accepted for the same job_id.
        """
        allowed = ALLOWED_TRANSITIONS.get(new_status, frozenset())
        now = datetime.now(timezone.utc)

        values: dict[str, Any] = {"status": new_status.value, "updated_at": now, **fields}
        if new_status == PublicationStatus.published:
            values.update(published_at=now, failed_at=None)
        elif new_status == PublicationStatus.failed:
            values.update(failed_at=now, published_at=None)
        else:
            values.update(published_at=None, failed_at=None)

        from_statuses = [s.value for s in allowed if s != new_status]
        condition = Publication.status.in_(from_statuses)
        if new_status in allowed:
            if job_id is None:
                return False
            condition = sa.or_(
                condition,
                sa.and_(Publication.status == new_status.value, Publication.job_id == job_id),
            )
        if job_id is not None:
            values["job_id"] = job_id

        result = await self.session.execute(
            sa.update(Publication)
            .where(Publication.id == publication_id, condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount > 0
        if not changed:
            logger.info(f"[publications] {publication_id}: transition to {new_status.value} refused")
        return changed

    async def set_job_id(self, publication_id: str, job_id: str) -> None:
        """Record the queue job id unless a worker already claimed the row with its own."""
        await self.session.execute(
            sa.update(Publication)
            .where(Publication.id == publication_id, Publication.job_id.is_(None))
            .values(job_id=job_id, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    async def list_by_brand(
        self,
        workspace_id: str,
        brand_id: str,
        *,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        status: PublicationStatus | None = None,
    ) -> tuple[list[Publication], str | None]:
        """Newest first, keyset-paginated on (created_at, id). Returns (items, next_cursor)."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        query = sa.select(Publication).where(
            Publication.workspace_id == workspace_id,
            Publication.brand_id == brand_id,
            Publication.deleted_at.is_(None),
        )
        if status is not None:
            query = query.where(Publication.status == status.value)
        if cursor:
            anchor = await self.get_by_id(cursor, workspace_id)
            if anchor is not None:
                query = query.where(
                    sa.or_(
                        Publication.created_at < anchor.created_at,
                        sa.and_(Publication.created_at == anchor.created_at, Publication.id < anchor.id),
                    )
                )
        query = query.order_by(Publication.created_at.desc(), Publication.id.desc()).limit(limit + 1)
        rows = list((await self.session.execute(query)).scalars().all())
        next_cursor = rows[limit - 1].id if len(rows) > limit else None
        return rows[:limit], next_cursor

    async def list_for_content(self, content_id: str) -> list[Publication]:
        result = await self.session.execute(
            sa.select(Publication)
            .where(Publication.content_id == content_id, Publication.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_orphaned_scheduled(self, created_before: datetime, limit: int = 100) -> list[Publication]:
        """SCHEDULED rows whose job was never enqueued."""
        result = await self.session.execute(
            sa.select(Publication)
            .where(
                Publication.status == PublicationStatus.scheduled.value,
                Publication.job_id.is_(None),
                Publication.deleted_at.is_(None),
                Publication.created_at < created_before,
            )
            .order_by(Publication.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_stuck_publishing(self, updated_before: datetime, limit: int = 100) -> list[Publication]:
        result = await self.session.execute(
            sa.select(Publication)
            .where(
                Publication.status == PublicationStatus.publishing.value,
                Publication.updated_at < updated_before,
            )
            .order_by(Publication.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())
