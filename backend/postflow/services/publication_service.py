"""
Publication scheduler: validates, persists and enqueues publications.

Flow for schedule_*_publication:
  1. brand exists in workspace            -> else NotFoundError
  2. social account exists in workspace   -> else NotFoundError
  3. account belongs to the brand          -> else BadRequestError
  4. account platform matches endpoint     -> else BadRequestError
  5. account is ACTIVE                     -> else BadRequestError
  6. clientRequestId seen before           -> return the existing row, no new job
  then: insert SCHEDULED row, commit, enqueue with delay, store job id,
  fire-and-forget "publication.scheduled" activity.

If enqueue fails the row stays SCHEDULED with no job id, the caller gets a
QueueError and the reconciliation sweep re-enqueues it later.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.errors import BadRequestError, ConflictError, NotFoundError
from postflow.models import (
    Content,
    Publication,
    PublicationPlatform,
    PublicationStatus,
    SocialAccountStatus,
    as_utc,
    platform_family,
)
from postflow.schemas import (
    ScheduleFacebookRequest,
    ScheduleInstagramRequest,
    ScheduleRequestBase,
    extract_caption,
    payload_to_json,
)
from postflow.services.activity import ActivityLogger
from postflow.services.content_status import refresh_content_status
from postflow.services.publication_queue import PublishQueue, build_job
from postflow.services.publication_repository import DEFAULT_PAGE_SIZE, PublicationRepository
from postflow.services.realtime import RedisBroadcaster
from postflow.services.social_accounts import SocialAccountDirectory

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_delay_ms(scheduled_at: datetime | None, now: datetime) -> int:
    if scheduled_at is None:
        return 0
    return max(0, int((as_utc(scheduled_at) - now).total_seconds() * 1000))


class PublicationScheduler:
    def __init__(
        self,
        session: AsyncSession,
        queue: PublishQueue,
        *,
        activity: ActivityLogger | None = None,
        broadcaster: RedisBroadcaster | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session = session
        self.queue = queue
        self.activity = activity
        self.broadcaster = broadcaster
        self.clock = clock
        self.publications = PublicationRepository(session)
        self.accounts = SocialAccountDirectory(session)

    async def schedule_instagram_publication(
        self,
        workspace_id: str,
        brand_id: str,
        request: ScheduleInstagramRequest,
        actor_user_id: str | None = None,
    ) -> Publication:
        return await self._schedule(PublicationPlatform.instagram, workspace_id, brand_id, request, actor_user_id)

    async def schedule_facebook_publication(
        self,
        workspace_id: str,
        brand_id: str,
        request: ScheduleFacebookRequest,
        actor_user_id: str | None = None,
    ) -> Publication:
        return await self._schedule(PublicationPlatform.facebook, workspace_id, brand_id, request, actor_user_id)

    async def _schedule(
        self,
        platform: PublicationPlatform,
        workspace_id: str,
        brand_id: str,
        request: ScheduleRequestBase,
        actor_user_id: str | None,
    ) -> Publication:
        if await self.accounts.get_brand(brand_id, workspace_id) is None:
            raise NotFoundError("Brand not found", "BRAND_NOT_FOUND")

        account = await self.accounts.find_by_id_and_workspace(request.social_account_id, workspace_id)
        if account is None:
            raise NotFoundError("Social account not found", "SOCIAL_ACCOUNT_NOT_FOUND")
        if account.brand_id != brand_id:
            raise BadRequestError("Social account does not belong to this brand", "SOCIAL_ACCOUNT_BRAND_MISMATCH")
        if platform_family(account.platform) != platform:
            raise BadRequestError(
                f"Social account platform {account.platform} cannot publish to {platform.value}",
                "SOCIAL_ACCOUNT_PLATFORM_MISMATCH",
            )
        if account.status != SocialAccountStatus.active.value:
            raise BadRequestError(
                f"Social account is {account.status}", "SOCIAL_ACCOUNT_NOT_ACTIVE",
                details={"statusMessage": account.status_message},
            )

        if request.client_request_id:
            existing = await self.publications.get_by_client_request_id(
                workspace_id, brand_id, request.client_request_id
            )
            if existing is not None:
                logger.info(f"[publish] duplicate clientRequestId {request.client_request_id}, returning {existing.id}")
                return existing

        if request.content_id:
            content = await self.session.get(Content, request.content_id)
            if content is None or content.workspace_id != workspace_id or content.brand_id != brand_id:
                raise NotFoundError("Content not found", "CONTENT_NOT_FOUND")

        scheduled_at = as_utc(request.publish_at)
        try:
            publication = await self.publications.create(
                workspace_id=workspace_id,
                brand_id=brand_id,
                social_account_id=account.id,
                content_id=request.content_id,
                platform=platform.value,
                content_type=request.payload.content_type,
                status=PublicationStatus.scheduled.value,
                scheduled_at=scheduled_at,
                caption=extract_caption(request.payload),
                payload_json=payload_to_json(request.payload),
                client_request_id=request.client_request_id,
                created_by_user_id=actor_user_id,
            )
            if request.content_id:
                await refresh_content_status(self.session, request.content_id)
            await self.session.commit()
        except IntegrityError:
            # concurrent request with the same clientRequestId won the insert
            await self.session.rollback()
            existing = None
            if request.client_request_id:
                existing = await self.publications.get_by_client_request_id(
                    workspace_id, brand_id, request.client_request_id
                )
            if existing is None:
                raise
            return existing

        delay_ms = compute_delay_ms(scheduled_at, self.clock())
        job_id = self.queue.enqueue(platform, build_job(publication.id, workspace_id, brand_id), delay_ms)
        await self.publications.set_job_id(publication.id, job_id)
        await self.session.commit()
        publication.job_id = job_id

        logger.info(
            f"[publish] scheduled {platform.value} {publication.content_type} publication {publication.id} "
            f"account={account.id} delay={delay_ms}ms"
        )
        if self.activity is not None:
            self.activity.emit(
                type="publication.scheduled",
                workspace_id=workspace_id,
                scope_id=publication.id,
                actor_type="user" if actor_user_id else "system",
                user_id=actor_user_id,
                source="api",
                metadata={
                    "platform": platform.value,
                    "contentType": publication.content_type,
                    "socialAccountId": account.id,
                    "scheduledAt": scheduled_at.isoformat() if scheduled_at else None,
                },
            )
        return publication

    async def list_brand_publications(
        self,
        workspace_id: str,
        brand_id: str,
        *,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        status: PublicationStatus | None = None,
    ) -> tuple[list[Publication], str | None]:
        if await self.accounts.get_brand(brand_id, workspace_id) is None:
            raise NotFoundError("Brand not found", "BRAND_NOT_FOUND")
        return await self.publications.list_by_brand(
            workspace_id, brand_id, cursor=cursor, limit=limit, status=status
        )

    async def get_publication(self, workspace_id: str, brand_id: str, publication_id: str) -> Publication:
        publication = await self.publications.get_by_id(publication_id, workspace_id)
        if publication is None or publication.brand_id != brand_id:
            raise NotFoundError("Publication not found", "PUBLICATION_NOT_FOUND")
        return publication

    async def cancel_publication(
        self,
        workspace_id: str,
        brand_id: str,
        publication_id: str,
        actor_user_id: str | None = None,
    ) -> Publication:
        publication = await self.get_publication(workspace_id, brand_id, publication_id)
        current_status = publication.status
        if not await self.publications.update_status(publication.id, PublicationStatus.cancelled):
            await self.session.rollback()
            raise ConflictError(
                f"Publication is {current_status}; only SCHEDULED publications can be cancelled",
                "PUBLICATION_NOT_CANCELLABLE",
            )
        content, content_changed = None, False
        if publication.content_id:
            content, content_changed = await refresh_content_status(self.session, publication.content_id)
        await self.session.commit()
        self.queue.revoke(publication.job_id)

        publication = await self.get_publication(workspace_id, brand_id, publication_id)
        logger.info(f"[publish] cancelled publication {publication.id}")
        if self.activity is not None:
            self.activity.emit(
                type="publication.cancelled",
                workspace_id=workspace_id,
                scope_id=publication.id,
                actor_type="user" if actor_user_id else "system",
                user_id=actor_user_id,
                source="api",
                metadata={"platform": publication.platform, "jobId": publication.job_id},
            )
        if self.broadcaster is not None:
            await self.broadcaster.broadcast_event(
                workspace_id,
                "publication.cancelled",
                {"id": publication.id, "status": publication.status, "contentId": publication.content_id},
                brand_id=brand_id,
            )
            if content_changed and content is not None:
                await self.broadcaster.broadcast_event(
                    workspace_id,
                    "content.status.changed",
                    {"id": content.id, "status": content.status},
                    brand_id=brand_id,
                )
        return publication
