"""
Publish worker: runs one delivery attempt for a queued publication.

Per job:
  - publication missing, terminal, or owned by another job -> no-op
  - target account missing or DISCONNECTED                -> SKIPPED
    (FAILED when a retry of this job finds it gone mid-delivery)
  - claim the row (SCHEDULED -> PUBLISHING, compare-and-set on job id)
  - resolve media URLs, run the platform adapter under
    execute_with_credential_refresh
  - success -> PUBLISHED with externalPostId / permalink / provider response
  - transient failure with attempts left -> stay PUBLISHING, record the
    error, ask the queue to retry
  - permanent failure or attempts exhausted -> FAILED

Every outcome is broadcast, logged as activity, and folded into the parent
Content's cached status. Errors never propagate to a caller; they are stored
on the publication.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postflow.errors import PublishError
from postflow.models import (
    TERMINAL_STATUSES,
    Publication,
    PublicationPlatform,
    PublicationStatus,
    SocialAccountStatus,
)
from postflow.services.activity import ActivityLogger
from postflow.services.content_status import refresh_content_status
from postflow.services.credential_store import CredentialStore, execute_with_credential_refresh
from postflow.services.media_resolver import MediaResolver
from postflow.services.notify import notify_publication_failed
from postflow.services.publication_repository import PublicationRepository
from postflow.services.publisher_adapter import PlatformAdapter, PublishResult
from postflow.services.realtime import RedisBroadcaster
from postflow.services.social_accounts import SocialAccountDirectory

logger = logging.getLogger(__name__)

FailureAlert = Callable[[str, str, str, str, str | None], Awaitable[Any]]


@dataclass
class WorkerOutcome:
    status: str
    retry: bool = False
    error: dict | None = None

    def to_dict(self) -> dict:
        return {"status": self.status, "retry": self.retry, "error": self.error}


class PublishWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapters: dict[PublicationPlatform, PlatformAdapter],
        credentials: CredentialStore,
        media: MediaResolver,
        *,
        broadcaster: RedisBroadcaster | None = None,
        activity: ActivityLogger | None = None,
        alert: FailureAlert | None = notify_publication_failed,
    ):
        self._session_factory = session_factory
        self._adapters = adapters
        self._credentials = credentials
        self._media = media
        self._broadcaster = broadcaster
        self._activity = activity
        self._alert = alert

    async def process(
        self,
        job: dict[str, str],
        job_id: str,
        *,
        attempt: int = 1,
        max_attempts: int = 3,
    ) -> WorkerOutcome:
        publication_id = job["publicationId"]
        workspace_id = job["workspaceId"]
        tag = f"[worker][pub={publication_id}][job={job_id}][attempt={attempt}/{max_attempts}]"

        async with self._session_factory() as session:
            repo = PublicationRepository(session)
            publication = await repo.get_by_id(publication_id, workspace_id)
            if publication is None:
                logger.info(f"{tag} publication not found, acknowledging")
                return WorkerOutcome("noop")
            if PublicationStatus(publication.status) in TERMINAL_STATUSES:
                logger.info(f"{tag} already {publication.status}, acknowledging")
                return WorkerOutcome("noop")

            account = None
            if publication.social_account_id:
                account = await SocialAccountDirectory(session).find_by_id_and_workspace(
                    publication.social_account_id, workspace_id
                )
            lost_account = None
            if account is None or account.status == SocialAccountStatus.disconnected.value:
                reason = "Social account disconnected" if account else "Social account no longer exists"
                if publication.status == PublicationStatus.publishing.value:
                    # a retry of an earlier attempt; SKIPPED is only reachable from SCHEDULED
                    if publication.job_id != job_id:
                        logger.info(f"{tag} row claimed by another job, acknowledging")
                        return WorkerOutcome("noop")
                    lost_account = PublishError(
                        reason,
                        retryable=False,
                        code="SOCIAL_ACCOUNT_DISCONNECTED" if account else "SOCIAL_ACCOUNT_NOT_FOUND",
                    )
                elif await repo.update_status(
                    publication_id, PublicationStatus.skipped, provider_response_json={"error": reason}
                ):
                    await self._commit_with_content(session, publication)
                    logger.warning(f"{tag} skipped: {reason}")
                    await self._announce(publication, PublicationStatus.skipped, {"error": reason})
                    return WorkerOutcome(PublicationStatus.skipped.value, error={"message": reason})
                else:
                    await session.rollback()
                    return WorkerOutcome("noop")
            else:
                if not await repo.update_status(publication_id, PublicationStatus.publishing, job_id=job_id):
                    await session.rollback()
                    logger.info(f"{tag} row claimed by another job or no longer publishable, acknowledging")
                    return WorkerOutcome("noop")
                await self._commit_with_content(session, publication)

                target_id = account.external_account_id
                account_id = account.id
                payload = dict(publication.payload_json or {})

        if lost_account is not None:
            return await self._handle_failure(publication, job_id, lost_account, attempt, max_attempts, tag)

        logger.info(f"{tag} publishing {publication.platform} {publication.content_type}")
        if attempt == 1:
            await self._announce(publication, PublicationStatus.publishing, {}, activity=False)

        try:
            async with self._session_factory() as session:
                media_urls = await self._media.resolve(session, workspace_id, payload)
            adapter = self._adapters[PublicationPlatform(publication.platform)]
            result = await execute_with_credential_refresh(
                self._credentials,
                account_id,
                lambda access_token: adapter.publish(target_id, access_token, payload, media_urls),
            )
        except PublishError as exc:
            return await self._handle_failure(publication, job_id, exc, attempt, max_attempts, tag)

        return await self._handle_success(publication, job_id, result, tag)

    async def _handle_success(
        self, publication: Publication, job_id: str, result: PublishResult, tag: str
    ) -> WorkerOutcome:
        async with self._session_factory() as session:
            repo = PublicationRepository(session)
            changed = await repo.update_status(
                publication.id,
                PublicationStatus.published,
                external_post_id=result.external_id,
                permalink=result.url,
                provider_response_json=result.to_dict(),
            )
            if not changed:
                # reconciliation may have failed a long-running attempt meanwhile
                await session.rollback()
                logger.error(f"{tag} published as {result.external_id} but row was no longer PUBLISHING")
                return WorkerOutcome("noop", error={"message": "row left PUBLISHING before success was recorded"})
            await self._commit_with_content(session, publication)

        logger.info(f"{tag} published: id={result.external_id} url={result.url}")
        await self._announce(
            publication,
            PublicationStatus.published,
            {"externalPostId": result.external_id, "permalink": result.url},
        )
        return WorkerOutcome(PublicationStatus.published.value)

    async def _handle_failure(
        self,
        publication: Publication,
        job_id: str,
        exc: PublishError,
        attempt: int,
        max_attempts: int,
        tag: str,
    ) -> WorkerOutcome:
        error = {**exc.to_dict(), "attempt": attempt, "maxAttempts": max_attempts}
        if exc.raw:
            error["response"] = exc.raw
        retry = exc.retryable and attempt < max_attempts

        async with self._session_factory() as session:
            repo = PublicationRepository(session)
            if retry:
                await repo.update_status(
                    publication.id, PublicationStatus.publishing, job_id=job_id, provider_response_json=error
                )
                await session.commit()
            else:
                if not await repo.update_status(
                    publication.id, PublicationStatus.failed, provider_response_json=error
                ):
                    await session.rollback()
                    logger.warning(f"{tag} failure not recorded, row already terminal: {exc.message}")
                    return WorkerOutcome("noop", error=error)
                await self._commit_with_content(session, publication)

        if retry:
            logger.warning(f"{tag} transient failure, will retry: {exc.message}")
            await self._broadcast(publication, "publication.retrying", {"error": error})
            return WorkerOutcome(PublicationStatus.publishing.value, retry=True, error=error)

        logger.error(f"{tag} failed ({'attempts exhausted' if exc.retryable else 'permanent'}): {exc.message}")
        await self._announce(publication, PublicationStatus.failed, {"error": error})
        if self._alert is not None:
            await self._alert(publication.id, publication.platform, publication.content_type, exc.message, exc.code)
        return WorkerOutcome(PublicationStatus.failed.value, error=error)

    async def _commit_with_content(self, session: AsyncSession, publication: Publication) -> None:
        content = None
        changed = False
        if publication.content_id:
            content, changed = await refresh_content_status(session, publication.content_id)
        await session.commit()
        if changed and content is not None:
            await self._broadcast(
                publication, "content.status.changed", {"id": content.id, "status": content.status}
            )

    async def _announce(
        self, publication: Publication, status: PublicationStatus, extra: dict, *, activity: bool = True
    ) -> None:
        event = f"publication.{status.value.lower()}"
        data = {
            "id": publication.id,
            "status": status.value,
            "platform": publication.platform,
            "contentType": publication.content_type,
            "contentId": publication.content_id,
            **extra,
        }
        await self._broadcast(publication, event, data)
        if activity and self._activity is not None:
            self._activity.emit(
                type=event,
                workspace_id=publication.workspace_id,
                scope_id=publication.id,
                metadata={k: v for k, v in data.items() if k != "id"},
            )

    async def _broadcast(self, publication: Publication, event: str, data: dict) -> None:
        if self._broadcaster is None:
            return
        await self._broadcaster.broadcast_event(
            publication.workspace_id, event, data, brand_id=publication.brand_id
        )
