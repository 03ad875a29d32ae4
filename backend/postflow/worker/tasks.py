"""
Celery tasks for publication delivery.

publications.publish_instagram / publications.publish_facebook run
PublishWorker.process in a fresh event loop via asyncio.run(). Retry
policy: up to PUBLISH_MAX_ATTEMPTS attempts with countdown
PUBLISH_BACKOFF_BASE_SEC * 2**retries (5s, 10s, 20s). Permanent failures
are never retried; the worker has already marked the row FAILED.
"""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from postflow.db import create_task_engine, task_session_factory
from postflow.integrations.graph_api import GraphAPIClient
from postflow.integrations.meta_oauth import MetaTokenClient
from postflow.models import PublicationPlatform
from postflow.services.activity import ActivityLogger
from postflow.services.credential_store import CredentialStore
from postflow.services.media_resolver import MediaResolver
from postflow.services.publish_worker import PublishWorker, WorkerOutcome
from postflow.services.publisher_adapter import build_adapters
from postflow.services.realtime import RedisBroadcaster
from postflow.settings import get_settings
from postflow.worker.celery_app import PUBLISH_QUEUES, PUBLISH_TASKS, celery_app

logger = logging.getLogger(__name__)


async def _publish_async(job: dict, job_id: str, attempt: int, max_attempts: int) -> WorkerOutcome:
    """One attempt with process-local dependencies bound to this event loop."""
    engine = create_task_engine()
    session_factory = task_session_factory(engine)
    broadcaster = RedisBroadcaster()
    activity = ActivityLogger(session_factory)

    worker = PublishWorker(
        session_factory,
        build_adapters(GraphAPIClient()),
        CredentialStore(session_factory, MetaTokenClient()),
        MediaResolver(),
        broadcaster=broadcaster,
        activity=activity,
    )
    try:
        return await worker.process(job, job_id, attempt=attempt, max_attempts=max_attempts)
    finally:
        await activity.drain()
        await broadcaster.close()
        await engine.dispose()


def _run_publish(task, platform: PublicationPlatform, job: dict) -> dict:
    settings = get_settings()
    max_attempts = settings.publish_max_attempts
    attempt = task.request.retries + 1
    countdown = settings.publish_backoff_base_sec * 2 ** task.request.retries
    logger.info(
        f"[worker] {platform.value} publication {job.get('publicationId')} "
        f"(job={task.request.id}, attempt={attempt}/{max_attempts})"
    )
    try:
        outcome = asyncio.run(_publish_async(job, task.request.id, attempt, max_attempts))
    except (SQLAlchemyError, OSError) as exc:
        # infrastructure failure before the outcome could be recorded; the row
        # keeps this job id, so the retry can re-claim it
        logger.error(f"[worker] publication {job.get('publicationId')} infrastructure error: {exc}")
        if attempt >= max_attempts:
            raise
        raise task.retry(exc=exc, countdown=countdown, max_retries=max_attempts - 1)

    if outcome.retry:
        raise task.retry(countdown=countdown, max_retries=max_attempts - 1)
    return outcome.to_dict()


@celery_app.task(
    bind=True,
    name=PUBLISH_TASKS[PublicationPlatform.instagram],
    queue=PUBLISH_QUEUES[PublicationPlatform.instagram],
)
def publish_instagram(self, job: dict) -> dict:
    return _run_publish(self, PublicationPlatform.instagram, job)


@celery_app.task(
    bind=True,
    name=PUBLISH_TASKS[PublicationPlatform.facebook],
    queue=PUBLISH_QUEUES[PublicationPlatform.facebook],
)
def publish_facebook(self, job: dict) -> dict:
    return _run_publish(self, PublicationPlatform.facebook, job)
