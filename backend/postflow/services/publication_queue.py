"""
Publish queue: durable delayed jobs on Celery/Redis, one queue per platform.

Job payload: {"publicationId", "workspaceId", "brandId"}.
The job id is generated before sending so it can be stored on the
publication and used for revoke.
"""
from __future__ import annotations

import logging
import uuid

from celery import Celery
from kombu.exceptions import KombuError
from redis.exceptions import RedisError

from postflow.errors import QueueError
from postflow.models import PublicationPlatform
from postflow.worker.celery_app import PUBLISH_QUEUES, PUBLISH_TASKS, celery_app

logger = logging.getLogger(__name__)


def build_job(publication_id: str, workspace_id: str, brand_id: str) -> dict[str, str]:
    return {"publicationId": publication_id, "workspaceId": workspace_id, "brandId": brand_id}


class PublishQueue:
    def __init__(self, app: Celery | None = None):
        self.app = app or celery_app

    def enqueue(self, platform: PublicationPlatform, job: dict[str, str], delay_ms: int = 0) -> str:
        job_id = uuid.uuid4().hex
        countdown = max(0, delay_ms) / 1000
        try:
            self.app.send_task(
                PUBLISH_TASKS[platform],
                args=[job],
                queue=PUBLISH_QUEUES[platform],
                countdown=countdown,
                task_id=job_id,
            )
        except (KombuError, RedisError, OSError) as exc:
            logger.error(f"[queue] enqueue {platform.value} publication {job.get('publicationId')} failed: {exc}")
            raise QueueError(
                "Publication saved but could not be queued",
                details={"publicationId": job.get("publicationId")},
            ) from exc
        logger.info(
            f"[queue] enqueued {platform.value} publication {job.get('publicationId')} "
            f"job={job_id} delay={countdown:.0f}s"
        )
        return job_id

    def revoke(self, job_id: str | None) -> bool:
        """Best-effort removal; the worker's status check covers a lost race."""
        if not job_id:
            return False
        try:
            self.app.control.revoke(job_id, terminate=False)
        except (KombuError, RedisError, OSError) as exc:
            logger.warning(f"[queue] revoke {job_id} failed: {exc}")
            return False
        return True
