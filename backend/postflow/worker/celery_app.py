"""
Celery application for publication delivery.

Broker/backend: Redis (REDIS_URL env).
Queues: instagram-publish, facebook-publish (one per platform).
"""
from celery import Celery
from kombu import Queue

from postflow.models import PublicationPlatform
from postflow.settings import get_settings

settings = get_settings()

PUBLISH_QUEUES = {
    PublicationPlatform.instagram: "instagram-publish",
    PublicationPlatform.facebook: "facebook-publish",
}

PUBLISH_TASKS = {
    PublicationPlatform.instagram: "publications.publish_instagram",
    PublicationPlatform.facebook: "publications.publish_facebook",
}

celery_app = Celery(
    "postflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.publish_worker_concurrency,
    task_time_limit=settings.publish_task_time_limit_sec,
    task_soft_time_limit=settings.publish_task_time_limit_sec - 60,
    task_queues=[Queue(name) for name in PUBLISH_QUEUES.values()],
    task_default_queue=PUBLISH_QUEUES[PublicationPlatform.instagram],
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # completed results expire after 24h; failures stay inspectable in the backend for the same window
    result_expires=settings.completed_job_retention_sec,
    result_extended=True,
    # visibility_timeout must exceed the longest countdown, or Redis redelivers
    # delayed jobs early. Scheduled posts may be weeks out.
    broker_transport_options={"visibility_timeout": 30 * 24 * 3600},
)

celery_app.autodiscover_tasks(["postflow.worker"])
