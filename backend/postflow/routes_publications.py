"""
Publication endpoints, scoped by workspace and brand.

Authentication and workspace permissions are enforced upstream; the acting
user id arrives in the X-User-Id header.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.db import AsyncSessionLocal, get_session
from postflow.models import PublicationStatus
from postflow.schemas import (
    PublicationPage,
    PublicationRead,
    ScheduleFacebookRequest,
    ScheduleInstagramRequest,
)
from postflow.services.activity import ActivityLogger
from postflow.services.publication_queue import PublishQueue
from postflow.services.publication_service import PublicationScheduler
from postflow.services.realtime import RedisBroadcaster

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workspaces/{workspace_id}/brands/{brand_id}/publications", tags=["publications"])

SessionDep = Depends(get_session)


@lru_cache
def get_publish_queue() -> PublishQueue:
    return PublishQueue()


@lru_cache
def get_activity_logger() -> ActivityLogger:
    return ActivityLogger(AsyncSessionLocal)


@lru_cache
def get_broadcaster() -> RedisBroadcaster:
    return RedisBroadcaster()


def get_scheduler(
    session: AsyncSession = SessionDep,
    queue: PublishQueue = Depends(get_publish_queue),
    activity: ActivityLogger = Depends(get_activity_logger),
    broadcaster: RedisBroadcaster = Depends(get_broadcaster),
) -> PublicationScheduler:
    return PublicationScheduler(session, queue, activity=activity, broadcaster=broadcaster)


SchedulerDep = Depends(get_scheduler)


@router.post("/instagram", response_model=PublicationRead, status_code=201)
async def schedule_instagram(
    workspace_id: str,
    brand_id: str,
    body: ScheduleInstagramRequest,
    x_user_id: Optional[str] = Header(default=None),
    scheduler: PublicationScheduler = SchedulerDep,
):
    return await scheduler.schedule_instagram_publication(workspace_id, brand_id, body, actor_user_id=x_user_id)


@router.post("/facebook", response_model=PublicationRead, status_code=201)
async def schedule_facebook(
    workspace_id: str,
    brand_id: str,
    body: ScheduleFacebookRequest,
    x_user_id: Optional[str] = Header(default=None),
    scheduler: PublicationScheduler = SchedulerDep,
):
    return await scheduler.schedule_facebook_publication(workspace_id, brand_id, body, actor_user_id=x_user_id)


@router.get("", response_model=PublicationPage)
async def list_publications(
    workspace_id: str,
    brand_id: str,
    cursor: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    status: Optional[PublicationStatus] = Query(default=None),
    scheduler: PublicationScheduler = SchedulerDep,
):
    items, next_cursor = await scheduler.list_brand_publications(
        workspace_id, brand_id, cursor=cursor, limit=limit, status=status
    )
    return PublicationPage(items=[PublicationRead.model_validate(p) for p in items], next_cursor=next_cursor)


@router.get("/{publication_id}", response_model=PublicationRead)
async def get_publication(
    workspace_id: str,
    brand_id: str,
    publication_id: str,
    scheduler: PublicationScheduler = SchedulerDep,
):
    return await scheduler.get_publication(workspace_id, brand_id, publication_id)


@router.post("/{publication_id}/cancel", response_model=PublicationRead)
async def cancel_publication(
    workspace_id: str,
    brand_id: str,
    publication_id: str,
    x_user_id: Optional[str] = Header(default=None),
    scheduler: PublicationScheduler = SchedulerDep,
):
    return await scheduler.cancel_publication(workspace_id, brand_id, publication_id, actor_user_id=x_user_id)
