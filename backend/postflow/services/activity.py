"""
Activity log: audit trail rows in activity_logs.

Fire-and-forget: `emit()` schedules the write as a background task on the
running loop and returns immediately. Each write uses its own session, and
failures are logged and swallowed. Short-lived event loops (Celery tasks)
call `drain()` before the loop closes.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postflow.models import ActivityLog

logger = logging.getLogger(__name__)


class ActivityLogger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    async def log(
        self,
        *,
        type: str,
        workspace_id: str,
        scope_id: str,
        scope_type: str = "publication",
        actor_type: str = "system",
        user_id: str | None = None,
        source: str | None = "worker",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(ActivityLog(
                    workspace_id=workspace_id,
                    type=type,
                    actor_type=actor_type,
                    user_id=user_id,
                    source=source,
                    scope_type=scope_type,
                    scope_id=scope_id,
                    metadata_json=metadata,
                ))
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"[activity] failed to log {type} for {scope_type}/{scope_id}: {e}")

    def emit(self, **kwargs: Any) -> None:
        task = asyncio.get_running_loop().create_task(self.log(**kwargs))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
