from __future__ import annotations

import logging

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.errors import MediaResolutionError
from postflow.models import Media
from postflow.settings import get_settings

logger = logging.getLogger(__name__)

_MEDIA_KEYS = ("imageMediaId", "videoMediaId", "coverMediaId")


def media_ids_in(payload: dict) -> list[str]:
    """All media ids referenced by a publication payload, in order, without duplicates."""
    ids: list[str] = [payload[k] for k in _MEDIA_KEYS if payload.get(k)]
    ids.extend(item["mediaId"] for item in payload.get("items") or [] if item.get("mediaId"))
    return list(dict.fromkeys(ids))


class MediaResolver:
    """Maps media ids to publicly fetchable URLs (stored public URL, else CDN base + object key)."""

    def __init__(self, cdn_base_url: str | None = None):
        base = cdn_base_url if cdn_base_url is not None else get_settings().media_cdn_base_url
        self.cdn_base_url = base.rstrip("/") if base else None

    def public_url(self, media: Media) -> str:
        if media.public_url:
            return media.public_url
        if self.cdn_base_url:
            return f"{self.cdn_base_url}/{media.object_key.lstrip('/')}"
        raise MediaResolutionError(f"Media {media.id} has no public URL and MEDIA_CDN_BASE_URL is not set")

    async def resolve(self, session: AsyncSession, workspace_id: str, payload: dict) -> dict[str, str]:
        ids = media_ids_in(payload)
        if not ids:
            return {}
        rows = (
            await session.execute(
                sa.select(Media).where(Media.workspace_id == workspace_id, Media.id.in_(ids))
            )
        ).scalars().all()
        found = {m.id: m for m in rows}
        missing = [i for i in ids if i not in found]
        if missing:
            raise MediaResolutionError(f"Media not found in workspace: {', '.join(missing)}")
        urls = {media_id: self.public_url(found[media_id]) for media_id in ids}
        logger.debug(f"[media] resolved {len(urls)} media urls")
        return urls
