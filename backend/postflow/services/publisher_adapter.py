"""
Platform adapters for the Meta Graph API.

Each adapter implements the `PlatformAdapter` interface:
    publish(target_id, access_token, payload, media_urls) -> PublishResult

`payload` is the stored payloadJson (camelCase, tagged by contentType) and
`media_urls` maps every media id referenced by it to a public URL, resolved
before the adapter is called. Failures are raised as PublishError tagged
retryable / permanent; AuthError is left for the credential-refresh wrapper.

Instagram:
    IMAGE     container(image_url) -> media_publish -> permalink
    CAROUSEL  child containers (is_carousel_item) -> parent(children) -> media_publish -> permalink
    REEL      container(REELS, video_url) -> wait FINISHED -> media_publish -> permalink
    STORY     container(STORIES, image_url|video_url) -> [wait] -> media_publish -> permalink
Facebook:
    PHOTO     /{page}/photos(url, caption) -> link
    VIDEO     /{page}/videos(file_url, title, description) -> permalink_url
    LINK      /{page}/feed(link, message) -> permalink_url
"""
from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from postflow.errors import AuthError, PublishError
from postflow.integrations.graph_api import GraphAPIClient, sanitize_dict
from postflow.models import PublicationContentType, PublicationPlatform

logger = logging.getLogger(__name__)

CAROUSEL_MIN_ITEMS = 2
CAROUSEL_MAX_ITEMS = 10

FACEBOOK_WEB = "https://www.facebook.com"


@dataclass
class PublishResult:
    """Outcome of a successful publish."""
    external_id: str
    url: str | None = None
    platform: str | None = None
    container_id: str | None = None
    raw_response: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "url": self.url,
            "platform": self.platform,
            "container_id": self.container_id,
            "response": self.raw_response,
        }


def _invalid(msg: str) -> PublishError:
    return PublishError(msg, retryable=False, code="INVALID_PAYLOAD")


def _media_url(media_urls: dict[str, str], media_id: str | None, field_name: str) -> str:
    if not media_id:
        raise _invalid(f"{field_name} is required")
    url = media_urls.get(media_id)
    if not url:
        raise PublishError(f"No public URL for media {media_id}", retryable=False, code="MEDIA_UNRESOLVED")
    return url


# ── Abstract adapter ─────────────────────────────────────────

Handler = Callable[[str, str, dict, dict], Awaitable[PublishResult]]


class PlatformAdapter(abc.ABC):
    """Base class for Graph API publishers. Stateless apart from the shared client."""

    platform: PublicationPlatform

    def __init__(self, graph: GraphAPIClient):
        self.graph = graph

    @abc.abstractmethod
    def handlers(self) -> dict[PublicationContentType, Handler]:
        ...

    async def publish(
        self,
        target_id: str,
        access_token: str,
        payload: dict[str, Any],
        media_urls: dict[str, str] | None = None,
    ) -> PublishResult:
        if not target_id:
            raise PublishError("Social account has no external account id", retryable=False, code="NO_TARGET")
        try:
            content_type = PublicationContentType(payload.get("contentType"))
        except ValueError:
            raise _invalid(f"Unknown contentType {payload.get('contentType')!r}") from None
        handler = self.handlers().get(content_type)
        if handler is None:
            raise PublishError(
                f"{content_type.value} is not supported on {self.platform.value}",
                retryable=False,
                code="UNSUPPORTED_CONTENT_TYPE",
            )
        self._log(target_id, f"publishing {content_type.value}")
        result = await handler(target_id, access_token, payload, media_urls or {})
        self._log(target_id, f"published {content_type.value}: id={result.external_id} url={result.url}")
        return result

    async def _lookup(self, object_id: str, fields: str, access_token: str) -> dict:
        """Post-publish lookup. The post is already live, so a failure here only costs the permalink."""
        try:
            return await self.graph.get(f"/{object_id}", {"fields": fields}, access_token, what="permalink lookup")
        except PublishError as exc:
            logger.warning(f"[{self.platform.value}] permalink lookup for {object_id} failed: {exc.message}")
            return {}

    def _log(self, target_id: str, msg: str):
        logger.info(f"[{self.platform.value}][target={target_id}] {msg}")


# ── Instagram ────────────────────────────────────────────────

class InstagramAdapter(PlatformAdapter):
    platform = PublicationPlatform.instagram

    def handlers(self) -> dict[PublicationContentType, Handler]:
        return {
            PublicationContentType.image: self._publish_image,
            PublicationContentType.carousel: self._publish_carousel,
            PublicationContentType.reel: self._publish_reel,
            PublicationContentType.story: self._publish_story,
        }

    async def _create_container(self, ig_user_id: str, params: dict, access_token: str, what: str) -> str:
        data = await self.graph.post(f"/{ig_user_id}/media", params, access_token, what=what)
        container_id = data.get("id")
        if not container_id:
            raise PublishError(f"{what}: no container id returned", retryable=True, code="NO_CONTAINER_ID")
        return str(container_id)

    async def _publish_container(self, ig_user_id: str, container_id: str, access_token: str) -> PublishResult:
        data = await self.graph.post(
            f"/{ig_user_id}/media_publish", {"creation_id": container_id}, access_token, what="media_publish"
        )
        media_id = data.get("id")
        if not media_id:
            raise PublishError("media_publish returned no media id", retryable=True, code="NO_MEDIA_ID")
        details = await self._lookup(str(media_id), "permalink", access_token)
        return PublishResult(
            external_id=str(media_id),
            url=details.get("permalink"),
            platform=self.platform.value,
            container_id=container_id,
            raw_response=sanitize_dict({"publish": data, "media": details}) or {},
        )

    async def _publish_image(self, ig_user_id: str, access_token: str, payload: dict, media_urls: dict) -> PublishResult:
        params: dict[str, Any] = {
            "image_url": _media_url(media_urls, payload.get("imageMediaId"), "imageMediaId"),
            "caption": payload.get("caption"),
            "location_id": payload.get("locationId"),
        }
        if payload.get("userTags"):
            params["user_tags"] = json.dumps(payload["userTags"])
        container_id = await self._create_container(ig_user_id, params, access_token, "image container")
        return await self._publish_container(ig_user_id, container_id, access_token)

    async def _publish_carousel(self, ig_user_id: str, access_token: str, payload: dict, media_urls: dict) -> PublishResult:
        items = payload.get("items") or []
        if not CAROUSEL_MIN_ITEMS <= len(items) <= CAROUSEL_MAX_ITEMS:
            raise _invalid(f"Carousel needs {CAROUSEL_MIN_ITEMS}-{CAROUSEL_MAX_ITEMS} items, got {len(items)}")

        children: list[str] = []
        for index, item in enumerate(items, start=1):
            is_video = item.get("type") == "VIDEO"
            params: dict[str, Any] = {"is_carousel_item": True}
            if is_video:
                params["media_type"] = "VIDEO"
                params["video_url"] = _media_url(media_urls, item.get("mediaId"), f"items[{index}].mediaId")
            else:
                params["image_url"] = _media_url(media_urls, item.get("mediaId"), f"items[{index}].mediaId")
            # any child failure aborts the whole carousel
            try:
                child_id = await self._create_container(ig_user_id, params, access_token, f"carousel item {index}")
                if is_video:
                    await self.graph.wait_for_status(child_id, access_token, target_statuses=("FINISHED",))
            except AuthError:
                raise
            except PublishError as exc:
                raise PublishError(
                    f"Carousel item {index}/{len(items)} failed: {exc.message}",
                    retryable=exc.retryable,
                    code=exc.code,
                    raw=exc.raw,
                ) from exc
            children.append(child_id)

        parent_id = await self._create_container(
            ig_user_id,
            {
                "media_type": "CAROUSEL",
                "children": ",".join(children),
                "caption": payload.get("caption"),
                "location_id": payload.get("locationId"),
            },
            access_token,
            "carousel container",
        )
        return await self._publish_container(ig_user_id, parent_id, access_token)

    async def _publish_reel(self, ig_user_id: str, access_token: str, payload: dict, media_urls: dict) -> PublishResult:
        params: dict[str, Any] = {
            "media_type": "REELS",
            "video_url": _media_url(media_urls, payload.get("videoMediaId"), "videoMediaId"),
            "caption": payload.get("caption"),
            "share_to_feed": payload.get("shareToFeed"),
        }
        if payload.get("thumbOffsetSeconds") is not None:
            params["thumb_offset"] = int(float(payload["thumbOffsetSeconds"]) * 1000)
        if payload.get("coverMediaId"):
            params["cover_url"] = _media_url(media_urls, payload["coverMediaId"], "coverMediaId")

        container_id = await self._create_container(ig_user_id, params, access_token, "reel container")
        await self.graph.wait_for_status(container_id, access_token)
        return await self._publish_container(ig_user_id, container_id, access_token)

    async def _publish_story(self, ig_user_id: str, access_token: str, payload: dict, media_urls: dict) -> PublishResult:
        params: dict[str, Any] = {"media_type": "STORIES"}
        is_video = bool(payload.get("videoMediaId"))
        if is_video:
            params["video_url"] = _media_url(media_urls, payload["videoMediaId"], "videoMediaId")
        else:
            params["image_url"] = _media_url(media_urls, payload.get("imageMediaId"), "imageMediaId")

        container_id = await self._create_container(ig_user_id, params, access_token, "story container")
        if is_video:
            await self.graph.wait_for_status(container_id, access_token)
        return await self._publish_container(ig_user_id, container_id, access_token)


# ── Facebook Pages ───────────────────────────────────────────

class FacebookAdapter(PlatformAdapter):
    platform = PublicationPlatform.facebook

    def handlers(self) -> dict[PublicationContentType, Handler]:
        return {
            PublicationContentType.photo: self._publish_photo,
            PublicationContentType.video: self._publish_video,
            PublicationContentType.link: self._publish_link,
        }

    def _result(self, post_id: str, url: str | None, data: dict, details: dict) -> PublishResult:
        if url and url.startswith("/"):
            url = f"{FACEBOOK_WEB}{url}"
        return PublishResult(
            external_id=post_id,
            url=url,
            platform=self.platform.value,
            raw_response=sanitize_dict({"publish": data, "post": details}) or {},
        )

    async def _publish_photo(self, page_id: str, access_token: str, payload: dict, media_urls: dict) -> PublishResult:
        data = await self.graph.post(
            f"/{page_id}/photos",
            {
                "url": _media_url(media_urls, payload.get("imageMediaId"), "imageMediaId"),
                "caption": payload.get("message"),
            },
            access_token,
            what="page photo",
        )
        photo_id = data.get("id")
        if not photo_id:
            raise PublishError("page photo: no id returned", retryable=True, code="NO_POST_ID")
        details = await self._lookup(str(photo_id), "link", access_token)
        return self._result(str(data.get("post_id") or photo_id), details.get("link"), data, details)

    async def _publish_video(self, page_id: str, access_token: str, payload: dict, media_urls: dict) -> PublishResult:
        data = await self.graph.post(
            f"/{page_id}/videos",
            {
                "file_url": _media_url(media_urls, payload.get("videoMediaId"), "videoMediaId"),
                "title": payload.get("title"),
                "description": payload.get("description"),
            },
            access_token,
            what="page video",
        )
        video_id = data.get("id")
        if not video_id:
            raise PublishError("page video: no id returned", retryable=True, code="NO_POST_ID")
        details = await self._lookup(str(video_id), "permalink_url", access_token)
        return self._result(str(video_id), details.get("permalink_url"), data, details)

    async def _publish_link(self, page_id: str, access_token: str, payload: dict, media_urls: dict) -> PublishResult:
        if not payload.get("link"):
            raise _invalid("link is required")
        data = await self.graph.post(
            f"/{page_id}/feed",
            {"link": payload["link"], "message": payload.get("message")},
            access_token,
            what="page feed post",
        )
        post_id = data.get("id")
        if not post_id:
            raise PublishError("page feed post: no id returned", retryable=True, code="NO_POST_ID")
        details = await self._lookup(str(post_id), "permalink_url", access_token)
        return self._result(str(post_id), details.get("permalink_url"), data, details)


# ── Registry ──────────────────────────────────────────────────

def build_adapters(graph: GraphAPIClient) -> dict[PublicationPlatform, PlatformAdapter]:
    """One adapter per platform sharing a Graph client; built once per process and injected."""
    return {
        PublicationPlatform.instagram: InstagramAdapter(graph),
        PublicationPlatform.facebook: FacebookAdapter(graph),
    }
