from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import PublicationPlatform, PublicationStatus


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire and in stored payloads."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


# ── Instagram payloads ───────────────────────────────────────

class UserTag(CamelModel):
    username: str
    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)


class InstagramImagePayload(CamelModel):
    content_type: Literal["IMAGE"]
    image_media_id: str
    caption: str | None = Field(None, max_length=2200)
    location_id: str | None = None
    user_tags: list[UserTag] | None = None


class CarouselItem(CamelModel):
    type: Literal["IMAGE", "VIDEO"] = "IMAGE"
    media_id: str


class InstagramCarouselPayload(CamelModel):
    content_type: Literal["CAROUSEL"]
    items: list[CarouselItem] = Field(min_length=2, max_length=10)
    caption: str | None = Field(None, max_length=2200)
    location_id: str | None = None


class InstagramReelPayload(CamelModel):
    content_type: Literal["REEL"]
    video_media_id: str
    caption: str | None = Field(None, max_length=2200)
    share_to_feed: bool = True
    thumb_offset_seconds: float | None = Field(None, ge=0)
    cover_media_id: str | None = None


class InstagramStoryPayload(CamelModel):
    # stories carry no caption
    content_type: Literal["STORY"]
    image_media_id: str | None = None
    video_media_id: str | None = None

    @model_validator(mode="after")
    def one_media(self):
        if bool(self.image_media_id) == bool(self.video_media_id):
            raise ValueError("story needs exactly one of imageMediaId / videoMediaId")
        return self


InstagramPayload = Annotated[
    Union[InstagramImagePayload, InstagramCarouselPayload, InstagramReelPayload, InstagramStoryPayload],
    Field(discriminator="content_type"),
]


# ── Facebook payloads ────────────────────────────────────────

class FacebookPhotoPayload(CamelModel):
    content_type: Literal["PHOTO"]
    image_media_id: str
    message: str | None = None


class FacebookVideoPayload(CamelModel):
    content_type: Literal["VIDEO"]
    video_media_id: str
    title: str | None = Field(None, max_length=255)
    description: str | None = None


class FacebookLinkPayload(CamelModel):
    content_type: Literal["LINK"]
    link: str
    message: str | None = None

    @field_validator("link")
    @classmethod
    def http_link(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("link must be an http(s) URL")
        return value


FacebookPayload = Annotated[
    Union[FacebookPhotoPayload, FacebookVideoPayload, FacebookLinkPayload],
    Field(discriminator="content_type"),
]

PublicationPayload = Union[
    InstagramImagePayload,
    InstagramCarouselPayload,
    InstagramReelPayload,
    InstagramStoryPayload,
    FacebookPhotoPayload,
    FacebookVideoPayload,
    FacebookLinkPayload,
]


def extract_caption(payload: PublicationPayload) -> str | None:
    """Platform-appropriate caption field; None for payloads without one (stories)."""
    for attr in ("caption", "message", "description"):
        value = getattr(payload, attr, None)
        if value:
            return value
    return None


def payload_to_json(payload: PublicationPayload) -> dict:
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Requests / responses ─────────────────────────────────────

class ScheduleRequestBase(CamelModel):
    social_account_id: str
    publish_at: datetime | None = None
    client_request_id: str | None = Field(None, max_length=255)
    content_id: str | None = None


class ScheduleInstagramRequest(ScheduleRequestBase):
    payload: InstagramPayload


class ScheduleFacebookRequest(ScheduleRequestBase):
    payload: FacebookPayload


class PublicationRead(CamelModel):
    id: str
    workspace_id: str
    brand_id: str
    social_account_id: str | None = None
    content_id: str | None = None
    platform: PublicationPlatform
    content_type: str
    status: PublicationStatus
    scheduled_at: datetime | None = None
    published_at: datetime | None = None
    failed_at: datetime | None = None
    caption: str | None = None
    payload_json: dict
    provider_response_json: dict | None = None
    external_post_id: str | None = None
    permalink: str | None = None
    client_request_id: str | None = None
    job_id: str | None = None
    created_by_user_id: str | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PublicationPage(CamelModel):
    items: list[PublicationRead]
    next_cursor: str | None = None
