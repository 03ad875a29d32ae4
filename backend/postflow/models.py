from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SocialPlatform(str, Enum):
    instagram_business = "INSTAGRAM_BUSINESS"
    instagram_basic = "INSTAGRAM_BASIC"
    facebook_page = "FACEBOOK_PAGE"


class SocialAccountStatus(str, Enum):
    active = "ACTIVE"
    error = "ERROR"
    disconnected = "DISCONNECTED"


class PublicationPlatform(str, Enum):
    instagram = "INSTAGRAM"
    facebook = "FACEBOOK"


class PublicationContentType(str, Enum):
    image = "IMAGE"
    carousel = "CAROUSEL"
    reel = "REEL"
    story = "STORY"
    photo = "PHOTO"
    video = "VIDEO"
    link = "LINK"


class PublicationStatus(str, Enum):
    scheduled = "SCHEDULED"
    publishing = "PUBLISHING"
    published = "PUBLISHED"
    failed = "FAILED"
    cancelled = "CANCELLED"
    # target account disconnected before the job ran
    skipped = "SKIPPED"


class ContentStatus(str, Enum):
    draft = "DRAFT"
    scheduled = "SCHEDULED"
    publishing = "PUBLISHING"
    published = "PUBLISHED"
    partially_published = "PARTIALLY_PUBLISHED"
    failed = "FAILED"


TERMINAL_STATUSES = frozenset({
    PublicationStatus.published,
    PublicationStatus.failed,
    PublicationStatus.cancelled,
    PublicationStatus.skipped,
})

# new status -> statuses it may be entered from
ALLOWED_TRANSITIONS: dict[PublicationStatus, frozenset[PublicationStatus]] = {
    PublicationStatus.publishing: frozenset({PublicationStatus.scheduled, PublicationStatus.publishing}),
    PublicationStatus.published: frozenset({PublicationStatus.publishing}),
    PublicationStatus.failed: frozenset({PublicationStatus.scheduled, PublicationStatus.publishing}),
    PublicationStatus.cancelled: frozenset({PublicationStatus.scheduled}),
    PublicationStatus.skipped: frozenset({PublicationStatus.scheduled}),
}

PLATFORM_FAMILY: dict[SocialPlatform, PublicationPlatform] = {
    SocialPlatform.instagram_business: PublicationPlatform.instagram,
    SocialPlatform.instagram_basic: PublicationPlatform.instagram,
    SocialPlatform.facebook_page: PublicationPlatform.facebook,
}


def platform_family(platform: str | SocialPlatform) -> PublicationPlatform | None:
    """Map a social account platform to the publication platform it can post to."""
    try:
        return PLATFORM_FAMILY[SocialPlatform(platform)]
    except ValueError:
        return None


def can_transition(current: str | PublicationStatus, new: str | PublicationStatus) -> bool:
    allowed = ALLOWED_TRANSITIONS.get(PublicationStatus(new), frozenset())
    return PublicationStatus(current) in allowed


class Brand(Base):
    __tablename__ = "brands"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    slug: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)

    social_accounts: Mapped[list["SocialAccount"]] = relationship(back_populates="brand", passive_deletes=True)


class SocialAccount(Base):
    __tablename__ = "social_accounts"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    brand_id: Mapped[str] = mapped_column(sa.ForeignKey("brands.id", ondelete="CASCADE"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    # IG business account id / FB page id
    external_account_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    display_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, default=SocialAccountStatus.active.value)
    status_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    credentials_encrypted: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    brand: Mapped[Brand] = relationship(back_populates="social_accounts")


class Media(Base):
    __tablename__ = "media"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    object_key: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    public_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)


class Content(Base):
    __tablename__ = "contents"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    brand_id: Mapped[str] = mapped_column(sa.ForeignKey("brands.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    # cached aggregate of child publications, see services.content_status
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, default=ContentStatus.draft.value)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    publications: Mapped[list["Publication"]] = relationship(back_populates="content", passive_deletes=True)


class Publication(Base):
    __tablename__ = "publications"
    __table_args__ = (
        sa.UniqueConstraint(
            "workspace_id", "brand_id", "client_request_id", name="uq_publications_client_request"
        ),
        sa.Index("ix_publications_brand_created", "workspace_id", "brand_id", "created_at"),
        sa.Index("ix_publications_status_updated", "status", "updated_at"),
    )

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    brand_id: Mapped[str] = mapped_column(sa.ForeignKey("brands.id", ondelete="CASCADE"), nullable=False)
    social_account_id: Mapped[str | None] = mapped_column(
        sa.ForeignKey("social_accounts.id", ondelete="SET NULL"), nullable=True
    )
    content_id: Mapped[str | None] = mapped_column(
        sa.ForeignKey("contents.id", ondelete="SET NULL"), nullable=True, index=True
    )
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    content_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, default=PublicationStatus.scheduled.value)
    scheduled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    caption: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    payload_json: Mapped[dict] = mapped_column(sa.JSON(), nullable=False)
    provider_response_json: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    external_post_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    permalink: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    client_request_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    job_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    created_by_user_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    content: Mapped[Content | None] = relationship(back_populates="publications")


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    actor_type: Mapped[str] = mapped_column(sa.String(16), nullable=False, default="system")
    user_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    source: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    scope_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    scope_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    metadata_json: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=_utcnow, nullable=False)
