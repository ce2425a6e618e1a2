from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class UpdateRecord:
    id: int
    collective_id: int
    slug: str
    title: str
    html: str | None = None
    summary: str | None = None
    image: str | None = None
    from_collective_id: int | None = None
    tier_id: int | None = None
    created_by_user_id: str | None = None
    last_edited_by_user_id: str | None = None
    is_private: bool = False
    is_changelog: bool = False
    notification_audience: str | None = None
    tags: list[str] = field(default_factory=list)
    published_at: datetime | None = None
    make_public_on: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_published(self) -> bool:
        return self.published_at is not None

    @property
    def info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "html": self.html,
            "image": self.image,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "published_at": self.published_at,
            "is_private": self.is_private,
            "is_changelog": self.is_changelog,
            "slug": self.slug,
            "tags": list(self.tags),
            "collective_id": self.collective_id,
        }

    @property
    def minimal(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "published_at": self.published_at,
            "title": self.title,
            "image": self.image,
            "slug": self.slug,
        }

    @property
    def activity(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "title": self.title,
            "html": self.html,
            "notification_audience": self.notification_audience,
            "collective_id": self.collective_id,
            "from_collective_id": self.from_collective_id,
            "tier_id": self.tier_id,
            "is_private": self.is_private,
            "is_changelog": self.is_changelog,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "collective_id": self.collective_id,
            "from_collective_id": self.from_collective_id,
            "tier_id": self.tier_id,
            "created_by_user_id": self.created_by_user_id,
            "last_edited_by_user_id": self.last_edited_by_user_id,
            "slug": self.slug,
            "title": self.title,
            "html": self.html,
            "summary": self.summary,
            "image": self.image,
            "is_private": self.is_private,
            "is_changelog": self.is_changelog,
            "notification_audience": self.notification_audience,
            "tags": list(self.tags),
            "published_at": self.published_at,
            "make_public_on": self.make_public_on,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def collective_activity(collective: dict[str, Any] | None) -> dict[str, Any] | None:
    if not collective:
        return None
    return {
        "id": collective.get("id"),
        "slug": collective.get("slug"),
        "name": collective.get("name"),
        "type": collective.get("type"),
        "is_host_account": bool(collective.get("is_host_account")),
    }
