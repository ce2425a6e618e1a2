from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

NotificationAudienceValue = Literal["ALL", "COLLECTIVE_ADMINS", "FINANCIAL_CONTRIBUTORS", "NO_ONE"]


class UpdateOut(BaseModel):
    id: int
    collective_id: int
    from_collective_id: int | None = None
    tier_id: int | None = None
    created_by_user_id: str | None = None
    last_edited_by_user_id: str | None = None
    slug: str
    title: str
    html: str | None = None
    summary: str | None = None
    image: str | None = None
    is_private: bool = False
    is_changelog: bool = False
    notification_audience: NotificationAudienceValue | None = None
    tags: list[str] = Field(default_factory=list)
    published_at: datetime | None = None
    make_public_on: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UpdateCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    html: str | None = None
    image: str | None = None
    tier_id: int | None = None
    tags: list[str] | None = None
    is_private: bool = False
    is_changelog: bool = False
    make_public_on: datetime | None = None
    from_collective_id: int | None = None


class UpdateEditRequest(BaseModel):
    """Partial edit; only the fields set by the caller are applied."""

    model_config = ConfigDict(extra="ignore")

    title: str | None = Field(default=None, min_length=1, max_length=255)
    html: str | None = None
    tier_id: int | None = None
    tags: list[str] | None = None
    is_private: bool | None = None
    is_changelog: bool | None = None
    make_public_on: datetime | None = None


class UpdatePublishRequest(BaseModel):
    notification_audience: NotificationAudienceValue | None = None


class AudienceOut(BaseModel):
    audience: NotificationAudienceValue
    target_roles: list[str] = Field(default_factory=list)
    include_hosted_accounts: bool = False
    users_count: int = 0
    stats: dict[str, int] = Field(default_factory=dict)


class RecipientOut(BaseModel):
    id: str
    email: str | None = None
    collective_id: int | None = None
