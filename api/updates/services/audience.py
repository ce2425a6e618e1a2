from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Protocol

from opentelemetry import trace

from updates.services.errors import RepositoryNotFoundError
from updates.services.queries import (
    COUNT_MEMBERS_TO_NOTIFY_SQL,
    COUNT_USERS_TO_NOTIFY_SQL,
    USERS_TO_NOTIFY_SQL,
)
from updates.services.records import UpdateRecord

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class NotificationAudience(str, Enum):
    ALL = "ALL"
    COLLECTIVE_ADMINS = "COLLECTIVE_ADMINS"
    FINANCIAL_CONTRIBUTORS = "FINANCIAL_CONTRIBUTORS"
    NO_ONE = "NO_ONE"


class MemberRole(str, Enum):
    HOST = "HOST"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    ACCOUNTANT = "ACCOUNTANT"
    CONTRIBUTOR = "CONTRIBUTOR"
    BACKER = "BACKER"
    ATTENDEE = "ATTENDEE"
    FOLLOWER = "FOLLOWER"
    CONNECTED_ACCOUNT = "CONNECTED_ACCOUNT"


# Matches no member row: only the always-included admins are notified.
NO_MEMBER_ROLES: tuple[str, ...] = ("__NONE__",)

# Admins of the parent collective are always included by the audience
# queries, regardless of the values below.
PRIVATE_UPDATE_TARGET_ROLES: tuple[str, ...] = (
    MemberRole.ADMIN.value,
    MemberRole.MEMBER.value,
    MemberRole.CONTRIBUTOR.value,
    MemberRole.BACKER.value,
    MemberRole.ATTENDEE.value,
)
PUBLIC_UPDATE_TARGET_ROLES: tuple[str, ...] = (*PRIVATE_UPDATE_TARGET_ROLES, MemberRole.FOLLOWER.value)

HOSTED_ACCOUNTS_AUDIENCES = frozenset({NotificationAudience.ALL, NotificationAudience.COLLECTIVE_ADMINS})


def resolve_audience(*candidates: str | NotificationAudience | None) -> NotificationAudience:
    """Return the first usable audience among ``candidates``, falling back to ``ALL``."""
    for candidate in candidates:
        if candidate is None or candidate == "":
            continue
        try:
            return NotificationAudience(candidate)
        except ValueError:
            logger.warning("ignoring unknown notification audience=%r", candidate)
    return NotificationAudience.ALL


def resolve_target_roles(audience: str | NotificationAudience | None, *, is_private: bool) -> tuple[str, ...]:
    resolved = resolve_audience(audience)
    if resolved is NotificationAudience.NO_ONE:
        return ()
    if resolved is NotificationAudience.COLLECTIVE_ADMINS:
        return NO_MEMBER_ROLES
    if is_private:
        return PRIVATE_UPDATE_TARGET_ROLES
    return PUBLIC_UPDATE_TARGET_ROLES


def include_hosted_accounts(collective: dict[str, Any], audience: str | NotificationAudience | None) -> bool:
    return bool(collective.get("is_host_account")) and resolve_audience(audience) in HOSTED_ACCOUNTS_AUDIENCES


class AudienceQueryRunner(Protocol):
    async def run_query(self, sql: str, *params: Any) -> list[dict[str, Any]]: ...

    async def get_collective(self, collective_id: int) -> dict[str, Any] | None: ...


@dataclass(slots=True, frozen=True)
class AudienceQuery:
    collective_id: int
    target_roles: tuple[str, ...]
    include_hosted_accounts: bool
    include_members: bool

    def params(self) -> tuple[Any, ...]:
        return (
            self.collective_id,
            list(self.target_roles),
            self.include_hosted_accounts,
            self.include_members,
        )


class AudienceResolver:
    """Works out who is notified about one update.

    Only the owning collective is cached; every other call goes back to the
    query runner, so repeated calls on unchanged data return the same result.
    """

    def __init__(self, update: UpdateRecord, runner: AudienceQueryRunner) -> None:
        self.update = update
        self.runner = runner
        self._collective: dict[str, Any] | None = None

    def audience(self, override: str | NotificationAudience | None = None) -> NotificationAudience:
        return resolve_audience(override, self.update.notification_audience)

    def target_roles(self, override: str | NotificationAudience | None = None) -> tuple[str, ...]:
        return resolve_target_roles(self.audience(override), is_private=self.update.is_private)

    async def get_collective(self) -> dict[str, Any]:
        if self._collective is None:
            collective = await self.runner.get_collective(self.update.collective_id)
            if not collective:
                raise RepositoryNotFoundError("collective not found")
            self._collective = collective
        return self._collective

    async def should_include_hosted_accounts(self, override: str | NotificationAudience | None = None) -> bool:
        collective = await self.get_collective()
        return include_hosted_accounts(collective, self.audience(override))

    async def build_query(self, override: str | NotificationAudience | None = None) -> AudienceQuery:
        audience = self.audience(override)
        return AudienceQuery(
            collective_id=self.update.collective_id,
            target_roles=self.target_roles(audience),
            include_hosted_accounts=await self.should_include_hosted_accounts(audience),
            include_members=audience is not NotificationAudience.COLLECTIVE_ADMINS,
        )

    async def list_users_to_notify(self) -> list[dict[str, Any]]:
        if self.audience() is NotificationAudience.NO_ONE:
            return []
        query = await self.build_query()
        with tracer.start_as_current_span("updates.audience.list_users") as span:
            self._annotate(span, query)
            users = await self.runner.run_query(USERS_TO_NOTIFY_SQL, *query.params())
            span.set_attribute("updates.audience.users", len(users))
        return users

    async def count_users_to_notify(self, override: str | NotificationAudience | None = None) -> int:
        audience = self.audience(override)
        if audience is NotificationAudience.NO_ONE:
            return 0
        query = await self.build_query(audience)
        with tracer.start_as_current_span("updates.audience.count_users") as span:
            self._annotate(span, query)
            rows = await self.runner.run_query(COUNT_USERS_TO_NOTIFY_SQL, *query.params())
        if not rows:
            return 0
        return int(rows[0]["count"] or 0)

    async def get_audience_stats(self, override: str | NotificationAudience | None = None) -> dict[str, int]:
        """Member counts keyed by whatever type label the stats query returns."""
        target_roles = self.target_roles(override)
        if not target_roles:
            return {}
        rows = await self.runner.run_query(
            COUNT_MEMBERS_TO_NOTIFY_SQL,
            self.update.collective_id,
            list(target_roles),
        )
        stats: dict[str, int] = {}
        for row in rows:
            stats[row["type"]] = int(row["count"] or 0)
        return stats

    def _annotate(self, span: trace.Span, query: AudienceQuery) -> None:
        span.set_attribute("updates.update_id", self.update.id)
        span.set_attribute("updates.collective_id", query.collective_id)
        span.set_attribute("updates.audience.target_roles", list(query.target_roles))
        span.set_attribute("updates.audience.include_hosted_accounts", query.include_hosted_accounts)
        span.set_attribute("updates.audience.include_members", query.include_members)
