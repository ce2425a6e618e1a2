from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from datetime import date, datetime, timezone
import json
import os
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from updates.services.repository import PostgresRepository

T = TypeVar("T")

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "db" / "schema.sql"

ADMIN_USER_ID = "00000000-0000-0000-0000-00000000000a"
BACKER_USER_ID = "00000000-0000-0000-0000-00000000000b"
FOLLOWER_USER_ID = "00000000-0000-0000-0000-00000000000f"
HOSTED_ADMIN_USER_ID = "00000000-0000-0000-0000-0000000000ad"


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("CU_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require CU_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def seeded(database_url: str) -> dict[str, int]:
    return _run(_reset_and_seed(database_url))


def test_slug_allocation_and_reuse_after_delete(database_url: str, seeded: dict[str, int]) -> None:
    async def scenario(repository: PostgresRepository) -> list[str]:
        slugs = []
        created = []
        for _ in range(4):
            record = await repository.create_update(
                collective_id=seeded["babel"],
                actor_user_id=ADMIN_USER_ID,
                fields={"title": "Party"},
            )
            created.append(record)
            slugs.append(record.slug)

        await repository.delete_update(update_id=created[-1].id, actor_user_id=ADMIN_USER_ID)
        again = await repository.create_update(
            collective_id=seeded["babel"],
            actor_user_id=ADMIN_USER_ID,
            fields={"title": "Party"},
        )
        other = await repository.create_update(
            collective_id=seeded["parent"],
            actor_user_id=ADMIN_USER_ID,
            fields={"title": "Party"},
        )
        return [*slugs, again.slug, other.slug]

    slugs = _run(_with_repository(database_url, scenario))

    assert slugs == ["party", "party1", "party2", "party3", "party3", "party"]


def test_draft_edit_reslugs_without_colliding_with_itself(database_url: str, seeded: dict[str, int]) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[str, str, str]:
        record = await repository.create_update(
            collective_id=seeded["babel"],
            actor_user_id=ADMIN_USER_ID,
            fields={"title": "Hello World!"},
        )
        unchanged = await repository.edit_update(
            update_id=record.id,
            actor_user_id=ADMIN_USER_ID,
            changes={"html": "<p>Same title</p>"},
        )
        await repository.publish_update(update_id=record.id, actor_user_id=ADMIN_USER_ID)
        frozen = await repository.edit_update(
            update_id=record.id,
            actor_user_id=ADMIN_USER_ID,
            changes={"title": "Goodbye"},
        )
        return record.slug, unchanged.slug, frozen.slug

    assert _run(_with_repository(database_url, scenario)) == ("hello-world", "hello-world", "hello-world")


def test_audience_counts_follow_visibility_and_audience(database_url: str, seeded: dict[str, int]) -> None:
    async def scenario(repository: PostgresRepository) -> dict[str, Any]:
        public = await repository.create_update(
            collective_id=seeded["babel"],
            actor_user_id=ADMIN_USER_ID,
            fields={"title": "Public news"},
        )
        private = await repository.create_update(
            collective_id=seeded["babel"],
            actor_user_id=ADMIN_USER_ID,
            fields={"title": "Private news", "is_private": True},
        )
        public_resolver = repository.audience_resolver(public)
        private_resolver = repository.audience_resolver(private)
        recipients = await public_resolver.list_users_to_notify()
        return {
            "public_all": await public_resolver.count_users_to_notify(),
            "private_all": await private_resolver.count_users_to_notify(),
            "admins": await public_resolver.count_users_to_notify("COLLECTIVE_ADMINS"),
            "no_one": await public_resolver.count_users_to_notify("NO_ONE"),
            "stats": await public_resolver.get_audience_stats(),
            "admin_stats": await public_resolver.get_audience_stats("COLLECTIVE_ADMINS"),
            "recipients": sorted(user["id"] for user in recipients),
        }

    result = _run(_with_repository(database_url, scenario))

    assert result["public_all"] == 3
    assert result["private_all"] == 2
    assert result["admins"] == 1
    assert result["no_one"] == 0
    assert result["stats"] == {"USER": 3}
    assert result["admin_stats"] == {}
    assert result["recipients"] == sorted([ADMIN_USER_ID, BACKER_USER_ID, FOLLOWER_USER_ID])


def test_host_audience_includes_admins_of_hosted_collectives(database_url: str, seeded: dict[str, int]) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[int, int]:
        record = await repository.create_update(
            collective_id=seeded["host"],
            actor_user_id=ADMIN_USER_ID,
            fields={"title": "Host news"},
        )
        resolver = repository.audience_resolver(record)
        return (
            await resolver.count_users_to_notify("ALL"),
            await resolver.count_users_to_notify("FINANCIAL_CONTRIBUTORS"),
        )

    all_count, contributors_count = _run(_with_repository(database_url, scenario))

    assert all_count == 2
    assert contributors_count == 1


def test_publish_records_activity_with_public_url(database_url: str, seeded: dict[str, int]) -> None:
    async def scenario(repository: PostgresRepository) -> str | None:
        record = await repository.create_update(
            collective_id=seeded["babel"],
            actor_user_id=ADMIN_USER_ID,
            fields={"title": "Launch"},
        )
        published = await repository.publish_update(
            update_id=record.id,
            actor_user_id=ADMIN_USER_ID,
            notification_audience="COLLECTIVE_ADMINS",
        )
        return published.notification_audience

    assert _run(_with_repository(database_url, scenario)) == "COLLECTIVE_ADMINS"

    activities = _run(_fetch_activities(database_url))
    assert [row["type"] for row in activities] == ["collective.update.created", "collective.update.published"]
    published_data = json.loads(activities[1]["data"])
    assert published_data["url"].endswith("/babel/updates/launch")


def test_make_updates_public_flips_due_private_updates(database_url: str, seeded: dict[str, int]) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[int, int]:
        for title, public_on in (("Due", "2024-01-01T00:00:00Z"), ("Later", "2030-01-01T00:00:00Z")):
            await repository.create_update(
                collective_id=seeded["babel"],
                actor_user_id=ADMIN_USER_ID,
                fields={"title": title, "is_private": True, "make_public_on": public_on},
            )
        first = await repository.make_updates_public(today=date(2024, 6, 1))
        second = await repository.make_updates_public(today=date(2024, 6, 1))
        return first, second

    assert _run(_with_repository(database_url, scenario)) == (1, 0)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _with_repository(database_url: str, scenario: Callable[[PostgresRepository], Awaitable[T]]) -> T:
    repository = PostgresRepository(
        database_url=database_url,
        min_pool_size=1,
        max_pool_size=2,
        website_url="https://example.org",
        slug_max_attempts=100,
        slug_conflict_retries=3,
        summary_max_length=240,
    )
    try:
        return await scenario(repository)
    finally:
        await repository.close()


async def _fetch_activities(database_url: str) -> list[dict[str, Any]]:
    conn = await asyncpg.connect(database_url)
    try:
        rows = await conn.fetch("select type, data::text as data from activities order by id")
        return [dict(row) for row in rows]
    finally:
        await conn.close()


async def _reset_and_seed(database_url: str) -> dict[str, int]:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text())
        await conn.execute(
            """
            truncate table activities, comments, updates, tiers, members, users, collectives
            restart identity cascade
            """
        )

        async def collective(slug: str, collective_type: str = "COLLECTIVE", **extra: Any) -> int:
            return await conn.fetchval(
                """
                insert into collectives (slug, name, type, is_host_account, approved_at, host_collective_id, parent_collective_id)
                values ($1, $1, $2, $3, $4, $5, $6)
                returning id
                """,
                slug,
                collective_type,
                extra.get("is_host_account", False),
                extra.get("approved_at"),
                extra.get("host_collective_id"),
                extra.get("parent_collective_id"),
            )

        async def user(user_id: str, slug: str) -> int:
            user_collective_id = await collective(slug, "USER")
            await conn.execute(
                "insert into users (id, email, collective_id) values ($1::uuid, $2, $3)",
                user_id,
                f"{slug}@example.org",
                user_collective_id,
            )
            return user_collective_id

        async def member(collective_id: int, member_collective_id: int, role: str) -> None:
            await conn.execute(
                "insert into members (collective_id, member_collective_id, role) values ($1, $2, $3)",
                collective_id,
                member_collective_id,
                role,
            )

        host = await collective("host", "ORGANIZATION", is_host_account=True)
        parent = await collective("parent")
        babel = await collective("babel", parent_collective_id=parent)
        hosted = await collective("hosted", host_collective_id=host, approved_at=datetime(2024, 1, 1, tzinfo=timezone.utc))

        admin = await user(ADMIN_USER_ID, "admin")
        backer = await user(BACKER_USER_ID, "backer")
        follower = await user(FOLLOWER_USER_ID, "follower")
        hosted_admin = await user(HOSTED_ADMIN_USER_ID, "hosted-admin")

        await member(babel, admin, "ADMIN")
        await member(babel, backer, "BACKER")
        await member(babel, follower, "FOLLOWER")
        await member(host, admin, "ADMIN")
        await member(hosted, hosted_admin, "ADMIN")

        return {"host": host, "parent": parent, "babel": babel, "hosted": hosted}
    finally:
        await conn.close()
