from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import date, datetime, time, timezone
from functools import lru_cache
import json
import logging
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from updates.core.config import get_settings
from updates.services.audience import AudienceResolver, NotificationAudience, resolve_audience
from updates.services.content import generate_summary, normalize_title, sanitize_html, sanitize_tags, validate_tags
from updates.services.errors import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    SlugConflictError,
    SlugGenerationFailedError,
)
from updates.services.records import UpdateRecord, collective_activity
from updates.services.slugs import SlugAllocator, like_prefix_pattern, tombstone_slug

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields a remote user may change on an existing update. Anything else in an
# edit payload is dropped.
EDITABLE_FIELDS = frozenset({"tier_id", "title", "html", "tags", "is_private", "is_changelog", "make_public_on"})
CREATABLE_FIELDS = EDITABLE_FIELDS | {"image"}
_NON_NULLABLE_FLAGS = ("is_private", "is_changelog")

SLUG_UNIQUE_CONSTRAINT = "updates_collective_id_slug_key"

COLLECTIVE_UPDATE_CREATED = "collective.update.created"
COLLECTIVE_UPDATE_PUBLISHED = "collective.update.published"

_COLUMN_CASTS = {
    "last_edited_by_user_id": "::uuid",
    "created_by_user_id": "::uuid",
}

_UPDATE_COLUMNS_SQL = """
  id,
  collective_id,
  from_collective_id,
  tier_id,
  created_by_user_id::text as created_by_user_id,
  last_edited_by_user_id::text as last_edited_by_user_id,
  slug,
  title,
  html,
  summary,
  image,
  is_private,
  is_changelog,
  notification_audience,
  tags,
  published_at,
  make_public_on,
  created_at,
  updated_at,
  deleted_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        website_url: str,
        slug_max_attempts: int,
        slug_conflict_retries: int,
        summary_max_length: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.website_url = website_url.rstrip("/")
        self.slug_max_attempts = max(1, slug_max_attempts)
        self.slug_conflict_retries = max(0, slug_conflict_retries)
        self.summary_max_length = max(1, summary_max_length)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def run_query(self, sql: str, *params: Any) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(sql, *params)
        return [dict(row) for row in rows]

    async def get_collective(self, collective_id: int) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              id,
              slug,
              name,
              type::text as type,
              is_host_account,
              approved_at,
              host_collective_id,
              parent_collective_id
            from collectives
            where id = $1
              and deleted_at is null
            """,
            collective_id,
        )
        return dict(row) if row else None

    def audience_resolver(self, update: UpdateRecord) -> AudienceResolver:
        return AudienceResolver(update, self)

    async def get_update(self, update_id: int) -> UpdateRecord:
        pool = await self._get_pool()
        row = await self._fetch_update_row(conn=pool, update_id=update_id)
        if not row:
            raise RepositoryNotFoundError("update not found")
        return self._update_row_to_record(row)

    async def get_update_by_slug(self, *, collective_id: int, slug: str) -> UpdateRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_UPDATE_COLUMNS_SQL}
            from updates
            where collective_id = $1
              and slug = $2
              and deleted_at is null
            """,
            collective_id,
            slug.lower(),
        )
        if not row:
            raise RepositoryNotFoundError("update not found")
        return self._update_row_to_record(row)

    async def list_updates(
        self,
        *,
        collective_id: int,
        include_drafts: bool,
        limit: int,
        offset: int,
    ) -> list[UpdateRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_UPDATE_COLUMNS_SQL}
            from updates
            where collective_id = $1
              and deleted_at is null
              and ($2::boolean or published_at is not null)
            order by coalesce(published_at, created_at) desc, id desc
            limit $3
            offset $4
            """,
            collective_id,
            include_drafts,
            limit,
            offset,
        )
        return [self._update_row_to_record(row) for row in rows]

    async def create_update(
        self,
        *,
        collective_id: int,
        actor_user_id: str,
        fields: dict[str, Any],
        from_collective_id: int | None = None,
    ) -> UpdateRecord:
        values = self._prepare_fields(fields, allowed=CREATABLE_FIELDS)
        if "title" not in values:
            raise RepositoryValidationError("title is required")
        values.setdefault("html", "")
        values.setdefault("summary", "")
        values["collective_id"] = collective_id
        values["from_collective_id"] = from_collective_id
        values["created_by_user_id"] = actor_user_id
        values["last_edited_by_user_id"] = actor_user_id

        async def _insert(conn: asyncpg.Connection) -> UpdateRecord:
            if values.get("tier_id") is not None:
                await self._validate_tier(conn=conn, tier_id=values["tier_id"], collective_id=collective_id)
            slug = await self._slug_allocator(conn).allocate(collective_id=collective_id, title=values["title"])
            if not slug:
                raise SlugGenerationFailedError("We couldn't generate a unique slug for this Update")

            params: list[Any] = []
            columns: list[str] = []
            placeholders: list[str] = []
            for column, value in {**values, "slug": slug}.items():
                params.append(value)
                columns.append(column)
                placeholders.append(f"${len(params)}{_COLUMN_CASTS.get(column, '')}")
            row = await conn.fetchrow(
                f"""
                insert into updates ({", ".join(columns)})
                values ({", ".join(placeholders)})
                returning {_UPDATE_COLUMNS_SQL}
                """,
                *params,
            )
            return self._update_row_to_record(row)

        pool = await self._get_pool()
        try:
            record = await self._run_with_slug_retry(pool, _insert)
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("collective not found") from exc

        logger.info("update created id=%s collective_id=%s slug=%s", record.id, record.collective_id, record.slug)
        await self._emit_update_created(record)
        return record

    async def edit_update(self, *, update_id: int, actor_user_id: str, changes: dict[str, Any]) -> UpdateRecord:
        values = self._prepare_fields(changes, allowed=EDITABLE_FIELDS)

        async def _apply(conn: asyncpg.Connection) -> UpdateRecord:
            row = await self._fetch_update_row(conn=conn, update_id=update_id, for_update=True)
            if not row:
                raise RepositoryNotFoundError("update not found")
            current = self._update_row_to_record(row)

            if values.get("tier_id") is not None:
                await self._validate_tier(conn=conn, tier_id=values["tier_id"], collective_id=current.collective_id)

            assignments = {**values, "last_edited_by_user_id": actor_user_id}
            if self._needs_slug(published_at=current.published_at, slug=current.slug):
                slug = await self._slug_allocator(conn).allocate(
                    collective_id=current.collective_id,
                    title=assignments.get("title", current.title),
                    exclude_update_id=current.id,
                )
                if slug:
                    assignments["slug"] = slug

            return await self._apply_assignments(conn=conn, update_id=update_id, assignments=assignments)

        pool = await self._get_pool()
        return await self._run_with_slug_retry(pool, _apply)

    async def publish_update(
        self,
        *,
        update_id: int,
        actor_user_id: str,
        notification_audience: str | NotificationAudience | None = None,
    ) -> UpdateRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._fetch_update_row(conn=conn, update_id=update_id, for_update=True)
                if not row:
                    raise RepositoryNotFoundError("update not found")
                current = self._update_row_to_record(row)
                self._validate_publish_transition(current)
                audience = self._resolve_publish_audience(
                    requested=notification_audience,
                    stored=current.notification_audience,
                )
                record = await self._apply_assignments(
                    conn=conn,
                    update_id=update_id,
                    assignments={"published_at": datetime.now(timezone.utc), "notification_audience": audience},
                )

        logger.info(
            "update published id=%s collective_id=%s audience=%s",
            record.id,
            record.collective_id,
            record.notification_audience,
        )
        await self._emit_update_published(record, actor_user_id=actor_user_id)
        return record

    async def unpublish_update(self, *, update_id: int, actor_user_id: str) -> UpdateRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._fetch_update_row(conn=conn, update_id=update_id, for_update=True)
                if not row:
                    raise RepositoryNotFoundError("update not found")
                self._validate_unpublish_transition(self._update_row_to_record(row))
                # notification_audience stays as the record of the last publication
                return await self._apply_assignments(
                    conn=conn,
                    update_id=update_id,
                    assignments={"published_at": None, "last_edited_by_user_id": actor_user_id},
                )

    async def delete_update(self, *, update_id: int, actor_user_id: str) -> UpdateRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._fetch_update_row(conn=conn, update_id=update_id, for_update=True)
                if not row:
                    raise RepositoryNotFoundError("update not found")
                current = self._update_row_to_record(row)
                await conn.execute(
                    "update comments set deleted_at = now() where update_id = $1 and deleted_at is null",
                    update_id,
                )
                record = await self._apply_assignments(
                    conn=conn,
                    update_id=update_id,
                    assignments={
                        "slug": tombstone_slug(current.slug),
                        "deleted_at": datetime.now(timezone.utc),
                        "last_edited_by_user_id": actor_user_id,
                    },
                )

        logger.info("update deleted id=%s freed_slug=%s", record.id, current.slug)
        return record

    async def make_updates_public(self, *, today: date | None = None) -> int:
        day = today or datetime.now(timezone.utc).date()
        cutoff = datetime.combine(day, time.min, tzinfo=timezone.utc)
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update updates
            set is_private = false, updated_at = now()
            where is_private = true
              and make_public_on <= $1
              and deleted_at is null
            """,
            cutoff,
        )
        affected = self._parse_affected_count(status)
        logger.info("Number of private updates made public: %s", affected)
        return affected

    async def _run_with_slug_retry(
        self,
        pool: asyncpg.Pool,
        operation: Callable[[asyncpg.Connection], Awaitable[T]],
    ) -> T:
        attempt = 0
        while True:
            try:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        return await operation(conn)
            except pg_exc.UniqueViolationError as exc:
                if getattr(exc, "constraint_name", None) != SLUG_UNIQUE_CONSTRAINT:
                    raise
                if attempt >= self.slug_conflict_retries:
                    raise SlugConflictError("slug was claimed by a concurrent write; retry the request") from exc
                attempt += 1
                logger.warning("slug conflict, re-running allocation attempt=%s", attempt)

    def _slug_allocator(self, conn: asyncpg.Connection) -> SlugAllocator:
        async def fetch_existing_slugs(collective_id: int, token: str, exclude_update_id: int | None) -> list[str]:
            rows = await conn.fetch(
                """
                select slug
                from updates
                where collective_id = $1
                  and slug like $2
                  and ($3::bigint is null or id <> $3)
                """,
                collective_id,
                like_prefix_pattern(token),
                exclude_update_id,
            )
            return [row["slug"] for row in rows]

        return SlugAllocator(fetch_existing_slugs, max_attempts=self.slug_max_attempts)

    async def _validate_tier(self, *, conn: asyncpg.Connection, tier_id: int, collective_id: int) -> None:
        row = await conn.fetchrow(
            "select id, collective_id from tiers where id = $1 and deleted_at is null",
            tier_id,
        )
        if not row:
            raise RepositoryValidationError("Tier not found")
        if row["collective_id"] != collective_id:
            raise RepositoryValidationError("Cannot link this update to a Tier that doesn't belong to this collective")

    async def _apply_assignments(
        self,
        *,
        conn: asyncpg.Connection,
        update_id: int,
        assignments: dict[str, Any],
    ) -> UpdateRecord:
        params: list[Any] = [update_id]

        def bind(column: str, value: Any) -> str:
            params.append(value)
            return f"{column} = ${len(params)}{_COLUMN_CASTS.get(column, '')}"

        set_sql = ", ".join(bind(column, value) for column, value in assignments.items())
        row = await conn.fetchrow(
            f"""
            update updates
            set {set_sql}, updated_at = now()
            where id = $1
            returning {_UPDATE_COLUMNS_SQL}
            """,
            *params,
        )
        if not row:
            raise RepositoryNotFoundError("update not found")
        return self._update_row_to_record(row)

    async def _fetch_update_row(
        self,
        *,
        conn: asyncpg.Connection | asyncpg.Pool,
        update_id: int,
        for_update: bool = False,
    ) -> asyncpg.Record | None:
        lock_sql = "for update" if for_update else ""
        return await conn.fetchrow(
            f"""
            select {_UPDATE_COLUMNS_SQL}
            from updates
            where id = $1
              and deleted_at is null
            {lock_sql}
            """,
            update_id,
        )

    async def _emit_update_created(self, record: UpdateRecord) -> None:
        try:
            collective = await self.get_collective(record.collective_id)
            from_collective = (
                await self.get_collective(record.from_collective_id) if record.from_collective_id else None
            )
            await self._record_activity(
                activity_type=COLLECTIVE_UPDATE_CREATED,
                user_id=record.created_by_user_id,
                collective_id=record.collective_id,
                from_collective_id=record.from_collective_id,
                host_collective_id=None,
                data={
                    "update": record.activity,
                    "collective": collective_activity(collective),
                    "from_collective": collective_activity(from_collective),
                },
            )
        except Exception:
            logger.exception("failed to record %s activity for update id=%s", COLLECTIVE_UPDATE_CREATED, record.id)

    async def _emit_update_published(self, record: UpdateRecord, *, actor_user_id: str) -> None:
        try:
            collective = await self.get_collective(record.collective_id) or {}
            from_collective = (
                await self.get_collective(record.from_collective_id) if record.from_collective_id else None
            )
            await self._record_activity(
                activity_type=COLLECTIVE_UPDATE_PUBLISHED,
                user_id=actor_user_id,
                collective_id=record.collective_id,
                from_collective_id=record.from_collective_id,
                host_collective_id=collective.get("host_collective_id") if collective.get("approved_at") else None,
                data={
                    "update": record.activity,
                    "collective": collective_activity(collective),
                    "from_collective": collective_activity(from_collective),
                    "url": self.public_update_url(collective_slug=collective.get("slug"), update_slug=record.slug),
                },
            )
        except Exception:
            logger.exception("failed to record %s activity for update id=%s", COLLECTIVE_UPDATE_PUBLISHED, record.id)

    async def _record_activity(
        self,
        *,
        activity_type: str,
        user_id: str | None,
        collective_id: int,
        from_collective_id: int | None,
        host_collective_id: int | None,
        data: dict[str, Any],
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into activities (type, user_id, collective_id, from_collective_id, host_collective_id, data)
            values ($1, $2::uuid, $3, $4, $5, $6::jsonb)
            """,
            activity_type,
            user_id,
            collective_id,
            from_collective_id,
            host_collective_id,
            json.dumps(data, default=str),
        )

    def public_update_url(self, *, collective_slug: str | None, update_slug: str) -> str:
        return f"{self.website_url}/{collective_slug}/updates/{update_slug}"

    def _prepare_fields(self, payload: dict[str, Any], *, allowed: frozenset[str]) -> dict[str, Any]:
        values = self._pick_fields(payload, allowed)
        if "title" in values:
            values["title"] = normalize_title(values["title"])
        if "html" in values:
            html = sanitize_html(values["html"])
            values["html"] = html
            values["summary"] = generate_summary(html, self.summary_max_length)
        if "tags" in values:
            tags = sanitize_tags(values["tags"])
            validate_tags(tags)
            values["tags"] = tags
        for flag in _NON_NULLABLE_FLAGS:
            if flag in values:
                if values[flag] is None:
                    raise RepositoryValidationError(f"{flag} cannot be null")
                values[flag] = bool(values[flag])
        if "make_public_on" in values:
            values["make_public_on"] = self._coerce_datetime(values["make_public_on"])
        if "tier_id" in values:
            values["tier_id"] = self._coerce_int(values["tier_id"])
        if "image" in values:
            values["image"] = self._coerce_text(values["image"])
        return values

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CU_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _pick_fields(payload: dict[str, Any], allowed: frozenset[str]) -> dict[str, Any]:
        return {key: value for key, value in payload.items() if key in allowed}

    @staticmethod
    def _needs_slug(*, published_at: datetime | None, slug: str | None) -> bool:
        return published_at is None or not slug

    @staticmethod
    def _resolve_publish_audience(
        *,
        requested: str | NotificationAudience | None,
        stored: str | None,
    ) -> str:
        return resolve_audience(requested, stored).value

    @staticmethod
    def _validate_publish_transition(update: UpdateRecord) -> None:
        if update.published_at is not None:
            raise RepositoryConflictError("update is already published")

    @staticmethod
    def _validate_unpublish_transition(update: UpdateRecord) -> None:
        if update.published_at is None:
            raise RepositoryConflictError("update is not published")

    @staticmethod
    def _parse_affected_count(status: str | None) -> int:
        if not status:
            return 0
        try:
            return int(status.rsplit(" ", 1)[-1])
        except ValueError:
            return 0

    @staticmethod
    def _update_row_to_record(row: asyncpg.Record | dict[str, Any]) -> UpdateRecord:
        return UpdateRecord(
            id=int(row["id"]),
            collective_id=int(row["collective_id"]),
            from_collective_id=row["from_collective_id"],
            tier_id=row["tier_id"],
            created_by_user_id=row["created_by_user_id"],
            last_edited_by_user_id=row["last_edited_by_user_id"],
            slug=row["slug"],
            title=row["title"],
            html=row["html"],
            summary=row["summary"],
            image=row["image"],
            is_private=bool(row["is_private"]),
            is_changelog=bool(row["is_changelog"]),
            notification_audience=row["notification_audience"],
            tags=list(row["tags"] or []),
            published_at=row["published_at"],
            make_public_on=row["make_public_on"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise RepositoryValidationError(f"expected an integer identifier, got {value!r}") from exc

    @staticmethod
    def _coerce_datetime(value: Any) -> datetime | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime.combine(value, time.min, tzinfo=timezone.utc)
        if isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return None
            try:
                return datetime.fromisoformat(candidate.replace("Z", "+00:00"))
            except ValueError as exc:
                raise RepositoryValidationError(f"invalid datetime: {value!r}") from exc
        raise RepositoryValidationError(f"invalid datetime: {value!r}")


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        website_url=settings.website_url,
        slug_max_attempts=settings.slug_max_attempts,
        slug_conflict_retries=settings.slug_conflict_retries,
        summary_max_length=settings.summary_max_length,
    )
