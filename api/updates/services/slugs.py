from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
import logging
import re

from opentelemetry import trace
from pymdownx.slugs import slugify as _md_slugify
from unidecode import unidecode

from updates.services.errors import SlugGenerationFailedError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_SLUG_MAX_ATTEMPTS = 10_000

_slugify_lower = _md_slugify(case="lower")
_REPEATED_DASHES_RE = re.compile(r"-{2,}")

ExistingSlugsFetcher = Callable[[int, str, int | None], Awaitable[list[str]]]


def normalize_slug(slug: str) -> str:
    return slug.lower().replace(" ", "-").replace(".", "")


def slugify_title(title: str | None) -> str:
    """Turn a title into a lower-case, hyphen-delimited ASCII token.

    Returns an empty string when nothing survives transliteration.
    """
    if not title:
        return ""
    ascii_title = unidecode(title.strip())
    slug = normalize_slug(_slugify_lower(ascii_title, sep="-"))
    return _REPEATED_DASHES_RE.sub("-", slug).strip("-")


def like_prefix_pattern(token: str) -> str:
    escaped = token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"


def suggest_unique_slug(
    token: str,
    existing_slugs: Iterable[str],
    *,
    max_attempts: int = DEFAULT_SLUG_MAX_ATTEMPTS,
) -> str:
    """Return ``token`` or the first ``token<n>`` not in ``existing_slugs``."""
    if not token:
        raise SlugGenerationFailedError("We couldn't generate a unique slug for this Update")

    taken = set(existing_slugs)
    for count in range(max(1, max_attempts)):
        candidate = f"{token}{count}" if count > 0 else token
        if candidate not in taken:
            return candidate

    raise SlugGenerationFailedError(
        f"We couldn't generate a unique slug for this Update after {max_attempts} attempts"
    )


def tombstone_slug(slug: str, now: datetime | None = None) -> str:
    """Rename a slug on deletion so the original becomes free again."""
    now = now or datetime.now(timezone.utc)
    return f"{slug}-{int(now.timestamp() * 1000)}"


class SlugAllocator:
    """Allocates slugs unique within a collective.

    Not safe against concurrent allocation of the same token: two writers can
    read the same snapshot and pick the same candidate. The unique index on
    (collective_id, slug) rejects the loser, which must allocate again.
    """

    def __init__(self, fetch_existing_slugs: ExistingSlugsFetcher, *, max_attempts: int = DEFAULT_SLUG_MAX_ATTEMPTS) -> None:
        self.fetch_existing_slugs = fetch_existing_slugs
        self.max_attempts = max_attempts

    async def allocate(self, *, collective_id: int, title: str | None, exclude_update_id: int | None = None) -> str | None:
        if not title or not title.strip():
            return None

        token = slugify_title(title)
        if not token:
            raise SlugGenerationFailedError("We couldn't generate a unique slug for this Update")

        with tracer.start_as_current_span("updates.slug.allocate") as span:
            span.set_attribute("updates.collective_id", collective_id)
            span.set_attribute("updates.slug.token", token)
            existing = await self.fetch_existing_slugs(collective_id, token, exclude_update_id)
            span.set_attribute("updates.slug.candidates", len(existing))
            slug = suggest_unique_slug(token, existing, max_attempts=self.max_attempts)
        if slug != token:
            logger.debug("slug collision collective_id=%s token=%s resolved=%s", collective_id, token, slug)
        return slug
