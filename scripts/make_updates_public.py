#!/usr/bin/env python3
"""Make private updates public once their make_public_on date has passed.

Meant to be run once a day from cron.
"""

from __future__ import annotations

import argparse
import asyncio
from datetime import date
import logging

from updates.core.config import get_settings
from updates.core.telemetry import configure_logging
from updates.services.repository import get_repository

logger = logging.getLogger("make_updates_public")


async def run(today: date | None) -> int:
    repository = get_repository()
    try:
        return await repository.make_updates_public(today=today)
    finally:
        await repository.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Flip private updates to public when make_public_on is due.")
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Override the current UTC date (YYYY-MM-DD)",
    )
    args = parser.parse_args()

    configure_logging(get_settings())
    affected = asyncio.run(run(args.today))
    print(affected)


if __name__ == "__main__":
    main()
