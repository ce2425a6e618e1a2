import logging

import asyncpg  # type: ignore[import-untyped]
from fastapi import APIRouter, Depends, HTTPException, status

from updates.services.errors import RepositoryUnavailableError
from updates.services.repository import get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(repository=Depends(get_repository)) -> dict[str, str]:
    """Ready once the database answers a trivial query."""
    try:
        await repository.run_query("select 1")
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
        # pool exists but its connections are gone
        logger.warning("readiness check failed error=%s", exc.__class__.__name__)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="database unavailable") from exc
    return {"status": "ready"}
