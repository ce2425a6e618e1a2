from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from updates.core.auth import Principal
from updates.core.security import get_editor_principal, get_optional_principal
from updates.schemas.updates import (
    AudienceOut,
    NotificationAudienceValue,
    RecipientOut,
    UpdateCreateRequest,
    UpdateEditRequest,
    UpdateOut,
    UpdatePublishRequest,
)
from updates.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from updates.services.repository import get_repository

router = APIRouter()


def _http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryValidationError):
        return HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, RepositoryConflictError):
        headers = {"Retry-After": "0"} if exc.retryable else None
        return HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail=str(exc), headers=headers)
    return HTTPException(status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("/collectives/{collective_id}/updates", response_model=list[UpdateOut])
async def list_updates(
    collective_id: int,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    include_drafts: bool = Query(default=False),
    principal: Principal = Depends(get_optional_principal),
    repository=Depends(get_repository),
) -> list[UpdateOut]:
    if include_drafts and not principal.has_scopes({"updates:write"}):
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail="drafts require updates:write")
    try:
        records = await repository.list_updates(
            collective_id=collective_id,
            include_drafts=include_drafts,
            limit=limit,
            offset=offset,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return [UpdateOut(**record.to_dict()) for record in records]


@router.get("/collectives/{collective_id}/updates/{slug}", response_model=UpdateOut)
async def get_update_by_slug(collective_id: int, slug: str, repository=Depends(get_repository)) -> UpdateOut:
    try:
        record = await repository.get_update_by_slug(collective_id=collective_id, slug=slug)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return UpdateOut(**record.to_dict())


@router.post("/collectives/{collective_id}/updates", response_model=UpdateOut, status_code=http_status.HTTP_201_CREATED)
async def create_update(
    collective_id: int,
    payload: UpdateCreateRequest,
    principal: Principal = Depends(get_editor_principal),
    repository=Depends(get_repository),
) -> UpdateOut:
    fields = payload.model_dump(exclude={"from_collective_id"}, exclude_unset=True)
    try:
        record = await repository.create_update(
            collective_id=collective_id,
            actor_user_id=principal.actor_id,
            fields=fields,
            from_collective_id=payload.from_collective_id,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return UpdateOut(**record.to_dict())


@router.get("/updates/{update_id}", response_model=UpdateOut)
async def get_update(update_id: int, repository=Depends(get_repository)) -> UpdateOut:
    try:
        record = await repository.get_update(update_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return UpdateOut(**record.to_dict())


@router.patch("/updates/{update_id}", response_model=UpdateOut)
async def edit_update(
    update_id: int,
    payload: UpdateEditRequest,
    principal: Principal = Depends(get_editor_principal),
    repository=Depends(get_repository),
) -> UpdateOut:
    try:
        record = await repository.edit_update(
            update_id=update_id,
            actor_user_id=principal.actor_id,
            changes=payload.model_dump(exclude_unset=True),
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return UpdateOut(**record.to_dict())


@router.post("/updates/{update_id}/publish", response_model=UpdateOut)
async def publish_update(
    update_id: int,
    payload: UpdatePublishRequest | None = None,
    principal: Principal = Depends(get_editor_principal),
    repository=Depends(get_repository),
) -> UpdateOut:
    try:
        record = await repository.publish_update(
            update_id=update_id,
            actor_user_id=principal.actor_id,
            notification_audience=payload.notification_audience if payload else None,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return UpdateOut(**record.to_dict())


@router.post("/updates/{update_id}/unpublish", response_model=UpdateOut)
async def unpublish_update(
    update_id: int,
    principal: Principal = Depends(get_editor_principal),
    repository=Depends(get_repository),
) -> UpdateOut:
    try:
        record = await repository.unpublish_update(update_id=update_id, actor_user_id=principal.actor_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return UpdateOut(**record.to_dict())


@router.delete("/updates/{update_id}", status_code=http_status.HTTP_204_NO_CONTENT)
async def delete_update(
    update_id: int,
    principal: Principal = Depends(get_editor_principal),
    repository=Depends(get_repository),
) -> None:
    try:
        await repository.delete_update(update_id=update_id, actor_user_id=principal.actor_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc


@router.get("/updates/{update_id}/audience", response_model=AudienceOut)
async def get_update_audience(
    update_id: int,
    audience: NotificationAudienceValue | None = Query(default=None),
    principal: Principal = Depends(get_editor_principal),
    repository=Depends(get_repository),
) -> AudienceOut:
    try:
        record = await repository.get_update(update_id)
        resolver = repository.audience_resolver(record)
        resolved = resolver.audience(audience)
        return AudienceOut(
            audience=resolved.value,
            target_roles=list(resolver.target_roles(resolved)),
            include_hosted_accounts=await resolver.should_include_hosted_accounts(resolved),
            users_count=await resolver.count_users_to_notify(resolved),
            stats=await resolver.get_audience_stats(resolved),
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc


@router.get("/updates/{update_id}/recipients", response_model=list[RecipientOut])
async def list_update_recipients(
    update_id: int,
    principal: Principal = Depends(get_editor_principal),
    repository=Depends(get_repository),
) -> list[RecipientOut]:
    try:
        principal.require_scopes({"updates:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        record = await repository.get_update(update_id)
        users = await repository.audience_resolver(record).list_users_to_notify()
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return [RecipientOut(**user) for user in users]
