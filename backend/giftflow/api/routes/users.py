from fastapi import APIRouter, Query, Request

from giftflow.api.deps import CurrentUserDep, DbSessionDep
from giftflow.core.audit import AuditAction, audit_log
from giftflow.schemas.auth import ProfilePublic, SettingsPublic, SettingsUpdate, UserPublic, UserSummary
from giftflow.services import users as user_service


router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=list[UserSummary])
async def list_users(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[UserSummary]:
    users = await user_service.list_visible_users(db, current_user, limit=limit, offset=offset)
    return [UserSummary.model_validate(user) for user in users]


@router.patch("/settings", response_model=SettingsPublic)
async def update_settings(
    payload: SettingsUpdate,
    request: Request,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> SettingsPublic:
    user = await user_service.update_settings(db, current_user, **payload.model_dump(exclude_unset=True))
    audit_log(
        AuditAction.SETTINGS_UPDATE,
        request=request,
        user_id=current_user.telegram_id,
        details={"fields": sorted(payload.model_fields_set)},
    )
    return SettingsPublic.model_validate(user)


@router.get("/{telegram_id}", response_model=ProfilePublic)
async def get_user(telegram_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> ProfilePublic:
    profile = await user_service.get_visible_profile(db, telegram_id, current_user)
    return ProfilePublic(
        user=UserPublic.model_validate(profile["user"]),
        gifts_count=profile["gifts_count"],
        is_blocked=profile["is_blocked"],
    )
