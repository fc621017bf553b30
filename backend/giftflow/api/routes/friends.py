from fastapi import APIRouter, Request, status

from giftflow.api.deps import CurrentUserDep, DbSessionDep
from giftflow.core.audit import AuditAction, audit_user_action
from giftflow.schemas.auth import UserSummary
from giftflow.schemas.social import (
    FriendRequestCreate,
    FriendRequestPublic,
    FriendRequestRespond,
    FriendRequestResult,
)
from giftflow.services import friends as friend_service


router = APIRouter(prefix="/friends", tags=["friends"])


@router.get("", response_model=list[UserSummary])
async def list_friends(db: DbSessionDep, current_user: CurrentUserDep) -> list[UserSummary]:
    friends = await friend_service.list_friends(db, current_user)
    return [UserSummary.model_validate(friend) for friend in friends]


@router.post("/requests", response_model=FriendRequestResult, status_code=status.HTTP_201_CREATED)
async def send_request(
    payload: FriendRequestCreate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> FriendRequestResult:
    request = await friend_service.send(db, current_user, payload.telegram_id)
    return FriendRequestResult(request_id=request.id, status="pending")


@router.delete("/requests/{telegram_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_request(telegram_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> None:
    await friend_service.cancel(db, current_user, telegram_id)


@router.post("/requests/respond", response_model=FriendRequestResult)
async def respond_request(
    payload: FriendRequestRespond,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> FriendRequestResult:
    await friend_service.respond(db, current_user, payload.request_id, payload.action)
    return FriendRequestResult(
        request_id=payload.request_id,
        status="accepted" if payload.action == "accept" else "declined",
    )


@router.get("/requests/incoming", response_model=list[FriendRequestPublic])
async def incoming_requests(db: DbSessionDep, current_user: CurrentUserDep) -> list[FriendRequestPublic]:
    requests = await friend_service.list_incoming(db, current_user)
    return [FriendRequestPublic.model_validate(item) for item in requests]


@router.get("/requests/outgoing", response_model=list[FriendRequestPublic])
async def outgoing_requests(db: DbSessionDep, current_user: CurrentUserDep) -> list[FriendRequestPublic]:
    requests = await friend_service.list_outgoing(db, current_user)
    return [FriendRequestPublic.model_validate(item) for item in requests]


@router.get("/blocked", response_model=list[UserSummary])
async def list_blocked(db: DbSessionDep, current_user: CurrentUserDep) -> list[UserSummary]:
    blocked = await friend_service.list_blocked(db, current_user)
    return [UserSummary.model_validate(user) for user in blocked]


@router.post("/block/{telegram_id}", response_model=UserSummary)
async def block_user(
    telegram_id: int,
    request: Request,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> UserSummary:
    target = await friend_service.block(db, current_user, telegram_id)
    audit_user_action(AuditAction.USER_BLOCK, request, current_user.telegram_id, telegram_id)
    return UserSummary.model_validate(target)


@router.delete("/block/{telegram_id}", response_model=UserSummary)
async def unblock_user(
    telegram_id: int,
    request: Request,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> UserSummary:
    target = await friend_service.unblock(db, current_user, telegram_id)
    audit_user_action(AuditAction.USER_UNBLOCK, request, current_user.telegram_id, telegram_id)
    return UserSummary.model_validate(target)


@router.delete("/{telegram_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_friend(
    telegram_id: int,
    request: Request,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> None:
    await friend_service.remove_friend(db, current_user, telegram_id)
    audit_user_action(AuditAction.FRIEND_REMOVE, request, current_user.telegram_id, telegram_id)
