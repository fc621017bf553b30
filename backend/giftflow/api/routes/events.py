from fastapi import APIRouter, Query, Request, status

from giftflow.api.deps import CurrentUserDep, DbSessionDep
from giftflow.api.serializers import serialize_event, serialize_gifts
from giftflow.core.audit import AuditAction, audit_event_action
from giftflow.schemas.event import AddGiftsRequest, EventCreate, EventPublic, EventUpdate, MyGiftsPublic
from giftflow.services import events as event_service


router = APIRouter(prefix="/events", tags=["events"])


@router.post("", response_model=EventPublic, status_code=status.HTTP_201_CREATED)
async def create_event(payload: EventCreate, db: DbSessionDep, current_user: CurrentUserDep) -> EventPublic:
    event = await event_service.create_event(db, current_user, **payload.model_dump())
    return serialize_event(event, current_user)


@router.get("/list", response_model=list[EventPublic])
async def list_events(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    author: str = Query(default="all"),
) -> list[EventPublic]:
    events = await event_service.list_events(db, current_user, author)
    return [serialize_event(event, current_user) for event in events]


@router.get("/list/{telegram_id}", response_model=list[EventPublic])
async def list_user_events(telegram_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> list[EventPublic]:
    events = await event_service.list_user_events(db, telegram_id, current_user)
    return [serialize_event(event, current_user) for event in events]


@router.get("/{event_id}", response_model=EventPublic)
async def get_event(event_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> EventPublic:
    event = await event_service.get_event(db, event_id, current_user)
    return serialize_event(event, current_user)


@router.put("/{event_id}", response_model=EventPublic)
async def update_event(
    event_id: int,
    payload: EventUpdate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> EventPublic:
    event = await event_service.update_event(
        db, event_id, current_user, payload.model_dump(exclude_unset=True)
    )
    return serialize_event(event, current_user)


@router.delete("/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_event(
    event_id: int,
    request: Request,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> None:
    await event_service.delete_event(db, event_id, current_user)
    audit_event_action(AuditAction.EVENT_DELETE, request, current_user.telegram_id, event_id)


@router.post("/{event_id}/join", response_model=EventPublic)
async def join_event(event_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> EventPublic:
    event = await event_service.join_event(db, event_id, current_user)
    return serialize_event(event, current_user)


@router.post("/{event_id}/leave", response_model=EventPublic)
async def leave_event(event_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> EventPublic:
    event = await event_service.leave_event(db, event_id, current_user)
    return serialize_event(event, current_user)


@router.delete("/{event_id}/members/{member_telegram_id}", response_model=EventPublic)
async def remove_member(
    event_id: int,
    member_telegram_id: int,
    request: Request,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> EventPublic:
    event = await event_service.remove_member(db, event_id, current_user, member_telegram_id)
    audit_event_action(
        AuditAction.EVENT_MEMBER_REMOVE,
        request,
        current_user.telegram_id,
        event_id,
        {"member_id": member_telegram_id},
    )
    return serialize_event(event, current_user)


@router.post("/{event_id}/gifts/{gift_id}", response_model=EventPublic)
async def add_gift(event_id: int, gift_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> EventPublic:
    event = await event_service.add_gift_to_event(db, event_id, current_user, gift_id)
    return serialize_event(event, current_user)


@router.post("/{event_id}/gifts", response_model=EventPublic)
async def add_gifts(
    event_id: int,
    payload: AddGiftsRequest,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> EventPublic:
    event = await event_service.add_gifts_to_event(db, event_id, current_user, payload.gift_ids)
    return serialize_event(event, current_user)


@router.get("/{event_id}/my-gifts", response_model=MyGiftsPublic)
async def my_gifts(event_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> MyGiftsPublic:
    groups = await event_service.my_gifts(db, event_id, current_user)
    return MyGiftsPublic(
        given=await serialize_gifts(db, groups["given"], current_user),
        received=await serialize_gifts(db, groups["received"], current_user),
    )
