from datetime import datetime
import logging

from sqlalchemy import delete, exists, insert, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from giftflow.core.clock import as_utc
from giftflow.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from giftflow.models.models import (
    DEFAULT_ACKNOWLEDGEMENT_MESSAGE,
    Donation,
    Donor,
    EntityModel,
    Event,
    Gift,
    NotificationType,
    User,
    event_gifts,
    event_members,
    user_friends,
)
from giftflow.services import notifications
from giftflow.services.friends import list_friends
from giftflow.services.users import get_by_telegram_id, require_user, resolve_users
from giftflow.services.visibility import require_visible, visible_filter

logger = logging.getLogger("giftflow.events")

AUTHOR_FILTERS = {"me", "friends", "all"}
UPDATABLE_FIELDS = {
    "name",
    "description",
    "image_url",
    "start_date",
    "end_date",
    "is_anonymous",
    "send_acknowledgements",
    "acknowledgement_message",
}
# Columns that are NOT NULL in the events table
REQUIRED_FIELDS = {"name", "is_anonymous", "send_acknowledgements"}


def _event_query():
    return select(Event).options(
        selectinload(Event.members),
        selectinload(Event.viewers),
        selectinload(Event.gifts)
        .selectinload(Gift.donation)
        .selectinload(Donation.donors)
        .selectinload(Donor.user),
    )


async def _load_event(db: AsyncSession, event_id: int, *, fresh: bool = False) -> Event:
    stmt = _event_query().where(Event.id == event_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await db.execute(stmt)
    event = result.scalar_one_or_none()
    if event is None:
        raise NotFoundError("Event not found")
    return event


def _check_dates(start: datetime | None, end: datetime | None) -> None:
    if start is not None and end is not None and as_utc(end) < as_utc(start):
        raise ValidationError("Event cannot end before it starts")


async def _is_member(db: AsyncSession, event: Event, user: User) -> bool:
    return bool(
        await db.scalar(
            select(
                exists().where(
                    event_members.c.event_id == event.id,
                    event_members.c.user_id == user.id,
                )
            )
        )
    )


async def _owner_gifts(db: AsyncSession, owner: User, gift_ids: list[int]) -> list[Gift]:
    if not gift_ids:
        return []
    result = await db.execute(select(Gift).where(Gift.id.in_(set(gift_ids))))
    gifts = list(result.scalars().all())
    if len(gifts) != len(set(gift_ids)) or any(g.owner_id != owner.telegram_id for g in gifts):
        raise ValidationError("Gifts must exist and belong to the event owner")
    return gifts


async def create_event(
    db: AsyncSession,
    owner: User,
    *,
    name: str,
    description: str | None = None,
    image_url: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    is_anonymous: bool = False,
    send_invitations: bool = False,
    send_acknowledgements: bool = False,
    acknowledgement_message: str | None = None,
    gift_ids: list[int] | None = None,
    members: list[int | str] | None = None,
    viewers: list[int | str] | None = None,
) -> Event:
    _check_dates(start_date, end_date)
    event = Event(
        owner_id=owner.telegram_id,
        name=name,
        description=description,
        image_url=image_url,
        start_date=start_date,
        end_date=end_date,
        is_anonymous=is_anonymous,
        send_invitations=send_invitations,
        send_acknowledgements=send_acknowledgements,
        acknowledgement_message=acknowledgement_message or DEFAULT_ACKNOWLEDGEMENT_MESSAGE,
    )
    event.gifts = await _owner_gifts(db, owner, gift_ids or [])
    event.members = await resolve_users(db, members or [])
    event.viewers = await resolve_users(db, viewers or [])
    db.add(event)
    await db.commit()
    logger.info("Event created id=%s owner=%s", event.id, owner.telegram_id)

    if send_invitations:
        invitees = await list_friends(db, owner)
        if event.viewers:
            allowed = {viewer.id for viewer in event.viewers}
            invitees = [friend for friend in invitees if friend.id in allowed]
        message, localized = notifications.render(
            NotificationType.EVENT_INVITATION, sender=owner.display_name, event=event.name
        )
        await notifications.notify_many(
            db,
            recipients=invitees,
            sender=owner,
            type=NotificationType.EVENT_INVITATION,
            message=message,
            message_localized=localized,
            entity_id=event.id,
            entity_model=EntityModel.EVENT,
        )
    return await _load_event(db, event.id, fresh=True)


async def update_event(db: AsyncSession, event_id: int, actor: User, changes: dict) -> Event:
    event = await _load_event(db, event_id)
    if event.owner_id != actor.telegram_id:
        raise AuthorizationError("Only the owner can edit the event")

    unknown = set(changes) - UPDATABLE_FIELDS - {"viewers", "gift_ids"}
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
    nulls = sorted(key for key in REQUIRED_FIELDS & set(changes) if changes[key] is None)
    if nulls:
        raise ValidationError(f"Fields cannot be null: {', '.join(nulls)}")
    if "name" in changes and not changes["name"].strip():
        raise ValidationError("Name must not be blank")
    if "acknowledgement_message" in changes:
        message = (changes["acknowledgement_message"] or "").strip()
        changes = {**changes, "acknowledgement_message": message or DEFAULT_ACKNOWLEDGEMENT_MESSAGE}
    _check_dates(changes.get("start_date", event.start_date), changes.get("end_date", event.end_date))

    for key, value in changes.items():
        if key in UPDATABLE_FIELDS:
            setattr(event, key, value)
    if "viewers" in changes:
        event.viewers = await resolve_users(db, changes["viewers"] or [])
    if "gift_ids" in changes:
        event.gifts = await _owner_gifts(db, actor, changes["gift_ids"] or [])
    await db.commit()
    return await _load_event(db, event.id, fresh=True)


async def delete_event(db: AsyncSession, event_id: int, actor: User) -> None:
    event = await _load_event(db, event_id)
    if event.owner_id != actor.telegram_id:
        raise AuthorizationError("Only the owner can delete the event")
    await db.delete(event)
    await db.commit()
    logger.info("Event deleted id=%s owner=%s", event_id, actor.telegram_id)


async def get_event(db: AsyncSession, event_id: int, requester: User) -> Event:
    result = await db.execute(_event_query().where(Event.id == event_id))
    return await require_visible(db, result.scalar_one_or_none(), requester, "Event not found")


async def list_events(db: AsyncSession, requester: User, author: str = "all") -> list[Event]:
    if author not in AUTHOR_FILTERS:
        raise ValidationError("author must be one of: me, friends, all")
    stmt = _event_query()
    if author == "me":
        stmt = stmt.where(Event.owner_id == requester.telegram_id)
    else:
        stmt = stmt.where(visible_filter(Event, requester))
        if author == "friends":
            friend_ids = (
                select(User.telegram_id)
                .join(user_friends, user_friends.c.friend_id == User.id)
                .where(user_friends.c.user_id == requester.id)
            )
            stmt = stmt.where(Event.owner_id.in_(friend_ids))
    result = await db.execute(stmt.order_by(Event.start_date.asc(), Event.id.asc()))
    return list(result.scalars().all())


async def list_user_events(db: AsyncSession, owner_telegram_id: int, requester: User) -> list[Event]:
    owner = await get_by_telegram_id(db, owner_telegram_id)
    await require_visible(db, owner, requester, "User not found")
    result = await db.execute(
        _event_query()
        .where(Event.owner_id == owner_telegram_id, visible_filter(Event, requester))
        .order_by(Event.start_date.asc(), Event.id.asc())
    )
    return list(result.scalars().all())


async def join_event(db: AsyncSession, event_id: int, actor: User) -> Event:
    event = await get_event(db, event_id, actor)
    if await _is_member(db, event, actor):
        raise ConflictError("Already a member of this event")
    await db.execute(insert(event_members).values(event_id=event.id, user_id=actor.id))
    await db.commit()
    logger.info("Event joined id=%s user=%s", event.id, actor.telegram_id)

    if actor.telegram_id != event.owner_id:
        owner = await get_by_telegram_id(db, event.owner_id)
        message, localized = notifications.render(
            NotificationType.EVENT_PARTICIPANT_JOINED, sender=actor.display_name, event=event.name
        )
        await notifications.notify(
            db,
            recipient=owner,
            sender=actor,
            type=NotificationType.EVENT_PARTICIPANT_JOINED,
            message=message,
            message_localized=localized,
            entity_id=event.id,
            entity_model=EntityModel.EVENT,
        )
    return await _load_event(db, event.id, fresh=True)


async def leave_event(db: AsyncSession, event_id: int, actor: User) -> Event:
    event = await _load_event(db, event_id)
    result = await db.execute(
        delete(event_members).where(
            event_members.c.event_id == event.id,
            event_members.c.user_id == actor.id,
        )
    )
    if not result.rowcount:
        await db.rollback()
        raise NotFoundError("Not a member of this event")
    await db.commit()

    if actor.telegram_id != event.owner_id:
        owner = await get_by_telegram_id(db, event.owner_id)
        message, localized = notifications.render(
            NotificationType.EVENT_PARTICIPANT_LEFT, sender=actor.display_name, event=event.name
        )
        await notifications.notify(
            db,
            recipient=owner,
            sender=actor,
            type=NotificationType.EVENT_PARTICIPANT_LEFT,
            message=message,
            message_localized=localized,
            entity_id=event.id,
            entity_model=EntityModel.EVENT,
        )
    return await _load_event(db, event.id, fresh=True)


async def remove_member(db: AsyncSession, event_id: int, actor: User, member_telegram_id: int) -> Event:
    event = await _load_event(db, event_id)
    if event.owner_id != actor.telegram_id:
        raise AuthorizationError("Only the owner can remove members")
    member = await require_user(db, member_telegram_id)
    result = await db.execute(
        delete(event_members).where(
            event_members.c.event_id == event.id,
            event_members.c.user_id == member.id,
        )
    )
    if not result.rowcount:
        await db.rollback()
        raise NotFoundError("Member not found")
    await db.commit()
    return await _load_event(db, event.id, fresh=True)


async def _editable_event(db: AsyncSession, event_id: int, actor: User) -> Event:
    event = await get_event(db, event_id, actor)
    if event.owner_id != actor.telegram_id and not await _is_member(db, event, actor):
        raise AuthorizationError("Only the owner or a member can add gifts")
    return event


async def _visible_gifts(db: AsyncSession, gift_ids: set[int], actor: User) -> list[Gift]:
    result = await db.execute(
        select(Gift).where(Gift.id.in_(gift_ids), visible_filter(Gift, actor))
    )
    gifts = list(result.scalars().all())
    if len(gifts) != len(gift_ids):
        raise NotFoundError("Gift not found")
    return gifts


async def add_gift_to_event(db: AsyncSession, event_id: int, actor: User, gift_id: int) -> Event:
    return await add_gifts_to_event(db, event_id, actor, [gift_id])


async def add_gifts_to_event(db: AsyncSession, event_id: int, actor: User, gift_ids: list[int]) -> Event:
    """Attach gifts to an event. Fails only when every gift is already attached."""
    if not gift_ids:
        raise ValidationError("No gifts given")
    event = await _editable_event(db, event_id, actor)
    wanted = set(gift_ids)
    await _visible_gifts(db, wanted, actor)

    attached = {gift.id for gift in event.gifts}
    new_ids = wanted - attached
    if not new_ids:
        raise ConflictError("Gift is already in the event" if len(wanted) == 1 else "All gifts are already in the event")
    await db.execute(
        insert(event_gifts),
        [{"event_id": event.id, "gift_id": gift_id} for gift_id in sorted(new_ids)],
    )
    await db.commit()
    logger.info("Gifts added event=%s gifts=%s by=%s", event.id, sorted(new_ids), actor.telegram_id)
    return await _load_event(db, event.id, fresh=True)


async def thank_members(db: AsyncSession, event_id: int, actor: User, message: str | None = None) -> int:
    event = await _load_event(db, event_id)
    if event.owner_id != actor.telegram_id:
        raise AuthorizationError("Only the owner can thank members")
    members = [member for member in event.members if member.id != actor.id]
    if not members:
        return 0
    text, localized = notifications.render(
        NotificationType.EVENT_THANK_YOU, sender=actor.display_name, event=event.name
    )
    sent = await notifications.notify_many(
        db,
        recipients=members,
        sender=actor,
        type=NotificationType.EVENT_THANK_YOU,
        message=text,
        message_localized=localized,
        description=message or "",
        entity_id=event.id,
        entity_model=EntityModel.EVENT,
    )
    return len(sent)


async def my_gifts(db: AsyncSession, event_id: int, requester: User) -> dict[str, list[Gift]]:
    event = await get_event(db, event_id, requester)
    return {
        "given": [gift for gift in event.gifts if gift.reserved_by == requester.telegram_id],
        "received": [gift for gift in event.gifts if gift.owner_id == requester.telegram_id],
    }
