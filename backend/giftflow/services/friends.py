"""Friend requests, friendship edges and blocking.

A request is either pending or gone: accepting writes the friendship edge in
both directions and deletes the request, declining and cancelling just delete
it. At most one pending request exists per pair, in either direction.
"""

import logging

from sqlalchemy import and_, delete, exists, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from giftflow.core.errors import ConflictError, NotFoundError, ValidationError
from giftflow.core.locks import KeyedLocks
from giftflow.models.models import (
    EntityModel,
    FriendRequest,
    FriendRequestStatus,
    NotificationType,
    User,
    user_blocked,
    user_friends,
)
from giftflow.services import notifications
from giftflow.services.users import require_user

logger = logging.getLogger("giftflow.friends")

pair_locks = KeyedLocks()

RESPONSE_ACTIONS = {"accept", "decline"}


def _pair_key(a: User, b: User) -> tuple[int, int]:
    return (min(a.id, b.id), max(a.id, b.id))


def _between(a: User, b: User):
    return or_(
        and_(FriendRequest.requester_id == a.id, FriendRequest.recipient_id == b.id),
        and_(FriendRequest.requester_id == b.id, FriendRequest.recipient_id == a.id),
    )


def _edge(table, left: str, right: str, a: User, b: User):
    return and_(table.c[left] == a.id, table.c[right] == b.id)


async def are_friends(db: AsyncSession, a: User, b: User) -> bool:
    return bool(
        await db.scalar(select(exists().where(_edge(user_friends, "user_id", "friend_id", a, b))))
    )


async def _add_friend_edge(db: AsyncSession, a: User, b: User) -> None:
    if not await are_friends(db, a, b):
        await db.execute(insert(user_friends).values(user_id=a.id, friend_id=b.id))


async def _drop_friendship(db: AsyncSession, a: User, b: User) -> int:
    result = await db.execute(
        delete(user_friends).where(
            or_(
                _edge(user_friends, "user_id", "friend_id", a, b),
                _edge(user_friends, "user_id", "friend_id", b, a),
            )
        )
    )
    return result.rowcount or 0


async def send(db: AsyncSession, requester: User, recipient_telegram_id: int) -> FriendRequest:
    recipient = await require_user(db, recipient_telegram_id)
    if recipient.id == requester.id:
        raise ValidationError("Cannot send a friend request to yourself")

    async with pair_locks.hold(_pair_key(requester, recipient)):
        if await are_friends(db, requester, recipient):
            raise ConflictError("Already friends")
        pending = await db.scalar(
            select(
                exists().where(
                    _between(requester, recipient),
                    FriendRequest.status == FriendRequestStatus.PENDING.value,
                )
            )
        )
        if pending:
            raise ConflictError("Friend request already exists")

        request = FriendRequest(requester_id=requester.id, recipient_id=recipient.id)
        db.add(request)
        await db.commit()
    logger.info("Friend request sent id=%s from=%s to=%s", request.id, requester.telegram_id, recipient.telegram_id)

    message, localized = notifications.render(NotificationType.FRIEND_REQUEST, sender=requester.display_name)
    await notifications.notify(
        db,
        recipient=recipient,
        sender=requester,
        type=NotificationType.FRIEND_REQUEST,
        message=message,
        message_localized=localized,
        entity_id=request.id,
        entity_model=EntityModel.FRIEND_REQUEST,
    )
    return request


async def cancel(db: AsyncSession, requester: User, recipient_telegram_id: int) -> None:
    recipient = await require_user(db, recipient_telegram_id)
    result = await db.execute(
        delete(FriendRequest).where(
            FriendRequest.requester_id == requester.id,
            FriendRequest.recipient_id == recipient.id,
            FriendRequest.status == FriendRequestStatus.PENDING.value,
        )
    )
    if not result.rowcount:
        await db.rollback()
        raise NotFoundError("Friend request not found")
    await db.commit()


async def respond(db: AsyncSession, recipient: User, request_id: int, action: str) -> FriendRequest:
    if action not in RESPONSE_ACTIONS:
        raise ValidationError("Invalid action")

    result = await db.execute(
        select(FriendRequest)
        .options(selectinload(FriendRequest.requester))
        .where(FriendRequest.id == request_id, FriendRequest.recipient_id == recipient.id)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError("Friend request not found")
    if request.status != FriendRequestStatus.PENDING.value:
        raise ConflictError("Friend request already resolved")
    requester = request.requester

    async with pair_locks.hold(_pair_key(requester, recipient)):
        claimed = await db.execute(
            delete(FriendRequest).where(
                FriendRequest.id == request.id,
                FriendRequest.status == FriendRequestStatus.PENDING.value,
            )
        )
        if claimed.rowcount != 1:
            await db.rollback()
            raise ConflictError("Friend request already resolved")
        if action == "accept":
            await _add_friend_edge(db, requester, recipient)
            await _add_friend_edge(db, recipient, requester)
        await db.commit()
    logger.info("Friend request %s id=%s by=%s", action, request_id, recipient.telegram_id)

    kind = (
        NotificationType.FRIEND_REQUEST_ACCEPTED
        if action == "accept"
        else NotificationType.FRIEND_REQUEST_DECLINED
    )
    message, localized = notifications.render(kind, sender=recipient.display_name)
    await notifications.notify(
        db,
        recipient=requester,
        sender=recipient,
        type=kind,
        message=message,
        message_localized=localized,
        entity_id=recipient.id,
        entity_model=EntityModel.USER,
    )
    return request


async def block(db: AsyncSession, blocker: User, target_telegram_id: int) -> User:
    target = await require_user(db, target_telegram_id)
    if target.id == blocker.id:
        raise ValidationError("Cannot block yourself")

    async with pair_locks.hold(_pair_key(blocker, target)):
        already = await db.scalar(
            select(exists().where(_edge(user_blocked, "user_id", "blocked_id", blocker, target)))
        )
        if not already:
            await db.execute(insert(user_blocked).values(user_id=blocker.id, blocked_id=target.id))
        await _drop_friendship(db, blocker, target)
        await db.execute(delete(FriendRequest).where(_between(blocker, target)))
        await db.commit()
    logger.info("User blocked by=%s target=%s", blocker.telegram_id, target.telegram_id)
    return target


async def unblock(db: AsyncSession, blocker: User, target_telegram_id: int) -> User:
    target = await require_user(db, target_telegram_id)
    result = await db.execute(
        delete(user_blocked).where(_edge(user_blocked, "user_id", "blocked_id", blocker, target))
    )
    if not result.rowcount:
        await db.rollback()
        raise NotFoundError("User is not blocked")
    await db.commit()
    return target


async def remove_friend(db: AsyncSession, user: User, friend_telegram_id: int) -> None:
    friend = await require_user(db, friend_telegram_id)
    async with pair_locks.hold(_pair_key(user, friend)):
        if not await _drop_friendship(db, user, friend):
            await db.rollback()
            raise NotFoundError("Friend not found")
        await db.commit()


async def list_friends(db: AsyncSession, user: User) -> list[User]:
    result = await db.execute(
        select(User)
        .join(user_friends, user_friends.c.friend_id == User.id)
        .where(user_friends.c.user_id == user.id)
        .order_by(User.id)
    )
    return list(result.scalars().all())


async def list_blocked(db: AsyncSession, user: User) -> list[User]:
    result = await db.execute(
        select(User)
        .join(user_blocked, user_blocked.c.blocked_id == User.id)
        .where(user_blocked.c.user_id == user.id)
        .order_by(User.id)
    )
    return list(result.scalars().all())


async def list_incoming(db: AsyncSession, user: User) -> list[FriendRequest]:
    result = await db.execute(
        select(FriendRequest)
        .options(selectinload(FriendRequest.requester), selectinload(FriendRequest.recipient))
        .where(
            FriendRequest.recipient_id == user.id,
            FriendRequest.status == FriendRequestStatus.PENDING.value,
        )
        .order_by(FriendRequest.created_at.desc())
    )
    return list(result.scalars().all())


async def list_outgoing(db: AsyncSession, user: User) -> list[FriendRequest]:
    result = await db.execute(
        select(FriendRequest)
        .options(selectinload(FriendRequest.requester), selectinload(FriendRequest.recipient))
        .where(
            FriendRequest.requester_id == user.id,
            FriendRequest.status == FriendRequestStatus.PENDING.value,
        )
        .order_by(FriendRequest.created_at.desc())
    )
    return list(result.scalars().all())
