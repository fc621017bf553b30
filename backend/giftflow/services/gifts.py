"""Gift reservation and gifting state machine.

available -> reserved -> given -> thanked. ``reserved -> available`` and
``given -> available`` are manual reversals. Every transition is written as a
conditional UPDATE so that two concurrent callers cannot both win it.
"""

from dataclasses import dataclass, field
from decimal import Decimal
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from giftflow.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from giftflow.models.models import (
    Donation,
    Donor,
    EntityModel,
    Event,
    Gift,
    NotificationType,
    User,
    event_gifts,
)
from giftflow.services import notifications
from giftflow.services.users import get_by_telegram_id, resolve_users, users_by_telegram_ids
from giftflow.services.visibility import GIVEN_GIFTS_RULE, check_rule, require_visible, visible_filter

logger = logging.getLogger("giftflow.gifts")


@dataclass
class ThankableGift:
    gift: Gift
    reserver: User | None
    donors: list[User] = field(default_factory=list)


def _gift_query():
    # Donors are added without touching the loaded collection, so always refresh it
    return (
        select(Gift)
        .options(selectinload(Gift.donation).selectinload(Donation.donors).selectinload(Donor.user))
        .execution_options(populate_existing=True)
    )


async def _load_gift(db: AsyncSession, gift_id: int, *, for_update: bool = False) -> Gift:
    stmt = _gift_query().where(Gift.id == gift_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    gift = result.scalar_one_or_none()
    if gift is None:
        raise NotFoundError("Gift not found")
    return gift


async def _reload(db: AsyncSession, gift: Gift) -> Gift:
    result = await db.execute(_gift_query().where(Gift.id == gift.id))
    return result.scalar_one()


def distinct_donor_users(gift: Gift) -> list[User]:
    if gift.donation is None:
        return []
    users: dict[int, User] = {}
    for donor in gift.donation.donors:
        users.setdefault(donor.user_id, donor.user)
    return list(users.values())


async def create_gift(
    db: AsyncSession,
    owner: User,
    *,
    name: str,
    description: str | None = None,
    link: str | None = None,
    image_url: str | None = None,
    price: Decimal | None = None,
    currency: str | None = None,
    viewers: list[int | str] | None = None,
) -> Gift:
    gift = Gift(
        owner_id=owner.telegram_id,
        name=name,
        description=description,
        link=link,
        image_url=image_url,
        price=price,
        currency=currency or owner.currency,
    )
    if viewers:
        gift.viewers = await resolve_users(db, viewers)
    db.add(gift)
    await db.commit()
    logger.info("Gift created id=%s owner=%s", gift.id, owner.telegram_id)
    return await _load_gift(db, gift.id)


GIFT_UPDATABLE_FIELDS = {"name", "description", "link", "image_url", "price", "currency"}


async def update_gift(db: AsyncSession, gift_id: int, actor: User, changes: dict) -> Gift:
    """Edit a gift's details and allow-list. Only the owner may call it.

    A price change never closes a running collection by itself.
    """
    result = await db.execute(
        _gift_query().options(selectinload(Gift.viewers)).where(Gift.id == gift_id)
    )
    gift = result.scalar_one_or_none()
    if gift is None:
        raise NotFoundError("Gift not found")
    if gift.owner_id != actor.telegram_id:
        raise AuthorizationError("Only the owner can edit a gift")

    unknown = set(changes) - GIFT_UPDATABLE_FIELDS - {"viewers"}
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
    for key in ("name", "currency"):
        if key in changes and not (changes[key] or "").strip():
            raise ValidationError(f"{key} must not be blank")

    for key, value in changes.items():
        if key in GIFT_UPDATABLE_FIELDS:
            setattr(gift, key, value.strip() if key in ("name", "currency") else value)
    if "viewers" in changes:
        gift.viewers = await resolve_users(db, changes["viewers"] or [])
    await db.commit()
    logger.info("Gift updated id=%s fields=%s", gift.id, sorted(changes))
    return await _load_gift(db, gift.id)


async def get_gift(db: AsyncSession, gift_id: int, requester: User) -> Gift:
    result = await db.execute(_gift_query().where(Gift.id == gift_id))
    return await require_visible(db, result.scalar_one_or_none(), requester, "Gift not found")


async def list_wishlist(db: AsyncSession, owner_telegram_id: int, requester: User) -> list[Gift]:
    owner = await get_by_telegram_id(db, owner_telegram_id)
    await require_visible(db, owner, requester, "User not found")
    result = await db.execute(
        _gift_query()
        .where(Gift.owner_id == owner_telegram_id, visible_filter(Gift, requester))
        .order_by(Gift.created_at.desc(), Gift.id.desc())
    )
    return list(result.scalars().all())


async def list_reserved_by(db: AsyncSession, telegram_id: int, requester: User) -> list[Gift]:
    """Gifts reserved or given by a user, gated by that user's gift viewers."""
    giver = await get_by_telegram_id(db, telegram_id)
    if giver is None or not await check_rule(db, GIVEN_GIFTS_RULE, giver, requester):
        raise NotFoundError("User not found")
    result = await db.execute(
        _gift_query()
        .where(Gift.reserved_by == telegram_id, visible_filter(Gift, requester))
        .order_by(Gift.id.desc())
    )
    gifts = list(result.scalars().all())
    hidden = await hidden_reserver_ids(db, gifts, requester)
    return [gift for gift in gifts if gift.id not in hidden]


async def hidden_reserver_ids(db: AsyncSession, gifts: list[Gift], requester: User) -> set[int]:
    """Ids of the requester's own gifts whose reserver is still secret.

    A gift on an anonymous event keeps its reserver hidden from its owner
    until the event's gifters are revealed.
    """
    own = [gift.id for gift in gifts if gift.owner_id == requester.telegram_id and gift.is_reserved]
    if not own:
        return set()
    result = await db.execute(
        select(event_gifts.c.gift_id)
        .join(Event, Event.id == event_gifts.c.event_id)
        .where(
            event_gifts.c.gift_id.in_(own),
            Event.is_anonymous.is_(True),
            Event.gifters_revealed_at.is_(None),
        )
    )
    return set(result.scalars().all())


async def reserve(db: AsyncSession, gift_id: int, actor: User) -> Gift:
    result = await db.execute(_gift_query().where(Gift.id == gift_id))
    gift = await require_visible(db, result.scalar_one_or_none(), actor, "Gift not found")
    if gift.owner_id == actor.telegram_id:
        raise AuthorizationError("Cannot reserve own gift")
    if gift.is_given:
        raise ConflictError("Gift is already given")

    claimed = await db.execute(
        update(Gift)
        .where(Gift.id == gift.id, Gift.is_reserved.is_(False), Gift.is_given.is_(False))
        .values(is_reserved=True, reserved_by=actor.telegram_id)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        raise ConflictError("Gift is already reserved")
    await db.commit()
    gift = await _reload(db, gift)
    logger.info("Gift reserved id=%s by=%s", gift.id, actor.telegram_id)

    owner = await get_by_telegram_id(db, gift.owner_id)
    secret = owner is not None and gift.id in await hidden_reserver_ids(db, [gift], owner)
    message, localized = notifications.render(
        NotificationType.GIFT_RESERVED, anonymous=secret, sender=actor.display_name, gift=gift.name
    )
    await notifications.notify(
        db,
        recipient=owner,
        sender=None if secret else actor,
        type=NotificationType.GIFT_RESERVED,
        message=message,
        message_localized=localized,
        entity_id=gift.id,
        entity_model=EntityModel.GIFT,
    )
    return gift


async def unreserve(db: AsyncSession, gift_id: int, actor: User) -> Gift:
    gift = await _load_gift(db, gift_id)
    if not gift.is_reserved:
        raise ConflictError("Gift is not reserved")
    if gift.reserved_by != actor.telegram_id:
        raise AuthorizationError("Only the reserver can cancel the reservation")
    if gift.is_given:
        raise ConflictError("Gift is already given")

    released = await db.execute(
        update(Gift)
        .where(Gift.id == gift.id, Gift.reserved_by == actor.telegram_id, Gift.is_given.is_(False))
        .values(is_reserved=False, reserved_by=None)
        .execution_options(synchronize_session=False)
    )
    if released.rowcount != 1:
        await db.rollback()
        raise ConflictError("Reservation changed concurrently")
    await db.commit()
    logger.info("Gift unreserved id=%s by=%s", gift.id, actor.telegram_id)
    return await _reload(db, gift)


async def toggle_reservation(db: AsyncSession, gift_id: int, actor: User) -> Gift:
    """Reserve an available gift or release the actor's own reservation."""
    result = await db.execute(select(Gift.is_reserved).where(Gift.id == gift_id))
    is_reserved = result.scalar_one_or_none()
    if is_reserved:
        return await unreserve(db, gift_id, actor)
    return await reserve(db, gift_id, actor)


async def notify_gift_given(db: AsyncSession, gift: Gift, owner: User | None, reserver: User | None) -> None:
    if reserver is None:
        return
    secret = owner is not None and gift.id in await hidden_reserver_ids(db, [gift], owner)
    message, localized = notifications.render(
        NotificationType.GIFT_GIVEN, anonymous=secret, sender=reserver.display_name, gift=gift.name
    )
    await notifications.notify(
        db,
        recipient=owner,
        sender=None if secret else reserver,
        type=NotificationType.GIFT_GIVEN,
        message=message,
        message_localized=localized,
        entity_id=gift.id,
        entity_model=EntityModel.GIFT,
    )


async def mark_given(db: AsyncSession, gift_id: int, actor: User) -> Gift:
    """Toggle ``is_given``. Only the owner may call it."""
    gift = await _load_gift(db, gift_id, for_update=True)
    if gift.owner_id != actor.telegram_id:
        raise AuthorizationError("Only the owner can mark a gift as given")

    if gift.is_given:
        if gift.is_thanked:
            raise ConflictError("Gift is already thanked")
        gift.is_given = False
        await db.commit()
        return gift

    gift.is_given = True
    await db.commit()
    logger.info("Gift given id=%s reserved_by=%s", gift.id, gift.reserved_by)
    if gift.reserved_by is not None:
        reserver = await get_by_telegram_id(db, gift.reserved_by)
        await notify_gift_given(db, gift, actor, reserver)
    return gift


async def auto_give(db: AsyncSession, gifts: list[Gift]) -> list[Gift]:
    """Mark reserved gifts as given. Does not commit.

    Returns only the gifts this call actually flipped.
    """
    flipped: list[Gift] = []
    for gift in gifts:
        result = await db.execute(
            update(Gift)
            .where(Gift.id == gift.id, Gift.is_reserved.is_(True), Gift.is_given.is_(False))
            .values(is_given=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            flipped.append(gift)
    return flipped


async def _send_thanks(db: AsyncSession, gift: Gift, owner: User, message: str | None) -> None:
    recipients = distinct_donor_users(gift)
    if not recipients and gift.reserved_by is not None:
        reserver = await get_by_telegram_id(db, gift.reserved_by)
        recipients = [reserver] if reserver is not None else []
    if not recipients:
        logger.info("Gift thanked without recipients id=%s", gift.id)
        return
    text, localized = notifications.render(
        NotificationType.GIFT_THANK_YOU_NOTE, sender=owner.display_name, gift=gift.name
    )
    await notifications.notify_many(
        db,
        recipients=recipients,
        sender=owner,
        type=NotificationType.GIFT_THANK_YOU_NOTE,
        message=text,
        message_localized=localized,
        description=message or "",
        entity_id=gift.id,
        entity_model=EntityModel.GIFT,
    )


async def _claim_thanks(db: AsyncSession, gift_id: int) -> bool:
    result = await db.execute(
        update(Gift)
        .where(Gift.id == gift_id, Gift.is_given.is_(True), Gift.is_thanked.is_(False))
        .values(is_thanked=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def thank(db: AsyncSession, gift_id: int, actor: User, message: str | None = None) -> Gift:
    gift = await _load_gift(db, gift_id)
    if gift.owner_id != actor.telegram_id:
        raise AuthorizationError("Only the owner can thank for a gift")
    if not gift.is_given:
        raise ConflictError("Gift has not been given yet")
    if gift.is_thanked or not await _claim_thanks(db, gift.id):
        await db.rollback()
        raise ConflictError("Gift is already thanked")
    await db.commit()
    gift = await _reload(db, gift)
    await _send_thanks(db, gift, actor, message)
    return gift


async def thank_all(db: AsyncSession, owner: User, message: str | None = None) -> list[Gift]:
    """Thank every eligible gift of the owner. Already thanked gifts are skipped."""
    result = await db.execute(
        _gift_query().where(
            Gift.owner_id == owner.telegram_id,
            Gift.is_given.is_(True),
            Gift.is_thanked.is_(False),
        )
    )
    thanked = [gift for gift in result.scalars().all() if await _claim_thanks(db, gift.id)]
    if not thanked:
        return []
    await db.commit()
    for gift in thanked:
        await _reload(db, gift)
        await _send_thanks(db, gift, owner, message)
    logger.info("Thanked gifts owner=%s count=%d", owner.telegram_id, len(thanked))
    return thanked


async def list_thankable(db: AsyncSession, owner: User) -> list[ThankableGift]:
    result = await db.execute(
        _gift_query()
        .where(
            Gift.owner_id == owner.telegram_id,
            Gift.is_given.is_(True),
            Gift.is_thanked.is_(False),
        )
        .order_by(Gift.id)
    )
    gifts = list(result.scalars().all())
    reservers = await users_by_telegram_ids(db, (gift.reserved_by for gift in gifts))
    return [
        ThankableGift(
            gift=gift,
            reserver=reservers.get(gift.reserved_by) if gift.reserved_by is not None else None,
            donors=distinct_donor_users(gift),
        )
        for gift in gifts
    ]


async def delete_gift(db: AsyncSession, gift_id: int, actor: User) -> None:
    result = await db.execute(
        _gift_query()
        .options(selectinload(Gift.viewers), selectinload(Gift.events))
        .where(Gift.id == gift_id)
    )
    gift = result.scalar_one_or_none()
    if gift is None:
        raise NotFoundError("Gift not found")
    if gift.owner_id != actor.telegram_id:
        raise AuthorizationError("Only the owner can delete a gift")

    donation = gift.donation
    await db.delete(gift)
    if donation is not None:
        await db.delete(donation)
    await db.commit()
    logger.info("Gift deleted id=%s owner=%s", gift_id, actor.telegram_id)
