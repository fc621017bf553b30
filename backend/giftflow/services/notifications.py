"""Notification fan-out.

Notifications are best-effort. ``notify`` never raises to its caller: a
missing field or a failed write is logged and ``None`` is returned, so the
business change that triggered it always stands. Callers commit their own
transaction before notifying.
"""

from collections.abc import Iterable
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from giftflow.core.config import settings
from giftflow.core.errors import NotFoundError, NotificationDeliveryFailure
from giftflow.models.models import ENTITY_MODELS, EntityModel, Notification, NotificationType, User

logger = logging.getLogger("giftflow.notifications")


MESSAGES: dict[NotificationType, tuple[str, str]] = {
    NotificationType.FRIEND_REQUEST: (
        "{sender} хочет с вами дружить",
        "{sender} wants to be your friend",
    ),
    NotificationType.FRIEND_REQUEST_ACCEPTED: (
        "{sender} принял вашу заявку в друзья",
        "{sender} accepted your friend request",
    ),
    NotificationType.FRIEND_REQUEST_DECLINED: (
        "{sender} отклонил вашу заявку в друзья",
        "{sender} declined your friend request",
    ),
    NotificationType.EVENT_INVITATION: (
        '{sender} пригласил вас на событие "{event}"',
        '{sender} invited you to "{event}"',
    ),
    NotificationType.EVENT_PARTICIPANT_JOINED: (
        "{sender} присоединился к {event}",
        "{sender} joined {event}",
    ),
    NotificationType.EVENT_PARTICIPANT_LEFT: (
        "{sender} покинул {event}",
        "{sender} left {event}",
    ),
    NotificationType.EVENT_STARTING_SOON: (
        "{event} запланировано на {start}",
        "{event} is scheduled for {start}",
    ),
    NotificationType.EVENT_THANK_YOU: (
        "{sender} поблагодарил вас за {event}",
        "{sender} thanked you for {event}",
    ),
    NotificationType.EVENT_COMPLETED: (
        "Время писать благодарности",
        "Time to write thank-you notes",
    ),
    NotificationType.EVENT_GIFTERS_REVEALED: (
        "Дарители раскрыты!",
        "The gifters have been revealed!",
    ),
    NotificationType.GIFT_RESERVED: (
        "{sender} забронировал подарок {gift}",
        "{sender} reserved {gift}",
    ),
    NotificationType.GIFT_GIVEN: (
        "{sender} подарил вам {gift}",
        "{sender} gave you {gift}",
    ),
    NotificationType.GIFT_THANK_YOU_NOTE: (
        "{sender} поблагодарил вас за {gift}",
        "{sender} thanked you for {gift}",
    ),
    NotificationType.GIFT_FUNDRAISING_OPENED: (
        "{sender} открыл сбор средств на {gift}",
        "{sender} opened a fundraiser for {gift}",
    ),
    NotificationType.GIFT_FUNDRAISING_CLOSED: (
        "Сбор на {gift} завершен",
        "The fundraiser for {gift} has closed",
    ),
}

# Used while the sender must stay secret, e.g. on an anonymous event
ANONYMOUS_MESSAGES: dict[NotificationType, tuple[str, str]] = {
    NotificationType.GIFT_RESERVED: (
        "Кто-то забронировал подарок {gift}",
        "Someone reserved {gift}",
    ),
    NotificationType.GIFT_GIVEN: (
        "Вам подарили {gift}",
        "You received {gift}",
    ),
    NotificationType.GIFT_FUNDRAISING_OPENED: (
        "Открыт сбор средств на {gift}",
        "A fundraiser for {gift} has opened",
    ),
}


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(
    notification_type: NotificationType, *, anonymous: bool = False, **context: object
) -> tuple[str, dict[str, str]]:
    """Return the default message and the localized variants for a type."""
    catalogue = ANONYMOUS_MESSAGES if anonymous else MESSAGES
    default, english = catalogue[notification_type]
    values = _Blank({key: "" if value is None else str(value) for key, value in context.items()})
    return default.format_map(values), {"en": english.format_map(values)}


def _build(
    *,
    recipient: User | None,
    sender: User | None,
    notification_type: NotificationType | str | None,
    message: str | None,
    entity_id: int | None,
    entity_model: EntityModel | str | None,
    message_localized: dict[str, str] | None,
    description: str | None,
) -> Notification:
    missing = [
        name
        for name, value in (
            ("recipient", recipient),
            ("type", notification_type),
            ("message", message),
            ("entity_id", entity_id),
            ("entity_model", entity_model),
        )
        if value is None or value == ""
    ]
    if missing:
        raise NotificationDeliveryFailure(f"missing fields: {', '.join(missing)}")
    try:
        model = EntityModel(entity_model)
        kind = NotificationType(notification_type)
    except ValueError as exc:
        raise NotificationDeliveryFailure(str(exc)) from exc

    return Notification(
        recipient_id=recipient.id,
        sender_id=sender.id if sender is not None else None,
        type=kind.value,
        message=message,
        message_localized=message_localized or None,
        description=description,
        entity_id=entity_id,
        entity_model=model.value,
    )


async def notify(
    db: AsyncSession,
    *,
    recipient: User | None,
    type: NotificationType | str | None,
    message: str | None,
    entity_id: int | None,
    entity_model: EntityModel | str | None,
    sender: User | None = None,
    message_localized: dict[str, str] | None = None,
    description: str | None = None,
) -> Notification | None:
    created = await notify_many(
        db,
        recipients=[recipient],
        type=type,
        message=message,
        entity_id=entity_id,
        entity_model=entity_model,
        sender=sender,
        message_localized=message_localized,
        description=description,
    )
    return created[0] if created else None


async def notify_many(
    db: AsyncSession,
    *,
    recipients: Iterable[User | None],
    type: NotificationType | str | None,
    message: str | None,
    entity_id: int | None,
    entity_model: EntityModel | str | None,
    sender: User | None = None,
    message_localized: dict[str, str] | None = None,
    description: str | None = None,
) -> list[Notification]:
    """Persist one notification per distinct recipient.

    Invalid entries are skipped and logged. The batch is written through a
    session of its own, so a failed write is logged and dropped without
    touching the caller's session or its objects.
    """
    created: list[Notification] = []
    seen: set[int] = set()
    for recipient in recipients:
        if recipient is not None:
            if recipient.id in seen:
                continue
            seen.add(recipient.id)
        try:
            notification = _build(
                recipient=recipient,
                sender=sender,
                notification_type=type,
                message=message,
                entity_id=entity_id,
                entity_model=entity_model,
                message_localized=message_localized,
                description=description,
            )
        except NotificationDeliveryFailure as exc:
            logger.warning("Notification dropped type=%s entity_id=%s reason=%s", type, entity_id, exc)
            continue
        created.append(notification)

    if not created:
        return []
    async with AsyncSession(db.bind, expire_on_commit=False) as session:
        session.add_all(created)
        try:
            await session.commit()
        except Exception:
            logger.exception("Notification write failed type=%s entity_id=%s", type, entity_id)
            await session.rollback()
            return []
    logger.debug("Notifications sent type=%s count=%d", type, len(created))
    return created


def localized_message(notification: Notification, language: str | None) -> str:
    lang = language or settings.default_language
    variants = notification.message_localized or {}
    return variants.get(lang) or notification.message


async def list_notifications(
    db: AsyncSession,
    recipient: User,
    *,
    unread_only: bool = False,
    limit: int = 100,
    offset: int = 0,
) -> list[Notification]:
    stmt = (
        select(Notification)
        .options(selectinload(Notification.sender))
        .where(Notification.recipient_id == recipient.id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .offset(offset)
    )
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def resolve_entity(db: AsyncSession, notification: Notification):
    model = ENTITY_MODELS.get(EntityModel(notification.entity_model))
    if model is None:
        return None
    return await db.get(model, notification.entity_id)


async def mark_read(db: AsyncSession, recipient: User, notification_id: int) -> Notification:
    result = await db.execute(
        select(Notification)
        .options(selectinload(Notification.sender))
        .where(
            Notification.id == notification_id,
            Notification.recipient_id == recipient.id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotFoundError("Notification not found")
    if not notification.is_read:
        notification.is_read = True
        await db.commit()
    return notification


async def mark_all_read(db: AsyncSession, recipient: User) -> int:
    result = await db.execute(
        update(Notification)
        .where(Notification.recipient_id == recipient.id, Notification.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0
