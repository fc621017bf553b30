from sqlalchemy.ext.asyncio import AsyncSession

from giftflow.models.models import Event, Gift, Notification, User
from giftflow.schemas.auth import UserSummary
from giftflow.schemas.event import EventPublic
from giftflow.schemas.gift import DonationSummary, GiftPublic
from giftflow.schemas.social import NotificationPublic
from giftflow.services.gifts import hidden_reserver_ids
from giftflow.services.notifications import localized_message


def serialize_gift(gift: Gift, *, hide_reserver: bool = False) -> GiftPublic:
    donation = None
    if gift.donation is not None:
        donors = gift.donation.donors
        donation = DonationSummary(
            id=gift.donation.id,
            is_anonymous=gift.donation.is_anonymous,
            closed_at=gift.donation.closed_at,
            total=float(sum(donor.amount for donor in donors)),
            donors_count=len({donor.user_id for donor in donors}),
        )
    return GiftPublic(
        id=gift.id,
        owner_id=gift.owner_id,
        name=gift.name,
        description=gift.description,
        link=gift.link,
        image_url=gift.image_url,
        price=float(gift.price) if gift.price is not None else None,
        currency=gift.currency,
        is_reserved=gift.is_reserved,
        reserved_by=None if hide_reserver else gift.reserved_by,
        is_given=gift.is_given,
        is_thanked=gift.is_thanked,
        donation=donation,
        created_at=gift.created_at,
    )


async def serialize_gifts(db: AsyncSession, gifts: list[Gift], requester: User) -> list[GiftPublic]:
    hidden = await hidden_reserver_ids(db, gifts, requester)
    return [serialize_gift(gift, hide_reserver=gift.id in hidden) for gift in gifts]


def serialize_event(event: Event, requester: User) -> EventPublic:
    # Until the reveal, the owner of an anonymous event does not see who reserved what
    hide = (
        event.is_anonymous
        and event.gifters_revealed_at is None
        and event.owner_id == requester.telegram_id
    )
    return EventPublic(
        id=event.id,
        owner_id=event.owner_id,
        name=event.name,
        description=event.description,
        image_url=event.image_url,
        start_date=event.start_date,
        end_date=event.end_date,
        is_anonymous=event.is_anonymous,
        send_invitations=event.send_invitations,
        send_acknowledgements=event.send_acknowledgements,
        acknowledgement_message=event.acknowledgement_message,
        gifters_revealed_at=event.gifters_revealed_at,
        start_notification_sent=event.start_notification_sent,
        completion_notification_sent=event.completion_notification_sent,
        members=[UserSummary.model_validate(member) for member in event.members],
        viewers=[UserSummary.model_validate(viewer) for viewer in event.viewers],
        gifts=[serialize_gift(gift, hide_reserver=hide) for gift in event.gifts],
        created_at=event.created_at,
    )


def serialize_notification(notification: Notification, language: str | None) -> NotificationPublic:
    return NotificationPublic(
        id=notification.id,
        type=notification.type,
        message=localized_message(notification, language),
        description=notification.description,
        entity_id=notification.entity_id,
        entity_model=notification.entity_model,
        is_read=notification.is_read,
        sender=UserSummary.model_validate(notification.sender) if notification.sender else None,
        created_at=notification.created_at,
    )
