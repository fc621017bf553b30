"""Crowdfunding for a single gift.

The first contribution opens a Donation. The contribution that moves the
running total from below the gift price to at-or-above it closes the
collection, and only that one:

    total_before < price <= total_before + amount

Contributions to one gift are serialized by an in-process lock plus a row
lock where the database supports it, and the closing notification is
additionally guarded by a compare-and-swap on ``Donation.closed_at``.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from giftflow.core.clock import utcnow
from giftflow.core.errors import AuthorizationError, NotFoundError, ValidationError
from giftflow.core.locks import KeyedLocks
from giftflow.models.models import Donation, Donor, EntityModel, Gift, NotificationType, User
from giftflow.services import notifications
from giftflow.services.users import get_by_telegram_id
from giftflow.services.visibility import require_visible

logger = logging.getLogger("giftflow.crowdfunding")

gift_locks = KeyedLocks()

CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("1e10")


@dataclass
class ContributionResult:
    donation: Donation
    donor: Donor
    total_before: Decimal
    total_after: Decimal
    funding_opened: bool
    funding_closed: bool


@dataclass
class DonorEntry:
    user: User | None
    amount: Decimal
    created_at: datetime
    is_anonymous: bool


@dataclass
class DonorsView:
    gift: Gift
    total: Decimal
    is_anonymous: bool
    donors: list[DonorEntry]


def parse_amount(value) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError("Amount must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number") from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError("Amount must be a non-negative number")
    # Donor.amount is Numeric(12, 2)
    if amount >= MAX_AMOUNT:
        raise ValidationError("Amount is too large")
    if amount != amount.quantize(CENT):
        raise ValidationError("Amount must have at most two decimal places")
    return amount.quantize(CENT)


async def _load_for_update(db: AsyncSession, gift_id: int) -> Gift:
    result = await db.execute(
        select(Gift)
        .options(selectinload(Gift.donation).selectinload(Donation.donors).selectinload(Donor.user))
        .where(Gift.id == gift_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    gift = result.scalar_one_or_none()
    if gift is None:
        raise NotFoundError("Gift not found")
    return gift


async def _donation_total(db: AsyncSession, donation_id: int) -> Decimal:
    total = await db.scalar(
        select(func.coalesce(func.sum(Donor.amount), 0)).where(Donor.donation_id == donation_id)
    )
    return Decimal(str(total or 0))


async def _donor_users(db: AsyncSession, donation_id: int) -> list[User]:
    result = await db.execute(
        select(User)
        .join(Donor, Donor.user_id == User.id)
        .where(Donor.donation_id == donation_id)
        .distinct()
    )
    return list(result.scalars().all())


async def contribute(
    db: AsyncSession,
    gift_id: int,
    contributor: User,
    amount,
    is_anonymous: bool = False,
) -> ContributionResult:
    amount = parse_amount(amount)

    async with gift_locks.hold(gift_id):
        gift = await _load_for_update(db, gift_id)
        await require_visible(db, gift, contributor, "Gift not found")

        donation = gift.donation
        opened = donation is None
        if opened:
            donation = Donation(author_id=contributor.id, is_anonymous=is_anonymous)
            gift.donation = donation
            db.add(donation)
            await db.flush()
            total_before = Decimal("0")
        else:
            total_before = await _donation_total(db, donation.id)

        donor = Donor(donation_id=donation.id, user_id=contributor.id, amount=amount)
        db.add(donor)
        total_after = total_before + amount

        closed = False
        price = gift.price
        if price is not None and total_before < price <= total_after:
            claimed = await db.execute(
                update(Donation)
                .where(Donation.id == donation.id, Donation.closed_at.is_(None))
                .values(closed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            closed = claimed.rowcount == 1
        await db.commit()
        if closed:
            await db.refresh(donation, ["closed_at"])
        logger.info(
            "Contribution gift=%s donation=%s user=%s amount=%s total=%s closed=%s",
            gift.id,
            donation.id,
            contributor.telegram_id,
            amount,
            total_after,
            closed,
        )

        owner = await get_by_telegram_id(db, gift.owner_id)
        if opened:
            message, localized = notifications.render(
                NotificationType.GIFT_FUNDRAISING_OPENED,
                anonymous=donation.is_anonymous,
                sender=contributor.display_name,
                gift=gift.name,
            )
            await notifications.notify(
                db,
                recipient=owner,
                sender=None if donation.is_anonymous else contributor,
                type=NotificationType.GIFT_FUNDRAISING_OPENED,
                message=message,
                message_localized=localized,
                entity_id=gift.id,
                entity_model=EntityModel.GIFT,
            )
        if closed:
            message, localized = notifications.render(
                NotificationType.GIFT_FUNDRAISING_CLOSED, gift=gift.name
            )
            await notifications.notify_many(
                db,
                recipients=[owner, *await _donor_users(db, donation.id)],
                sender=None if donation.is_anonymous else contributor,
                type=NotificationType.GIFT_FUNDRAISING_CLOSED,
                message=message,
                message_localized=localized,
                entity_id=gift.id,
                entity_model=EntityModel.GIFT,
            )

    return ContributionResult(
        donation=donation,
        donor=donor,
        total_before=total_before,
        total_after=total_after,
        funding_opened=opened,
        funding_closed=closed,
    )


async def withdraw(db: AsyncSession, gift_id: int, actor: User) -> Gift:
    """Cancel the collection: drop every donor, the donation and the gift's pointer to it."""
    async with gift_locks.hold(gift_id):
        gift = await _load_for_update(db, gift_id)
        donation = gift.donation
        if donation is None:
            raise NotFoundError("Donation not found")
        if donation.author_id != actor.id and gift.owner_id != actor.telegram_id:
            raise AuthorizationError("Only the donation author or the gift owner can cancel it")

        donation_id = donation.id
        gift.donation = None
        await db.delete(donation)
        await db.commit()
    logger.info("Donation withdrawn gift=%s donation=%s by=%s", gift_id, donation_id, actor.telegram_id)
    return gift


async def list_donors(db: AsyncSession, gift_id: int, requester: User) -> DonorsView:
    result = await db.execute(
        select(Gift)
        .options(selectinload(Gift.donation).selectinload(Donation.donors).selectinload(Donor.user))
        .where(Gift.id == gift_id)
        .execution_options(populate_existing=True)
    )
    gift = await require_visible(db, result.scalar_one_or_none(), requester, "Gift not found")
    donation = gift.donation
    if donation is None:
        return DonorsView(gift=gift, total=Decimal("0"), is_anonymous=False, donors=[])

    # The owner does not learn who chipped in until the gift is handed over
    mask = donation.is_anonymous and not gift.is_given and gift.owner_id == requester.telegram_id
    entries = [
        DonorEntry(
            user=None if mask and donor.user_id != requester.id else donor.user,
            amount=Decimal(str(donor.amount)),
            created_at=donor.created_at,
            is_anonymous=mask and donor.user_id != requester.id,
        )
        for donor in sorted(donation.donors, key=lambda d: (d.created_at, d.id))
    ]
    return DonorsView(
        gift=gift,
        total=sum((entry.amount for entry in entries), Decimal("0")),
        is_anonymous=donation.is_anonymous,
        donors=entries,
    )
