import logging

from fastapi import APIRouter, Request, status

from giftflow.api.deps import CurrentUserDep, DbSessionDep
from giftflow.api.serializers import serialize_gift, serialize_gifts
from giftflow.core.audit import AuditAction, audit_gift_action
from giftflow.schemas.auth import UserSummary
from giftflow.schemas.gift import (
    ContributionPublic,
    DonationCreate,
    DonorPublic,
    DonorsPublic,
    GiftCreate,
    GiftPublic,
    GiftUpdate,
)
from giftflow.services import crowdfunding
from giftflow.services import gifts as gift_service

logger = logging.getLogger("giftflow.gifts")

router = APIRouter(prefix="/gifts", tags=["gifts"])


@router.post("", response_model=GiftPublic, status_code=status.HTTP_201_CREATED)
async def create_gift(payload: GiftCreate, db: DbSessionDep, current_user: CurrentUserDep) -> GiftPublic:
    gift = await gift_service.create_gift(db, current_user, **payload.model_dump())
    return serialize_gift(gift)


@router.get("/wishlist/{telegram_id}", response_model=list[GiftPublic])
async def get_wishlist(telegram_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> list[GiftPublic]:
    gifts = await gift_service.list_wishlist(db, telegram_id, current_user)
    return await serialize_gifts(db, gifts, current_user)


@router.get("/reserved-by/{telegram_id}", response_model=list[GiftPublic])
async def get_reserved_by(telegram_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> list[GiftPublic]:
    gifts = await gift_service.list_reserved_by(db, telegram_id, current_user)
    return await serialize_gifts(db, gifts, current_user)


@router.post("/donation", response_model=ContributionPublic, status_code=status.HTTP_201_CREATED)
async def contribute(
    payload: DonationCreate,
    request: Request,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> ContributionPublic:
    result = await crowdfunding.contribute(
        db,
        payload.gift_id,
        current_user,
        payload.amount,
        is_anonymous=payload.is_anonymous,
    )
    audit_gift_action(
        AuditAction.DONATION_CREATE,
        request,
        current_user.telegram_id,
        payload.gift_id,
        {"amount": str(payload.amount), "closed": result.funding_closed},
    )
    gift = await gift_service.get_gift(db, payload.gift_id, current_user)
    return ContributionPublic(
        gift=(await serialize_gifts(db, [gift], current_user))[0],
        total_before=float(result.total_before),
        total_after=float(result.total_after),
        funding_opened=result.funding_opened,
        funding_closed=result.funding_closed,
    )


@router.delete("/donation/{gift_id}", response_model=GiftPublic)
async def withdraw_donation(
    gift_id: int,
    request: Request,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> GiftPublic:
    gift = await crowdfunding.withdraw(db, gift_id, current_user)
    audit_gift_action(AuditAction.DONATION_WITHDRAW, request, current_user.telegram_id, gift_id)
    return serialize_gift(gift)


@router.get("/{gift_id}", response_model=GiftPublic)
async def get_gift(gift_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> GiftPublic:
    gift = await gift_service.get_gift(db, gift_id, current_user)
    return (await serialize_gifts(db, [gift], current_user))[0]


@router.get("/{gift_id}/donors", response_model=DonorsPublic)
async def get_donors(gift_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> DonorsPublic:
    view = await crowdfunding.list_donors(db, gift_id, current_user)
    return DonorsPublic(
        gift_id=view.gift.id,
        total=float(view.total),
        is_anonymous=view.is_anonymous,
        donors=[
            DonorPublic(
                user=UserSummary.model_validate(entry.user) if entry.user else None,
                amount=float(entry.amount),
                created_at=entry.created_at,
                is_anonymous=entry.is_anonymous,
            )
            for entry in view.donors
        ],
    )


@router.patch("/{gift_id}/reserve", response_model=GiftPublic)
async def toggle_reserve(gift_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> GiftPublic:
    gift = await gift_service.toggle_reservation(db, gift_id, current_user)
    return serialize_gift(gift)


@router.patch("/{gift_id}/mark-given", response_model=GiftPublic)
async def mark_given(gift_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> GiftPublic:
    gift = await gift_service.mark_given(db, gift_id, current_user)
    return (await serialize_gifts(db, [gift], current_user))[0]


@router.put("/{gift_id}", response_model=GiftPublic)
async def update_gift(
    gift_id: int,
    payload: GiftUpdate,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> GiftPublic:
    gift = await gift_service.update_gift(db, gift_id, current_user, payload.model_dump(exclude_unset=True))
    return (await serialize_gifts(db, [gift], current_user))[0]


@router.delete("/{gift_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_gift(
    gift_id: int,
    request: Request,
    db: DbSessionDep,
    current_user: CurrentUserDep,
) -> None:
    await gift_service.delete_gift(db, gift_id, current_user)
    audit_gift_action(AuditAction.GIFT_DELETE, request, current_user.telegram_id, gift_id)
