from fastapi import APIRouter

from giftflow.api.deps import CurrentUserDep, DbSessionDep
from giftflow.api.serializers import serialize_gift
from giftflow.schemas.auth import UserSummary
from giftflow.schemas.event import ThankMembersResponse
from giftflow.schemas.gift import GiftPublic, ThankAllResponse, ThankRequest, ThankableGiftPublic
from giftflow.services import events as event_service
from giftflow.services import gifts as gift_service


router = APIRouter(prefix="/thanks", tags=["thanks"])


@router.get("/gifts", response_model=list[ThankableGiftPublic])
async def list_thankable(db: DbSessionDep, current_user: CurrentUserDep) -> list[ThankableGiftPublic]:
    items = await gift_service.list_thankable(db, current_user)
    return [
        ThankableGiftPublic(
            gift=serialize_gift(item.gift),
            reserver=UserSummary.model_validate(item.reserver) if item.reserver else None,
            donors=[UserSummary.model_validate(donor) for donor in item.donors],
        )
        for item in items
    ]


@router.post("/gifts", response_model=ThankAllResponse)
async def thank_all(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    payload: ThankRequest | None = None,
) -> ThankAllResponse:
    gifts = await gift_service.thank_all(db, current_user, payload.message if payload else None)
    return ThankAllResponse(thanked=[gift.id for gift in gifts])


@router.post("/gifts/{gift_id}", response_model=GiftPublic)
async def thank_gift(
    gift_id: int,
    db: DbSessionDep,
    current_user: CurrentUserDep,
    payload: ThankRequest | None = None,
) -> GiftPublic:
    gift = await gift_service.thank(db, gift_id, current_user, payload.message if payload else None)
    return serialize_gift(gift)


@router.post("/events/{event_id}", response_model=ThankMembersResponse)
async def thank_event_members(
    event_id: int,
    db: DbSessionDep,
    current_user: CurrentUserDep,
    payload: ThankRequest | None = None,
) -> ThankMembersResponse:
    sent = await event_service.thank_members(db, event_id, current_user, payload.message if payload else None)
    return ThankMembersResponse(sent=sent)
