from fastapi import APIRouter, Query

from giftflow.api.deps import CurrentUserDep, DbSessionDep
from giftflow.api.serializers import serialize_notification
from giftflow.schemas.social import MarkAllReadResponse, NotificationPublic
from giftflow.services import notifications as notification_service


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationPublic])
async def list_notifications(
    db: DbSessionDep,
    current_user: CurrentUserDep,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[NotificationPublic]:
    items = await notification_service.list_notifications(db, current_user, limit=limit, offset=offset)
    return [serialize_notification(item, current_user.language) for item in items]


@router.get("/unread", response_model=list[NotificationPublic])
async def list_unread(db: DbSessionDep, current_user: CurrentUserDep) -> list[NotificationPublic]:
    items = await notification_service.list_notifications(db, current_user, unread_only=True)
    return [serialize_notification(item, current_user.language) for item in items]


@router.patch("/{notification_id}/read", response_model=NotificationPublic)
async def mark_read(notification_id: int, db: DbSessionDep, current_user: CurrentUserDep) -> NotificationPublic:
    item = await notification_service.mark_read(db, current_user, notification_id)
    return serialize_notification(item, current_user.language)


@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(db: DbSessionDep, current_user: CurrentUserDep) -> MarkAllReadResponse:
    updated = await notification_service.mark_all_read(db, current_user)
    return MarkAllReadResponse(updated=updated)
