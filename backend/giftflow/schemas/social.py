from datetime import datetime
from typing import Literal

from pydantic import BaseModel

from giftflow.schemas.auth import UserSummary


class FriendRequestCreate(BaseModel):
    telegram_id: int


class FriendRequestRespond(BaseModel):
    request_id: int
    # accept | decline, checked by the service
    action: str


class FriendRequestPublic(BaseModel):
    id: int
    requester: UserSummary
    recipient: UserSummary
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class FriendRequestResult(BaseModel):
    request_id: int
    status: Literal["pending", "accepted", "declined", "cancelled"]


class NotificationPublic(BaseModel):
    id: int
    type: str
    message: str
    description: str | None = None
    entity_id: int
    entity_model: str
    is_read: bool
    sender: UserSummary | None = None
    created_at: datetime


class MarkAllReadResponse(BaseModel):
    updated: int
