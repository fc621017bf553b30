from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator

from giftflow.schemas.auth import UserSummary
from giftflow.schemas.gift import GiftPublic


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EventCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    image_url: str | None = Field(default=None, max_length=2048)
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_anonymous: bool = False
    send_invitations: bool = False
    send_acknowledgements: bool = False
    acknowledgement_message: str | None = Field(default=None, max_length=1000)
    gift_ids: list[int] = []
    members: list[int | str] = []
    viewers: list[int | str] = []

    @field_validator("name")
    @classmethod
    def _name_strip(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Name must not be blank")
        return normalized

    @field_validator("start_date", "end_date")
    @classmethod
    def _dates_utc(cls, value: datetime | None) -> datetime | None:
        return _to_utc(value)


class EventUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    image_url: str | None = Field(default=None, max_length=2048)
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_anonymous: bool | None = None
    send_acknowledgements: bool | None = None
    acknowledgement_message: str | None = Field(default=None, max_length=1000)
    gift_ids: list[int] | None = None
    viewers: list[int | str] | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _dates_utc(cls, value: datetime | None) -> datetime | None:
        return _to_utc(value)


class EventPublic(BaseModel):
    id: int
    owner_id: int
    name: str
    description: str | None = None
    image_url: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_anonymous: bool
    send_invitations: bool
    send_acknowledgements: bool
    acknowledgement_message: str
    gifters_revealed_at: datetime | None = None
    start_notification_sent: bool
    completion_notification_sent: bool
    members: list[UserSummary] = []
    viewers: list[UserSummary] = []
    gifts: list[GiftPublic] = []
    created_at: datetime


class AddGiftsRequest(BaseModel):
    gift_ids: list[int] = Field(min_length=1)


class MyGiftsPublic(BaseModel):
    given: list[GiftPublic]
    received: list[GiftPublic]


class ThankMembersResponse(BaseModel):
    sent: int
