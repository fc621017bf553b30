from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from giftflow.schemas.auth import UserSummary


class GiftCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    link: str | None = Field(default=None, max_length=2048)
    image_url: str | None = Field(default=None, max_length=2048)
    price: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    currency: str | None = Field(default=None, max_length=8)
    viewers: list[int | str] | None = None

    @field_validator("name")
    @classmethod
    def _name_strip(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Name must not be blank")
        return normalized

    @field_validator("link", "image_url", "description")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class GiftUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    link: str | None = Field(default=None, max_length=2048)
    image_url: str | None = Field(default=None, max_length=2048)
    price: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    currency: str | None = Field(default=None, min_length=1, max_length=8)
    viewers: list[int | str] | None = None

    @field_validator("link", "image_url", "description")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class DonationSummary(BaseModel):
    id: int
    is_anonymous: bool
    closed_at: datetime | None = None
    total: float
    donors_count: int


class GiftPublic(BaseModel):
    id: int
    owner_id: int
    name: str
    description: str | None = None
    link: str | None = None
    image_url: str | None = None
    price: float | None = None
    currency: str
    is_reserved: bool
    reserved_by: int | None = None
    is_given: bool
    is_thanked: bool
    donation: DonationSummary | None = None
    created_at: datetime


class DonationCreate(BaseModel):
    gift_id: int
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    is_anonymous: bool = False


class ContributionPublic(BaseModel):
    gift: GiftPublic
    total_before: float
    total_after: float
    funding_opened: bool
    funding_closed: bool


class DonorPublic(BaseModel):
    user: UserSummary | None = None
    amount: float
    created_at: datetime
    is_anonymous: bool


class DonorsPublic(BaseModel):
    gift_id: int
    total: float
    is_anonymous: bool
    donors: list[DonorPublic]


class ThankRequest(BaseModel):
    message: str | None = Field(default=None, max_length=1000)


class ThankableGiftPublic(BaseModel):
    gift: GiftPublic
    reserver: UserSummary | None = None
    donors: list[UserSummary] = []


class ThankAllResponse(BaseModel):
    thanked: list[int]
