from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class AuthRequest(BaseModel):
    init_data: str = Field(min_length=1, max_length=4096)


class UserSummary(BaseModel):
    telegram_id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    photo_url: str | None = None

    model_config = {"from_attributes": True}


class UserPublic(UserSummary):
    language: str | None = None
    currency: str
    is_premium: bool = False
    created_at: datetime


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserPublic
    created: bool = False


class ProfilePublic(BaseModel):
    user: UserPublic
    gifts_count: int
    is_blocked: bool


class SettingsUpdate(BaseModel):
    language: str | None = Field(default=None, min_length=2, max_length=8)
    currency: str | None = Field(default=None, min_length=3, max_length=8)
    viewers: list[int | str] | None = None
    gift_viewers: list[int | str] | None = None

    @field_validator("language", "currency")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class SettingsPublic(UserPublic):
    viewers: list[UserSummary] = []
    gift_viewers: list[UserSummary] = []
