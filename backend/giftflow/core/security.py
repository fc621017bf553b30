from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import json
import logging
import secrets
from typing import Any
from urllib.parse import parse_qsl
from uuid import uuid4

from jose import JWTError, jwt

from giftflow.core.config import settings

_dev_logger = logging.getLogger("giftflow.security")
_insecure_keys = {"CHANGE_ME", "secret", "jwt_secret", "changeme", ""}

if not settings.jwt_secret_key or settings.jwt_secret_key in _insecure_keys or len(settings.jwt_secret_key) < 32:
    env = getattr(settings, "environment", "local") or "local"
    if env.lower() == "local":
        settings.jwt_secret_key = secrets.token_urlsafe(64)
        _dev_logger.warning("JWT_SECRET_KEY was missing/insecure; generated ephemeral key for local dev")
    else:
        raise RuntimeError("JWT_SECRET_KEY must be set to a secure value (32+ chars) in production")


@dataclass(frozen=True)
class TelegramIdentity:
    telegram_id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    language_code: str | None = None
    is_premium: bool = False
    photo_url: str | None = None


def create_access_token(subject: str, expires_delta_minutes: int | None = None) -> str:
    expire_minutes = expires_delta_minutes or settings.access_token_expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=expire_minutes)
    to_encode: dict[str, Any] = {"sub": subject, "exp": expire, "type": "access", "jti": str(uuid4())}
    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None
    return payload


def _init_data_secret(bot_token: str) -> bytes:
    return hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()


def sign_init_data(fields: dict[str, str], bot_token: str | None = None) -> str:
    """Compute the ``hash`` value the Telegram client attaches to initData."""
    check_string = "\n".join(f"{key}={fields[key]}" for key in sorted(fields) if key != "hash")
    secret = _init_data_secret(bot_token if bot_token is not None else settings.bot_token)
    return hmac.new(secret, check_string.encode(), hashlib.sha256).hexdigest()


def verify_init_data(init_data: str, now: datetime | None = None) -> TelegramIdentity | None:
    """Validate a WebApp initData string and return the identity it carries."""
    if not init_data or not settings.bot_token:
        return None
    fields = dict(parse_qsl(init_data, keep_blank_values=True))
    received = fields.pop("hash", None)
    if not received:
        return None
    expected = sign_init_data(fields)
    if not hmac.compare_digest(expected, received):
        _dev_logger.info("initData signature mismatch")
        return None

    try:
        auth_date = int(fields.get("auth_date", "0"))
    except ValueError:
        return None
    current = now or datetime.now(timezone.utc)
    if settings.init_data_max_age_seconds and current.timestamp() - auth_date > settings.init_data_max_age_seconds:
        _dev_logger.info("initData expired auth_date=%s", auth_date)
        return None

    try:
        user = json.loads(fields.get("user", ""))
        telegram_id = int(user["id"])
    except (ValueError, KeyError, TypeError):
        return None
    return TelegramIdentity(
        telegram_id=telegram_id,
        username=user.get("username"),
        first_name=user.get("first_name"),
        last_name=user.get("last_name"),
        language_code=user.get("language_code"),
        is_premium=bool(user.get("is_premium", False)),
        photo_url=user.get("photo_url"),
    )
