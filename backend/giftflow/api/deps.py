from typing import Annotated
import logging

from fastapi import Cookie, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow.core.security import decode_access_token, verify_init_data
from giftflow.db.session import get_db
from giftflow.models.models import User
from giftflow.services.users import get_by_telegram_id, upsert_from_identity


DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
logger = logging.getLogger("giftflow.auth")


def _bearer_token(request: Request, access_token: str | None) -> str | None:
    if access_token:
        return access_token
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip()
    return None


async def get_current_user(
    request: Request,
    db: DbSessionDep,
    init_data: str | None = Header(default=None, alias="X-Telegram-Init-Data"),
    access_token: str | None = Cookie(default=None, alias="access_token"),
) -> User:
    if init_data:
        identity = verify_init_data(init_data)
        if identity is None:
            logger.info("initData rejected path=%s", request.url.path)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid initData")
        user, _ = await upsert_from_identity(db, identity)
        return user

    token = _bearer_token(request, access_token)
    if not token:
        logger.info(
            "Auth token missing path=%s ip=%s",
            request.url.path,
            request.client.host if request.client else None,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    payload = decode_access_token(token)
    if not payload or "sub" not in payload:
        logger.info("Auth token invalid path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        telegram_id = int(payload["sub"])
    except (TypeError, ValueError):
        logger.info("Auth token subject invalid path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from None

    user = await get_by_telegram_id(db, telegram_id)
    if not user:
        logger.info("Auth user missing path=%s telegram_id=%s", request.url.path, telegram_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]
