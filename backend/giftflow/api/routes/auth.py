import logging
from typing import TypedDict

from fastapi import APIRouter, HTTPException, Request, Response, status

from giftflow.api.deps import CurrentUserDep, DbSessionDep
from giftflow.core.audit import audit_login, audit_login_failed
from giftflow.core.config import settings
from giftflow.core.security import create_access_token, verify_init_data
from giftflow.schemas.auth import AuthRequest, Token, UserPublic
from giftflow.services.users import upsert_from_identity


router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("giftflow.auth")


class CookieOptions(TypedDict, total=False):
    samesite: str
    secure: bool


def _cookie_options() -> CookieOptions:
    environment = (settings.environment or "local").lower()
    if environment == "local":
        return {"samesite": "lax", "secure": False}
    # The mini app is served from another origin
    return {"samesite": "none", "secure": True}


def _set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        "access_token",
        token,
        httponly=True,
        max_age=settings.access_token_expire_minutes * 60,
        path="/",
        **_cookie_options(),
    )


@router.post("", response_model=Token)
async def authenticate(
    payload: AuthRequest,
    response: Response,
    db: DbSessionDep,
    request: Request,
) -> Token:
    """Exchange Telegram WebApp initData for a session token."""
    identity = verify_init_data(payload.init_data)
    if identity is None:
        audit_login_failed(request, "invalid_init_data")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid initData")

    user, created = await upsert_from_identity(db, identity)
    token = create_access_token(str(user.telegram_id))
    _set_auth_cookie(response, token)
    audit_login(request, user.telegram_id, created)
    logger.info("Auth success telegram_id=%s created=%s", user.telegram_id, created)
    return Token(access_token=token, user=UserPublic.model_validate(user), created=created)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(response: Response) -> None:
    response.delete_cookie("access_token", path="/", **_cookie_options())


@router.get("/me", response_model=UserPublic)
async def get_me(current_user: CurrentUserDep) -> UserPublic:
    return UserPublic.model_validate(current_user)
