from collections.abc import Iterable
import logging

from sqlalchemy import exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from giftflow.core.config import settings
from giftflow.core.errors import NotFoundError, ValidationError
from giftflow.core.security import TelegramIdentity
from giftflow.models.models import Gift, User, user_blocked
from giftflow.services.visibility import require_visible, visible_filter

logger = logging.getLogger("giftflow.users")


async def get_by_telegram_id(db: AsyncSession, telegram_id: int) -> User | None:
    result = await db.execute(select(User).where(User.telegram_id == telegram_id))
    return result.scalar_one_or_none()


async def require_user(db: AsyncSession, telegram_id: int) -> User:
    user = await get_by_telegram_id(db, telegram_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def users_by_telegram_ids(db: AsyncSession, telegram_ids: Iterable[int]) -> dict[int, User]:
    ids = {tid for tid in telegram_ids if tid is not None}
    if not ids:
        return {}
    result = await db.execute(select(User).where(User.telegram_id.in_(ids)))
    return {user.telegram_id: user for user in result.scalars().all()}


async def resolve_users(db: AsyncSession, refs: Iterable[int | str]) -> list[User]:
    """Look users up by telegram id or username; all of them must exist."""
    telegram_ids: set[int] = set()
    usernames: set[str] = set()
    for ref in refs:
        if isinstance(ref, int) or (isinstance(ref, str) and ref.strip().isdigit()):
            telegram_ids.add(int(ref))
        elif isinstance(ref, str) and ref.strip().lstrip("@"):
            usernames.add(ref.strip().lstrip("@"))
        else:
            raise ValidationError("Invalid user reference")
    if not telegram_ids and not usernames:
        return []

    result = await db.execute(
        select(User).where(or_(User.telegram_id.in_(telegram_ids), User.username.in_(usernames)))
    )
    found = list(result.scalars().all())
    missing = (telegram_ids - {u.telegram_id for u in found}) | (
        usernames - {u.username for u in found if u.username}
    )
    if missing:
        raise ValidationError("One or more specified users were not found")
    return found


async def upsert_from_identity(db: AsyncSession, identity: TelegramIdentity) -> tuple[User, bool]:
    user = await get_by_telegram_id(db, identity.telegram_id)
    created = user is None
    if created:
        user = User(
            telegram_id=identity.telegram_id,
            language=identity.language_code or settings.default_language,
            currency=settings.default_currency,
        )
        db.add(user)
    user.username = identity.username
    user.first_name = identity.first_name
    user.last_name = identity.last_name
    user.is_premium = identity.is_premium
    if identity.photo_url:
        user.photo_url = identity.photo_url
    await db.commit()
    await db.refresh(user)
    if created:
        logger.info("User registered telegram_id=%s", user.telegram_id)
    return user, created


async def update_settings(
    db: AsyncSession,
    user: User,
    *,
    language: str | None = None,
    currency: str | None = None,
    viewers: list[int | str] | None = None,
    gift_viewers: list[int | str] | None = None,
) -> User:
    if language is None and currency is None and viewers is None and gift_viewers is None:
        raise ValidationError("Nothing to update")

    result = await db.execute(
        select(User)
        .options(selectinload(User.viewers), selectinload(User.gift_viewers))
        .where(User.id == user.id)
    )
    current = result.scalar_one()
    if language:
        current.language = language
    if currency:
        current.currency = currency
    if viewers is not None:
        current.viewers = await resolve_users(db, viewers)
    if gift_viewers is not None:
        current.gift_viewers = await resolve_users(db, gift_viewers)
    await db.commit()
    return current


async def has_blocked(db: AsyncSession, blocker: User, target: User) -> bool:
    return bool(
        await db.scalar(
            select(
                exists().where(
                    user_blocked.c.user_id == blocker.id,
                    user_blocked.c.blocked_id == target.id,
                )
            )
        )
    )


async def get_visible_profile(db: AsyncSession, telegram_id: int, requester: User) -> dict:
    user = await get_by_telegram_id(db, telegram_id)
    await require_visible(db, user, requester, "User not found")
    gifts_count = await db.scalar(select(func.count(Gift.id)).where(Gift.owner_id == user.telegram_id))
    return {
        "user": user,
        "gifts_count": gifts_count or 0,
        "is_blocked": await has_blocked(db, requester, user),
    }


async def list_visible_users(db: AsyncSession, requester: User, limit: int = 100, offset: int = 0) -> list[User]:
    result = await db.execute(
        select(User)
        .where(User.id != requester.id, visible_filter(User, requester))
        .order_by(User.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
