"""Viewer allow-list rules shared by gifts, events and user profiles.

A record whose allow-list is empty is public. Otherwise it is visible to its
owner, to event members and to the users on the list. The same rule exists in
three shapes: ``can_view`` for data already in memory, ``is_visible`` for a
single loaded record and ``visible_filter`` for list queries.
"""

from collections.abc import Collection
from dataclasses import dataclass

from sqlalchemy import ColumnElement, Table, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow.core.errors import NotFoundError
from giftflow.models.models import (
    Event,
    Gift,
    User,
    event_members,
    event_viewers,
    gift_viewers,
    user_gift_viewers,
    user_viewers,
)


@dataclass(frozen=True)
class _AccessRule:
    viewers: Table
    record_key: str
    user_key: str
    # Attribute on the record compared with ``requester_attr`` on the requester
    owner_attr: str
    requester_attr: str
    members: Table | None = None


_RULES: dict[type, _AccessRule] = {
    Gift: _AccessRule(gift_viewers, "gift_id", "user_id", "owner_id", "telegram_id"),
    Event: _AccessRule(
        event_viewers, "event_id", "user_id", "owner_id", "telegram_id", members=event_members
    ),
    User: _AccessRule(user_viewers, "user_id", "viewer_id", "id", "id"),
}

# Who may see the gifts a user has reserved or given
GIVEN_GIFTS_RULE = _AccessRule(user_gift_viewers, "user_id", "viewer_id", "id", "id")


def can_view(
    viewer_ids: Collection[int],
    requester_id: int | None,
    *,
    is_owner: bool = False,
    member_ids: Collection[int] = (),
) -> bool:
    if not viewer_ids:
        return True
    if requester_id is None:
        return False
    return is_owner or requester_id in viewer_ids or requester_id in member_ids


def _rule_for(model: type) -> _AccessRule:
    try:
        return _RULES[model]
    except KeyError:
        raise TypeError(f"No visibility rule for {model.__name__}") from None


async def check_rule(
    db: AsyncSession,
    rule: _AccessRule,
    record: Gift | Event | User,
    requester: User | None,
) -> bool:
    record_key = rule.viewers.c[rule.record_key]
    restricted = await db.scalar(select(exists().where(record_key == record.id)))
    if not restricted:
        return True
    if requester is None:
        return False
    if getattr(record, rule.owner_attr) == getattr(requester, rule.requester_attr):
        return True

    clauses = [
        exists().where(record_key == record.id, rule.viewers.c[rule.user_key] == requester.id)
    ]
    if rule.members is not None:
        clauses.append(
            exists().where(
                rule.members.c[rule.record_key] == record.id,
                rule.members.c[rule.user_key] == requester.id,
            )
        )
    return bool(await db.scalar(select(or_(*clauses))))


async def is_visible(db: AsyncSession, record: Gift | Event | User, requester: User | None) -> bool:
    return await check_rule(db, _rule_for(type(record)), record, requester)


async def require_visible(
    db: AsyncSession,
    record,
    requester: User | None,
    detail: str = "Not found",
):
    """Return the record, or raise NotFoundError when it is missing or hidden."""
    if record is None or not await is_visible(db, record, requester):
        raise NotFoundError(detail)
    return record


def visible_filter(model: type, requester: User | None) -> ColumnElement[bool]:
    rule = _rule_for(model)
    record_key = rule.viewers.c[rule.record_key]
    public = ~exists().where(record_key == model.id)
    if requester is None:
        return public

    clauses: list[ColumnElement[bool]] = [
        public,
        getattr(model, rule.owner_attr) == getattr(requester, rule.requester_attr),
        exists().where(record_key == model.id, rule.viewers.c[rule.user_key] == requester.id),
    ]
    if rule.members is not None:
        clauses.append(
            exists().where(
                rule.members.c[rule.record_key] == model.id,
                rule.members.c[rule.user_key] == requester.id,
            )
        )
    return or_(*clauses)
