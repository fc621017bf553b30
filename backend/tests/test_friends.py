"""
Тесты заявок в друзья и блокировок.
"""
import pytest
from sqlalchemy import func, select

from giftflow.core.errors import ConflictError, NotFoundError, ValidationError
from giftflow.models.models import EntityModel, FriendRequest, Notification, NotificationType
from giftflow.services import friends


async def _notifications(db, recipient, kind: NotificationType) -> list[Notification]:
    result = await db.execute(
        select(Notification).where(Notification.recipient_id == recipient.id, Notification.type == kind.value)
    )
    return list(result.scalars().all())


@pytest.fixture
async def pair(make_user):
    return await make_user("Alice"), await make_user("Bob")


class TestFriendRequests:
    """Отправка, ответ и отмена заявок."""

    @pytest.mark.anyio
    async def test_accept_round_trip(self, db, pair):
        alice, bob = pair
        request = await friends.send(db, alice, bob.telegram_id)

        incoming = await friends.list_incoming(db, bob)
        assert [item.id for item in incoming] == [request.id]
        assert [item.id for item in await friends.list_outgoing(db, alice)] == [request.id]
        sent = await _notifications(db, bob, NotificationType.FRIEND_REQUEST)
        assert len(sent) == 1
        assert sent[0].entity_model == EntityModel.FRIEND_REQUEST.value
        assert sent[0].entity_id == request.id

        await friends.respond(db, bob, request.id, "accept")
        assert await friends.are_friends(db, alice, bob)
        assert await friends.are_friends(db, bob, alice)
        assert await db.scalar(select(func.count(FriendRequest.id))) == 0
        assert [user.id for user in await friends.list_friends(db, alice)] == [bob.id]

        accepted = await _notifications(db, alice, NotificationType.FRIEND_REQUEST_ACCEPTED)
        assert len(accepted) == 1
        assert accepted[0].entity_model == EntityModel.USER.value
        assert accepted[0].entity_id == bob.id

    @pytest.mark.anyio
    async def test_decline(self, db, pair):
        alice, bob = pair
        request = await friends.send(db, alice, bob.telegram_id)
        await friends.respond(db, bob, request.id, "decline")
        assert not await friends.are_friends(db, alice, bob)
        assert len(await _notifications(db, alice, NotificationType.FRIEND_REQUEST_DECLINED)) == 1
        # A declined request can be sent again
        await friends.send(db, alice, bob.telegram_id)

    @pytest.mark.anyio
    async def test_send_to_self_is_invalid(self, db, pair):
        alice, _ = pair
        with pytest.raises(ValidationError):
            await friends.send(db, alice, alice.telegram_id)

    @pytest.mark.anyio
    async def test_send_to_missing_user(self, db, pair):
        alice, _ = pair
        with pytest.raises(NotFoundError):
            await friends.send(db, alice, 999_999_999)

    @pytest.mark.anyio
    async def test_duplicate_in_either_direction_conflicts(self, db, pair):
        alice, bob = pair
        await friends.send(db, alice, bob.telegram_id)
        with pytest.raises(ConflictError):
            await friends.send(db, alice, bob.telegram_id)
        with pytest.raises(ConflictError):
            await friends.send(db, bob, alice.telegram_id)

    @pytest.mark.anyio
    async def test_send_to_friend_conflicts(self, db, pair):
        alice, bob = pair
        request = await friends.send(db, alice, bob.telegram_id)
        await friends.respond(db, bob, request.id, "accept")
        with pytest.raises(ConflictError):
            await friends.send(db, bob, alice.telegram_id)

    @pytest.mark.anyio
    async def test_respond_rules(self, db, pair):
        alice, bob = pair
        request = await friends.send(db, alice, bob.telegram_id)
        with pytest.raises(ValidationError):
            await friends.respond(db, bob, request.id, "maybe")
        # Only the recipient can answer
        with pytest.raises(NotFoundError):
            await friends.respond(db, alice, request.id, "accept")
        await friends.respond(db, bob, request.id, "accept")
        with pytest.raises(NotFoundError):
            await friends.respond(db, bob, request.id, "accept")

    @pytest.mark.anyio
    async def test_cancel(self, db, pair):
        alice, bob = pair
        await friends.send(db, alice, bob.telegram_id)
        await friends.cancel(db, alice, bob.telegram_id)
        assert await friends.list_incoming(db, bob) == []
        with pytest.raises(NotFoundError):
            await friends.cancel(db, alice, bob.telegram_id)


class TestBlocking:
    """Блокировка и удаление из друзей."""

    @pytest.mark.anyio
    async def test_block_drops_friendship_and_requests(self, db, pair):
        alice, bob = pair
        request = await friends.send(db, alice, bob.telegram_id)
        await friends.respond(db, bob, request.id, "accept")

        await friends.block(db, alice, bob.telegram_id)
        assert not await friends.are_friends(db, alice, bob)
        assert [user.id for user in await friends.list_blocked(db, alice)] == [bob.id]

        # Blocking twice is harmless
        await friends.block(db, alice, bob.telegram_id)
        assert len(await friends.list_blocked(db, alice)) == 1

        await friends.unblock(db, alice, bob.telegram_id)
        assert await friends.list_blocked(db, alice) == []
        with pytest.raises(NotFoundError):
            await friends.unblock(db, alice, bob.telegram_id)

    @pytest.mark.anyio
    async def test_block_removes_pending_request(self, db, pair):
        alice, bob = pair
        await friends.send(db, bob, alice.telegram_id)
        await friends.block(db, alice, bob.telegram_id)
        assert await friends.list_incoming(db, alice) == []

    @pytest.mark.anyio
    async def test_block_self_is_invalid(self, db, pair):
        alice, _ = pair
        with pytest.raises(ValidationError):
            await friends.block(db, alice, alice.telegram_id)

    @pytest.mark.anyio
    async def test_remove_friend(self, db, pair):
        alice, bob = pair
        request = await friends.send(db, alice, bob.telegram_id)
        await friends.respond(db, bob, request.id, "accept")
        await friends.remove_friend(db, bob, alice.telegram_id)
        assert not await friends.are_friends(db, alice, bob)
        assert not await friends.are_friends(db, bob, alice)
        with pytest.raises(NotFoundError):
            await friends.remove_friend(db, bob, alice.telegram_id)
