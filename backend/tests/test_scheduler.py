"""
Тесты планировщика событий: окна срабатывания, одноразовые флаги, изоляция сбоев.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import insert, select

from giftflow.core.sweep_metrics import sweep_metrics
from giftflow.jobs import scheduler
from giftflow.models.models import Event, Gift, Notification, NotificationType, event_gifts, event_members


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


async def _notifications(db, recipient, kind: NotificationType) -> list[Notification]:
    result = await db.execute(
        select(Notification).where(Notification.recipient_id == recipient.id, Notification.type == kind.value)
    )
    return list(result.scalars().all())


async def _make_event(db, owner, now: datetime, **fields) -> Event:
    fields.setdefault("created_at", now - timedelta(days=2))
    event = Event(owner_id=owner.telegram_id, name=fields.pop("name", "Party"), **fields)
    db.add(event)
    await db.commit()
    return event


async def _attach_gift(db, event: Event, gift: Gift) -> None:
    db.add(gift)
    await db.commit()
    await db.execute(insert(event_gifts).values(event_id=event.id, gift_id=gift.id))
    await db.commit()


async def _reload(session_factory, event_id: int) -> Event:
    async with session_factory() as session:
        return await session.get(Event, event_id)


class TestWindow:
    """Границы окна срабатывания."""

    def test_is_due_is_half_open(self):
        now = _now()
        since = now - timedelta(minutes=1)
        assert scheduler.is_due(now, since, now) is True
        assert scheduler.is_due(since, since, now) is False
        assert scheduler.is_due(now + timedelta(seconds=1), since, now) is False
        assert scheduler.is_due(None, since, now) is False

    def test_window_starts_at_watermark(self):
        now = _now()
        event = Event(owner_id=1, name="x", created_at=now - timedelta(days=1), last_swept_at=now - timedelta(minutes=2))
        assert scheduler.window_start(event, now) == now - timedelta(minutes=2)

    def test_window_starts_at_creation_before_first_sweep(self):
        now = _now()
        event = Event(owner_id=1, name="x", created_at=now - timedelta(minutes=5))
        assert scheduler.window_start(event, now) == now - timedelta(minutes=5)

    def test_window_is_bounded_by_catchup(self):
        now = _now()
        event = Event(owner_id=1, name="x", created_at=now - timedelta(days=10))
        assert scheduler.window_start(event, now) == now - timedelta(hours=1)


@pytest.mark.anyio
async def test_starting_soon_fires_once(session_factory, db, make_user):
    owner = await make_user("Owner")
    now = _now()
    event = await _make_event(db, owner, now, start_date=now + timedelta(hours=23, minutes=30))

    report = await scheduler.run_sweep_once(now=now, session_factory=session_factory)
    assert report.starting_soon == [event.id]
    again = await scheduler.run_sweep_once(now=now + timedelta(minutes=1), session_factory=session_factory)
    assert again.starting_soon == []

    sent = await _notifications(db, owner, NotificationType.EVENT_STARTING_SOON)
    assert len(sent) == 1
    assert sent[0].entity_id == event.id
    assert (await _reload(session_factory, event.id)).start_notification_sent is True


@pytest.mark.anyio
async def test_starting_soon_exactly_one_day_ahead(session_factory, db, make_user):
    owner = await make_user("Owner")
    now = _now()
    event = await _make_event(db, owner, now, start_date=now + timedelta(hours=24))

    first = await scheduler.run_sweep_once(now=now, session_factory=session_factory)
    second = await scheduler.run_sweep_once(now=now + timedelta(minutes=1), session_factory=session_factory)
    assert first.starting_soon == [event.id]
    assert second.starting_soon == []
    assert len(await _notifications(db, owner, NotificationType.EVENT_STARTING_SOON)) == 1


@pytest.mark.anyio
async def test_trigger_before_creation_does_not_fire(session_factory, db, make_user):
    owner = await make_user("Owner")
    now = _now()
    # The starting-soon instant passed before the event existed
    await _make_event(db, owner, now, created_at=now - timedelta(minutes=1), start_date=now + timedelta(hours=1))
    report = await scheduler.run_sweep_once(now=now, session_factory=session_factory)
    assert report.starting_soon == []


@pytest.mark.anyio
async def test_same_instant_sweeps_are_idempotent(session_factory, db, make_user):
    owner = await make_user("Owner")
    now = _now()
    await _make_event(db, owner, now, end_date=now - timedelta(minutes=5))

    first = await scheduler.run_sweep_once(now=now, session_factory=session_factory)
    second = await scheduler.run_sweep_once(now=now, session_factory=session_factory)
    assert len(first.completed) == 1
    assert second.completed == []
    assert len(await _notifications(db, owner, NotificationType.EVENT_COMPLETED)) == 1


@pytest.mark.anyio
async def test_completion_auto_gives_and_acknowledges(session_factory, db, make_user):
    owner = await make_user("Owner")
    guest = await make_user("Guest")
    now = _now()
    event = await _make_event(
        db, owner, now, name="Party", end_date=now - timedelta(minutes=5), send_acknowledgements=True
    )
    await db.execute(insert(event_members).values(event_id=event.id, user_id=guest.id))
    await db.commit()
    reserved = Gift(owner_id=owner.telegram_id, name="Book", is_reserved=True, reserved_by=guest.telegram_id)
    free = Gift(owner_id=owner.telegram_id, name="Pen")
    await _attach_gift(db, event, reserved)
    await _attach_gift(db, event, free)

    report = await scheduler.run_sweep_once(now=now, session_factory=session_factory)
    assert report.completed == [event.id]
    assert report.auto_given == [reserved.id]

    async with session_factory() as session:
        assert (await session.get(Gift, reserved.id)).is_given is True
        assert (await session.get(Gift, free.id)).is_given is False

    assert len(await _notifications(db, owner, NotificationType.EVENT_COMPLETED)) == 1
    given = await _notifications(db, owner, NotificationType.GIFT_GIVEN)
    assert [n.entity_id for n in given] == [reserved.id]
    assert given[0].sender_id == guest.id

    thanks = await _notifications(db, guest, NotificationType.EVENT_THANK_YOU)
    assert [n.message for n in thanks] == ["Большое спасибо Guest за участие в событии Party!"]


@pytest.mark.anyio
async def test_anonymous_event_reveals_gifters(session_factory, db, make_user):
    owner = await make_user("Owner")
    guest = await make_user("Guest")
    now = _now()
    end = now - timedelta(hours=24, minutes=5)
    event = await _make_event(db, owner, now, end_date=end, is_anonymous=True)
    await _attach_gift(
        db, event, Gift(owner_id=owner.telegram_id, name="Box", is_reserved=True, reserved_by=guest.telegram_id)
    )

    report = await scheduler.run_sweep_once(now=now, session_factory=session_factory)
    assert report.revealed == [event.id]
    assert (await _reload(session_factory, event.id)).gifters_revealed_at is not None
    assert len(await _notifications(db, owner, NotificationType.EVENT_GIFTERS_REVEALED)) == 1

    later = await scheduler.run_sweep_once(now=now + timedelta(minutes=1), session_factory=session_factory)
    assert later.revealed == []


@pytest.mark.anyio
async def test_reveal_without_gifts_is_skipped(session_factory, db, make_user):
    owner = await make_user("Owner")
    now = _now()
    event = await _make_event(db, owner, now, end_date=now - timedelta(hours=24, minutes=5), is_anonymous=True)

    report = await scheduler.run_sweep_once(now=now, session_factory=session_factory)
    assert report.revealed == []
    assert (await _reload(session_factory, event.id)).gifters_revealed_at is None
    assert await _notifications(db, owner, NotificationType.EVENT_GIFTERS_REVEALED) == []


@pytest.mark.anyio
async def test_failing_event_does_not_stop_sweep(session_factory, db, make_user, monkeypatch):
    owner = await make_user("Owner")
    guest = await make_user("Guest")
    now = _now()
    broken = await _make_event(db, owner, now, name="Broken", end_date=now - timedelta(minutes=5))
    healthy = await _make_event(db, owner, now, name="Healthy", end_date=now - timedelta(minutes=5))
    await _attach_gift(
        db, broken, Gift(owner_id=owner.telegram_id, name="boom", is_reserved=True, reserved_by=guest.telegram_id)
    )

    original = scheduler.gift_service.auto_give

    async def flaky_auto_give(session, gifts):
        if any(gift.name == "boom" for gift in gifts):
            raise RuntimeError("auto give failed")
        return await original(session, gifts)

    monkeypatch.setattr(scheduler.gift_service, "auto_give", flaky_auto_give)
    errors_before = sweep_metrics.events.errors

    report = await scheduler.run_sweep_once(now=now, session_factory=session_factory)
    assert report.failed == [broken.id]
    assert report.completed == [healthy.id]
    assert sweep_metrics.events.errors == errors_before + 1
    # The failed event keeps its flag and is retried by the next sweep
    assert (await _reload(session_factory, broken.id)).completion_notification_sent is False

    monkeypatch.setattr(scheduler.gift_service, "auto_give", original)
    retry = await scheduler.run_sweep_once(now=now + timedelta(minutes=1), session_factory=session_factory)
    assert retry.completed == [broken.id]


@pytest.mark.anyio
async def test_overlapping_sweep_is_skipped(session_factory, db, make_user):
    owner = await make_user("Owner")
    now = _now()
    await _make_event(db, owner, now, end_date=now - timedelta(minutes=5))
    skipped_before = sweep_metrics.skipped

    first, second = await asyncio.gather(
        scheduler.run_sweep_once(now=now, session_factory=session_factory),
        scheduler.run_sweep_once(now=now, session_factory=session_factory),
    )
    assert first.skipped is False
    assert second.skipped is True
    assert len(first.completed) == 1
    assert sweep_metrics.skipped == skipped_before + 1
    assert len(await _notifications(db, owner, NotificationType.EVENT_COMPLETED)) == 1
