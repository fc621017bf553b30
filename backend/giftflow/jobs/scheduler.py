"""Event lifecycle sweep.

Each sweep looks at every event with an unfired trigger and fires the ones
whose instant falls in ``(since, now]``, where ``since`` is the event's own
``last_swept_at`` watermark, or its creation time before the first sweep,
bounded by a catch-up limit. Triggers:

* starting soon: ``start_date - lead``
* completed: ``end_date``; also auto-gives reserved gifts and sends
  acknowledgements to members
* gifters revealed: ``end_date + delay``, anonymous events only

Every one-shot flag is claimed with a conditional UPDATE; only the sweep that
flips it sends the notification.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from time import perf_counter

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from giftflow.core.clock import as_utc, utcnow
from giftflow.core.config import settings
from giftflow.core.locks import KeyedLocks
from giftflow.core.sweep_metrics import sweep_metrics
from giftflow.db.session import async_session_factory
from giftflow.models.models import EntityModel, Event, Gift, NotificationType, User
from giftflow.services import gifts as gift_service
from giftflow.services import notifications
from giftflow.services.users import get_by_telegram_id, users_by_telegram_ids

logger = logging.getLogger("giftflow.scheduler")

JOB_ID = "event_lifecycle_sweep"

_sweep_lock = asyncio.Lock()
event_locks = KeyedLocks()
scheduler: AsyncIOScheduler | None = None


@dataclass
class SweepReport:
    now: datetime
    skipped: bool = False
    events_checked: int = 0
    starting_soon: list[int] = field(default_factory=list)
    completed: list[int] = field(default_factory=list)
    revealed: list[int] = field(default_factory=list)
    auto_given: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


def _lead() -> timedelta:
    return timedelta(hours=settings.event_starting_soon_lead_hours)


def _reveal_delay() -> timedelta:
    return timedelta(hours=settings.event_gifters_reveal_delay_hours)


def _catchup_floor(now: datetime) -> datetime:
    return now - timedelta(seconds=settings.event_sweep_max_catchup_seconds)


def window_start(event: Event, now: datetime) -> datetime:
    since = (
        as_utc(event.last_swept_at)
        or as_utc(event.created_at)
        or now - timedelta(seconds=settings.event_sweep_interval_seconds)
    )
    return max(since, _catchup_floor(now))


def is_due(trigger: datetime | None, since: datetime, now: datetime) -> bool:
    return trigger is not None and since < trigger <= now


def _candidates_filter(now: datetime):
    floor = _catchup_floor(now)
    lead = _lead()
    delay = _reveal_delay()
    return or_(
        and_(
            Event.start_notification_sent.is_(False),
            Event.start_date.is_not(None),
            Event.start_date > floor + lead,
            Event.start_date <= now + lead,
        ),
        and_(
            Event.completion_notification_sent.is_(False),
            Event.end_date.is_not(None),
            Event.end_date > floor,
            Event.end_date <= now,
        ),
        and_(
            Event.is_anonymous.is_(True),
            Event.gifters_revealed_at.is_(None),
            Event.end_date.is_not(None),
            Event.end_date > floor - delay,
            Event.end_date <= now - delay,
        ),
    )


async def _claim(db: AsyncSession, event_id: int, guard, **values) -> bool:
    result = await db.execute(
        update(Event)
        .where(Event.id == event_id, guard)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _send_acknowledgements(db: AsyncSession, event: Event, owner: User | None) -> None:
    template = event.acknowledgement_message or ""
    for member in event.members:
        text = template.replace("{name}", member.display_name).replace("{event}", event.name)
        await notifications.notify(
            db,
            recipient=member,
            sender=owner,
            type=NotificationType.EVENT_THANK_YOU,
            message=text,
            entity_id=event.id,
            entity_model=EntityModel.EVENT,
        )


async def _process_event(
    event_id: int,
    now: datetime,
    session_factory: async_sessionmaker[AsyncSession],
    report: SweepReport,
) -> None:
    async with event_locks.hold(event_id), session_factory() as db:
        result = await db.execute(
            select(Event)
            .options(selectinload(Event.members), selectinload(Event.gifts))
            .where(Event.id == event_id)
        )
        event = result.scalar_one_or_none()
        if event is None:
            return
        since = window_start(event, now)
        start = as_utc(event.start_date)
        end = as_utc(event.end_date)

        fired_start = False
        if not event.start_notification_sent and start is not None and is_due(start - _lead(), since, now):
            fired_start = await _claim(
                db, event.id, Event.start_notification_sent.is_(False), start_notification_sent=True
            )

        fired_completed = False
        given: list[Gift] = []
        if not event.completion_notification_sent and is_due(end, since, now):
            fired_completed = await _claim(
                db,
                event.id,
                Event.completion_notification_sent.is_(False),
                completion_notification_sent=True,
            )
            if fired_completed:
                given = await gift_service.auto_give(db, list(event.gifts))

        fired_reveal = False
        if (
            event.is_anonymous
            and event.gifters_revealed_at is None
            and end is not None
            and is_due(end + _reveal_delay(), since, now)
        ):
            if event.gifts:
                fired_reveal = await _claim(
                    db, event.id, Event.gifters_revealed_at.is_(None), gifters_revealed_at=now
                )
            else:
                # Left unset: a gift added later does not bring the reveal back
                logger.info("Reveal skipped, event has no gifts id=%s", event.id)

        await db.execute(
            update(Event)
            .where(Event.id == event.id)
            .values(last_swept_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if not (fired_start or fired_completed or fired_reveal):
            return
        owner = await get_by_telegram_id(db, event.owner_id)

        if fired_start:
            report.starting_soon.append(event.id)
            message, localized = notifications.render(
                NotificationType.EVENT_STARTING_SOON,
                event=event.name,
                start=start.strftime("%d.%m.%Y %H:%M UTC"),
            )
            await notifications.notify(
                db,
                recipient=owner,
                type=NotificationType.EVENT_STARTING_SOON,
                message=message,
                message_localized=localized,
                entity_id=event.id,
                entity_model=EntityModel.EVENT,
            )

        if fired_completed:
            report.completed.append(event.id)
            message, localized = notifications.render(NotificationType.EVENT_COMPLETED, event=event.name)
            await notifications.notify(
                db,
                recipient=owner,
                type=NotificationType.EVENT_COMPLETED,
                message=message,
                message_localized=localized,
                entity_id=event.id,
                entity_model=EntityModel.EVENT,
            )
            gift_owners = await users_by_telegram_ids(db, (gift.owner_id for gift in given))
            reservers = await users_by_telegram_ids(db, (gift.reserved_by for gift in given))
            for gift in given:
                report.auto_given.append(gift.id)
                await gift_service.notify_gift_given(
                    db, gift, gift_owners.get(gift.owner_id), reservers.get(gift.reserved_by)
                )
            if event.send_acknowledgements:
                await _send_acknowledgements(db, event, owner)

        if fired_reveal:
            report.revealed.append(event.id)
            message, localized = notifications.render(NotificationType.EVENT_GIFTERS_REVEALED, event=event.name)
            await notifications.notify(
                db,
                recipient=owner,
                type=NotificationType.EVENT_GIFTERS_REVEALED,
                message=message,
                message_localized=localized,
                entity_id=event.id,
                entity_model=EntityModel.EVENT,
            )


async def run_sweep_once(
    now: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> SweepReport:
    """Run one sweep. A call made while another sweep is running is skipped."""
    now = as_utc(now) or utcnow()
    report = SweepReport(now=now)
    if _sweep_lock.locked():
        logger.warning("Sweep skipped, previous sweep still running")
        sweep_metrics.record_skip()
        report.skipped = True
        return report

    session_factory = session_factory or async_session_factory
    async with _sweep_lock:
        started = perf_counter()
        async with session_factory() as db:
            result = await db.execute(select(Event.id).where(_candidates_filter(now)).order_by(Event.id))
            event_ids = list(result.scalars().all())
        report.events_checked = len(event_ids)

        for event_id in event_ids:
            event_started = perf_counter()
            try:
                await _process_event(event_id, now, session_factory, report)
            except Exception:
                logger.exception("Sweep failed for event id=%s", event_id)
                report.failed.append(event_id)
                sweep_metrics.record_event((perf_counter() - event_started) * 1000.0, True)
            else:
                sweep_metrics.record_event((perf_counter() - event_started) * 1000.0, False)

        sweep_metrics.record_run((perf_counter() - started) * 1000.0, bool(report.failed))
    logger.info(
        "Sweep done events=%d starting_soon=%d completed=%d revealed=%d failed=%d",
        report.events_checked,
        len(report.starting_soon),
        len(report.completed),
        len(report.revealed),
        len(report.failed),
    )
    return report


def start_scheduler() -> AsyncIOScheduler:
    global scheduler
    if scheduler is not None and scheduler.running:
        return scheduler
    scheduler = AsyncIOScheduler(
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 30},
        timezone="UTC",
    )
    scheduler.add_job(
        run_sweep_once,
        trigger="interval",
        seconds=settings.event_sweep_interval_seconds,
        id=JOB_ID,
        name="Event lifecycle sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started interval=%ss", settings.event_sweep_interval_seconds)
    return scheduler


def shutdown_scheduler() -> None:
    global scheduler
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None
