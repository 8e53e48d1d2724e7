from datetime import datetime, timedelta

import structlog
from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from agrirent.config import settings
from agrirent.database import async_session
from agrirent.errors import BookingError
from agrirent.metrics import SCHEDULER_JOB_RUNS
from agrirent.models.booking import Booking
from agrirent.models.enums import BookingStatus
from agrirent.models.webhook_event import ProcessedWebhookEvent
from agrirent.services.booking_workflow import auto_cancel_booking
from agrirent.services.events import EventEmitter
from agrirent.services.otp import OTPAuthority
from agrirent.utils.timeutils import ensure_utc, utcnow

logger = structlog.get_logger()

SCHEDULER_BATCH_SIZE = 100

scheduler = AsyncIOScheduler()


def purge_expired_otps(otp: OTPAuthority) -> None:
    """Drop expired codes. Verification re-checks expiry, so this only bounds memory."""
    removed = otp.purge_expired()
    SCHEDULER_JOB_RUNS.labels(job_name="purge_expired_otps", status="success").inc()
    if removed:
        logger.info("expired_otps_purged", count=removed)


def _stale_reason(booking: Booking, now: datetime) -> str | None:
    status = BookingStatus(booking.status)
    if status == BookingStatus.REQUESTED:
        cutoff = now - timedelta(hours=settings.REQUEST_ACCEPTANCE_TIMEOUT_HOURS)
        if ensure_utc(booking.created_at) < cutoff:
            return "Owner did not respond to the request in time"
    elif status == BookingStatus.OWNER_CONFIRMED:
        deadline = ensure_utc(booking.arrival_deadline_at)
        if deadline is not None and deadline < now:
            return "Machine did not arrive before the deadline"
    return None


async def cancel_stale_bookings(
    db: AsyncSession,
    otp: OTPAuthority | None = None,
    emitter: EventEmitter | None = None,
    now: datetime | None = None,
) -> int:
    """Auto-cancel unanswered requests and confirmed bookings past their arrival deadline.

    Each booking is committed on its own so one failure does not roll back the batch.
    """
    now = now or utcnow()
    request_cutoff = now - timedelta(hours=settings.REQUEST_ACCEPTANCE_TIMEOUT_HOURS)
    result = await db.execute(
        select(Booking.id)
        .where(
            or_(
                and_(Booking.status == BookingStatus.REQUESTED, Booking.created_at < request_cutoff),
                and_(
                    Booking.status == BookingStatus.OWNER_CONFIRMED,
                    Booking.arrival_deadline_at.is_not(None),
                    Booking.arrival_deadline_at < now,
                ),
            )
        )
        .limit(SCHEDULER_BATCH_SIZE)
    )
    booking_ids = list(result.scalars().all())

    cancelled = 0
    for booking_id in booking_ids:
        try:
            booking = await db.get(Booking, booking_id)
            reason = _stale_reason(booking, now) if booking is not None else None
            if reason is None:
                continue
            await auto_cancel_booking(db, booking_id, reason, otp=otp, emitter=emitter, now=now)
            cancelled += 1
            SCHEDULER_JOB_RUNS.labels(job_name="auto_cancel_stale_bookings", status="success").inc()
            logger.info("booking_auto_cancelled", booking_id=str(booking_id), reason=reason)
        except BookingError as e:
            # Moved on between the query and the lock
            await db.rollback()
            logger.info("auto_cancel_skipped", booking_id=str(booking_id), reason=e.message)
        except Exception as e:
            await db.rollback()
            SCHEDULER_JOB_RUNS.labels(job_name="auto_cancel_stale_bookings", status="error").inc()
            logger.exception(
                "auto_cancel_failed",
                booking_id=str(booking_id),
                error_type=type(e).__name__,
            )
    return cancelled


async def auto_cancel_stale_bookings(otp: OTPAuthority | None = None, emitter: EventEmitter | None = None) -> None:
    async with async_session() as db:
        await cancel_stale_bookings(db, otp=otp, emitter=emitter)


async def cleanup_old_webhook_events() -> None:
    """Delete processed webhook events older than 7 days."""
    async with async_session() as db:
        cutoff = utcnow() - timedelta(days=7)
        result = await db.execute(
            delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < cutoff)
        )
        count = result.rowcount
        await db.commit()
        if count:
            logger.info("webhook_events_cleaned_up", deleted_count=count)


def _job_error_listener(event):
    if event.exception:
        logger.error(
            "scheduler_job_failed",
            job_id=event.job_id,
            error=str(event.exception),
        )


def start_scheduler(otp: OTPAuthority, emitter: EventEmitter | None = None) -> None:
    """Register the recurring jobs and start the scheduler."""
    scheduler.add_job(
        purge_expired_otps,
        "interval",
        seconds=settings.OTP_SWEEP_INTERVAL_SECONDS,
        kwargs={"otp": otp},
        id="purge_expired_otps",
        replace_existing=True,
        misfire_grace_time=60,
    )
    scheduler.add_job(
        auto_cancel_stale_bookings,
        "interval",
        minutes=10,
        kwargs={"otp": otp, "emitter": emitter},
        id="auto_cancel_stale_bookings",
        replace_existing=True,
        misfire_grace_time=300,
    )
    scheduler.add_job(
        cleanup_old_webhook_events,
        "cron",
        hour=3,
        minute=0,
        id="cleanup_webhook_events",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.add_listener(_job_error_listener, EVENT_JOB_ERROR)

    scheduler.start()
    logger.info("scheduler_started")


def stop_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
