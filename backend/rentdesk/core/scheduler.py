# backend/rentdesk/core/scheduler.py
## Periodic jobs. An hourly APScheduler job reminds customers of confirmed
# rentals starting within the reminder lead window, in-app and by email.
from __future__ import annotations

import logging
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from rentdesk.common.enums import BookingStatus
from rentdesk.common.utils import as_dict, parse_datetime, utcnow, vehicle_name
from rentdesk.core.config import settings
from rentdesk.core.notifier import notify_user
from rentdesk.db.prisma_client import db, prisma_session
from rentdesk.notifications.service import NotificationTemplates, send_notification

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def _remind(client, booking, now) -> None:
    user = as_dict(booking.get("user"))
    vehicle = vehicle_name(booking.get("vehicle"))
    start = parse_datetime(booking["startDate"]).strftime("%Y-%m-%d %H:%M")
    template = NotificationTemplates.booking_reminder(booking["id"], vehicle, start)

    await send_notification(user_id=booking["userId"], **template)
    await notify_user(user.get("email"), template["title"], template["message"])
    await client.booking.update(where={"id": booking["id"]}, data={"reminderSentAt": now})


async def send_booking_reminders() -> int:
    """Remind every not-yet-reminded CONFIRMED booking starting soon; returns how many."""

    now = utcnow()
    soon = now + timedelta(hours=settings.rental.reminder_lead_hours)
    sent = 0

    async with prisma_session(db) as client:
        bookings = await client.booking.find_many(
            where={
                "status": BookingStatus.CONFIRMED.value,
                "startDate": {"gte": now, "lte": soon},
                "reminderSentAt": None,
            },
            include={"user": True, "vehicle": True},
        )

        for record in bookings:
            booking = as_dict(record)
            try:
                await _remind(client, booking, now)
            except Exception:
                logger.exception("Failed to send reminder for booking %s", booking.get("id"))
                continue
            sent += 1

    if sent:
        logger.info("Sent %d booking reminder(s)", sent)
    return sent


def start() -> None:
    scheduler.add_job(send_booking_reminders, IntervalTrigger(minutes=60), id="booking-reminders", replace_existing=True)
    scheduler.start()


def shutdown() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
