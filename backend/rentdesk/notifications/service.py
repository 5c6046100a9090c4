"""In-app notification persistence and realtime delivery."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List

from rentdesk.common.enums import STAFF_ROLES, NotificationType, UserStatus
from rentdesk.common.utils import as_dict
from rentdesk.core.config import settings
from rentdesk.db.prisma_client import db, prisma_session
from rentdesk.realtime.channels import Channels, Events, trigger

logger = logging.getLogger(__name__)


def _format_amount(amount: float) -> str:
    return f"{settings.rental.currency_symbol}{amount:,.2f}"


def decode_data(raw: Any) -> Any:
    if raw is None or isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def serialise_notification(record: Any) -> Dict[str, Any]:
    notification = as_dict(record)
    notification["data"] = decode_data(notification.get("data"))
    return notification


async def send_notification(
    user_id: str,
    type: NotificationType | str,
    title: str,
    message: str,
    data: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """Store a notification for ``user_id`` and push it to their channel."""

    type_value = getattr(type, "value", type)
    async with prisma_session(db) as client:
        record = await client.notification.create(
            data={
                "userId": user_id,
                "type": type_value,
                "title": title,
                "message": message,
                "data": json.dumps(data) if data else None,
            }
        )

    notification = as_dict(record)
    notification["data"] = data or None
    await trigger(
        Channels.user_notifications(user_id),
        Events.NEW_NOTIFICATION,
        {"notification": notification},
    )
    return notification


async def send_bulk_notifications(user_ids: Iterable[str], **notification: Any) -> List[Any]:
    """Send the same notification to many users; one failure does not stop the rest."""

    recipients = list(user_ids)
    results = await asyncio.gather(
        *(send_notification(user_id=uid, **notification) for uid in recipients),
        return_exceptions=True,
    )
    for uid, result in zip(recipients, results):
        if isinstance(result, Exception):
            logger.error("Failed to notify user %s: %s", uid, result)
    return list(results)


async def notify_admins(**notification: Any) -> List[Any]:
    async with prisma_session(db) as client:
        admins = await client.user.find_many(
            where={"role": {"in": sorted(STAFF_ROLES)}, "status": UserStatus.ACTIVE.value}
        )
    admin_ids = [as_dict(admin)["id"] for admin in admins]
    return await send_bulk_notifications(admin_ids, **notification)


class NotificationTemplates:
    """Title/message/data bundles for the notifications the platform sends."""

    @staticmethod
    def booking_created(booking_id: str, vehicle: str) -> Dict[str, Any]:
        return {
            "type": NotificationType.BOOKING_CREATED,
            "title": "Booking Created",
            "message": f"Your booking for {vehicle} has been created and is pending confirmation.",
            "data": {"bookingId": booking_id},
        }

    @staticmethod
    def booking_confirmed(booking_id: str, vehicle: str, start_date: str) -> Dict[str, Any]:
        return {
            "type": NotificationType.BOOKING_CONFIRMED,
            "title": "Booking Confirmed",
            "message": f"Your booking for {vehicle} has been confirmed! Pickup date: {start_date}",
            "data": {"bookingId": booking_id},
        }

    @staticmethod
    def booking_cancelled(booking_id: str, vehicle: str) -> Dict[str, Any]:
        return {
            "type": NotificationType.BOOKING_CANCELLED,
            "title": "Booking Cancelled",
            "message": f"Your booking for {vehicle} has been cancelled.",
            "data": {"bookingId": booking_id},
        }

    @staticmethod
    def booking_reminder(booking_id: str, vehicle: str, start_date: str) -> Dict[str, Any]:
        return {
            "type": NotificationType.BOOKING_REMINDER,
            "title": "Upcoming Rental Reminder",
            "message": (
                f"Reminder: Your rental of {vehicle} starts on {start_date}. "
                "Don't forget to pick up your vehicle!"
            ),
            "data": {"bookingId": booking_id},
        }

    @staticmethod
    def payment_success(booking_id: str, amount: float) -> Dict[str, Any]:
        return {
            "type": NotificationType.PAYMENT_SUCCESS,
            "title": "Payment Successful",
            "message": f"Your payment of {_format_amount(amount)} has been processed successfully.",
            "data": {"bookingId": booking_id},
        }

    @staticmethod
    def payment_failed(booking_id: str) -> Dict[str, Any]:
        return {
            "type": NotificationType.PAYMENT_FAILED,
            "title": "Payment Failed",
            "message": "Your payment could not be processed. Please try again or use a different payment method.",
            "data": {"bookingId": booking_id},
        }

    @staticmethod
    def new_chat_message(sender_name: str, conversation_id: str) -> Dict[str, Any]:
        return {
            "type": NotificationType.CHAT_MESSAGE,
            "title": "New Message",
            "message": f"{sender_name} sent you a message.",
            "data": {"conversationId": conversation_id},
        }

    @staticmethod
    def invoice_generated(invoice_id: str, invoice_number: str, total: float) -> Dict[str, Any]:
        return {
            "type": NotificationType.SYSTEM,
            "title": "Invoice Generated",
            "message": f"Invoice {invoice_number} for {_format_amount(total)} has been generated for your rental.",
            "data": {"invoiceId": invoice_id, "invoiceNumber": invoice_number},
        }

    @staticmethod
    def invoice_payment_received(
        invoice_id: str, invoice_number: str, amount: float, balance_due: float
    ) -> Dict[str, Any]:
        if balance_due <= 0:
            message = (
                f"Payment of {_format_amount(amount)} received. "
                f"Invoice {invoice_number} is now fully paid. Thank you!"
            )
        else:
            message = (
                f"Payment of {_format_amount(amount)} received for invoice {invoice_number}. "
                f"Remaining balance: {_format_amount(balance_due)}"
            )
        return {
            "type": NotificationType.PAYMENT_SUCCESS,
            "title": "Payment Received",
            "message": message,
            "data": {"invoiceId": invoice_id, "invoiceNumber": invoice_number},
        }

    @staticmethod
    def rental_completed(booking_id: str, vehicle: str) -> Dict[str, Any]:
        return {
            "type": NotificationType.SYSTEM,
            "title": "Rental Completed",
            "message": f"Your rental of {vehicle} has been completed. Thank you for choosing us!",
            "data": {"bookingId": booking_id},
        }

    @staticmethod
    def system(title: str, message: str) -> Dict[str, Any]:
        return {"type": NotificationType.SYSTEM, "title": title, "message": message, "data": {}}
