"""Booking persistence helpers shared by the customer and admin routes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import HTTPException

from rentdesk.bookings import workflow
from rentdesk.common.enums import ACTIVE_BOOKING_STATUSES
from rentdesk.common.utils import as_dict, vehicle_name
from rentdesk.notifications.service import NotificationTemplates, notify_admins, send_notification
from rentdesk.realtime.channels import Channels, Events, trigger

logger = logging.getLogger(__name__)

BOOKING_INCLUDE: Dict[str, Any] = {
    "vehicle": True,
    "user": True,
    "packages": {"include": {"package": True}},
    "invoice": True,
}


def _public(record: Any) -> Dict[str, Any] | None:
    if record is None:
        return None
    data = as_dict(record)
    data.pop("hashedPassword", None)
    return data


def serialise_booking(record: Any) -> Dict[str, Any] | None:
    """Booking as a plain dict with nested relations flattened to dicts."""

    if record is None:
        return None
    booking = as_dict(record)
    if booking.get("user") is not None:
        booking["user"] = _public(booking["user"])
    for key in ("vehicle", "invoice"):
        if booking.get(key) is not None:
            booking[key] = as_dict(booking[key])
    if booking.get("packages") is not None:
        packages = []
        for item in booking["packages"]:
            entry = as_dict(item)
            if entry.get("package") is not None:
                entry["package"] = as_dict(entry["package"])
            packages.append(entry)
        booking["packages"] = packages
    return booking


async def load_booking(client: Any, booking_id: str, include: Dict[str, Any] | None = None) -> Dict[str, Any]:
    record = await client.booking.find_unique(where={"id": booking_id}, include=include or BOOKING_INCLUDE)
    if not record:
        raise HTTPException(status_code=404, detail="Booking not found")
    return serialise_booking(record)


async def find_conflicting_booking(
    client: Any,
    vehicle_id: str,
    start: datetime,
    end: datetime,
    exclude_id: Optional[str] = None,
) -> Any:
    """First active booking of ``vehicle_id`` overlapping ``[start, end)``."""

    where: Dict[str, Any] = {
        "vehicleId": vehicle_id,
        "status": {"in": ACTIVE_BOOKING_STATUSES},
        "startDate": {"lt": end},
        "endDate": {"gt": start},
    }
    if exclude_id:
        where["id"] = {"not": exclude_id}
    return await client.booking.find_first(where=where)


async def set_vehicle_availability(client: Any, vehicle_id: str, available: bool) -> None:
    await client.vehicle.update(where={"id": vehicle_id}, data={"available": available})


async def apply_transition(client: Any, booking: Dict[str, Any], transition: workflow.Transition) -> Dict[str, Any]:
    """Persist a workflow transition and its vehicle availability side effect."""

    updated = await client.booking.update(
        where={"id": booking["id"]},
        data=transition.booking_updates,
        include=BOOKING_INCLUDE,
    )
    if transition.vehicle_available is not None:
        await set_vehicle_availability(client, booking["vehicleId"], transition.vehicle_available)
    return serialise_booking(updated)


async def cancel_booking(client: Any, booking: Dict[str, Any], actor: Dict[str, Any], staff: bool) -> Dict[str, Any]:
    """Cancel ``booking`` on behalf of ``actor`` and tell everyone who needs to know."""

    transition = workflow.cancel(booking, staff=staff)
    updated = await apply_transition(client, booking, transition)

    vehicle = vehicle_name(booking.get("vehicle"))
    await send_notification(
        user_id=booking["userId"],
        **NotificationTemplates.booking_cancelled(booking["id"], vehicle),
    )

    if not staff:
        customer = booking.get("user") or {}
        who = customer.get("name") or customer.get("email") or "A customer"
        await notify_admins(
            type="BOOKING_CANCELLED",
            title="Booking Cancelled by User",
            message=f"{who} cancelled their booking for {vehicle}.",
            data={"bookingId": booking["id"], "userId": booking["userId"]},
        )

    await publish_booking_update(updated, "Booking cancelled")
    logger.info("Booking %s cancelled by %s", booking["id"], actor.get("id"))
    return updated


async def publish_booking_update(booking: Dict[str, Any], message: str) -> None:
    status = booking.get("status")
    await trigger(
        Channels.ADMIN_BOOKINGS,
        Events.BOOKING_UPDATED,
        {"bookingId": booking.get("id"), "status": getattr(status, "value", status), "message": message},
    )
