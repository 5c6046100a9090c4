"""Back-office booking routes, including the lifecycle workflow endpoint."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException

from rentdesk.auth.dependencies import get_current_user, require_role
from rentdesk.bookings import workflow
from rentdesk.bookings.service import (
    apply_transition,
    cancel_booking,
    load_booking,
    publish_booking_update,
    serialise_booking,
)
from rentdesk.common.enums import STAFF_ROLES, BookingStatus, InvoiceStatus
from rentdesk.common.utils import as_dict, coerce_number, parse_datetime, utcnow, vehicle_name
from rentdesk.core.config import settings
from rentdesk.db.prisma_client import db, prisma_session
from rentdesk.notifications.service import NotificationTemplates, send_notification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/bookings", tags=["Admin Bookings"])

_require_staff = require_role(sorted(STAFF_ROLES))


@router.get("", summary="List all bookings")
async def list_all_bookings(status: Optional[str] = None, user=Depends(get_current_user)) -> List[Dict[str, Any]]:
    _require_staff(user)
    where: Dict[str, Any] = {"status": status} if status else {}
    async with prisma_session(db) as client:
        bookings = await client.booking.find_many(
            where=where,
            include={"vehicle": True, "user": True, "invoice": True},
            order={"createdAt": "desc"},
        )
    return [serialise_booking(booking) for booking in bookings]


async def _next_invoice_number(client: Any, now) -> str:
    prefix = settings.invoice.prefix
    last = await client.invoice.find_first(
        where={"invoiceNumber": {"startswith": f"{prefix}-{now.year}"}},
        order={"createdAt": "desc"},
    )
    last_number = as_dict(last).get("invoiceNumber") if last else None
    return workflow.next_invoice_number(prefix, now.year, last_number)


async def _confirm(client, booking, data, actor_id, now):
    updated = await apply_transition(client, booking, workflow.confirm(booking, data, now, actor_id))
    start = parse_datetime(booking.get("startDate"))
    await send_notification(
        user_id=booking["userId"],
        **NotificationTemplates.booking_confirmed(
            booking["id"], vehicle_name(booking.get("vehicle")), start.strftime("%Y-%m-%d") if start else "TBC"
        ),
    )
    return updated, None


async def _collect(client, booking, data, actor_id, now):
    updated = await apply_transition(client, booking, workflow.collect(booking, data, now, actor_id))
    return updated, None


async def _complete(client, booking, data, actor_id, now):
    updated = await apply_transition(client, booking, workflow.complete(booking, data, now, actor_id))
    await send_notification(
        user_id=booking["userId"],
        **NotificationTemplates.rental_completed(booking["id"], vehicle_name(booking.get("vehicle"))),
    )
    return updated, None


async def _generate_invoice(client, booking, data, actor_id, now):
    # Guard before allocating a number so a rejected request does not consume one.
    workflow.require_status(booking, "generate-invoice")
    if booking.get("invoice"):
        raise workflow.WorkflowError("Invoice already exists for this booking")

    number = await _next_invoice_number(client, now)
    invoice_data = workflow.build_invoice(booking, data, now, actor_id, number)
    invoice = as_dict(await client.invoice.create(data=invoice_data))

    advance = coerce_number(invoice_data.get("advancePaid"))
    if advance > 0:
        await client.invoicepayment.create(
            data={
                "invoiceId": invoice["id"],
                "amount": advance,
                "method": booking.get("advancePaymentMethod") or "CASH",
                "notes": "Advance payment collected at booking confirmation",
                "receivedBy": actor_id,
                "paidAt": booking.get("advancePaidAt") or booking.get("confirmedAt") or now,
            }
        )

    _, next_status = workflow.TRANSITIONS["generate-invoice"]
    updated = await apply_transition(
        client, booking, workflow.Transition(booking_updates={"status": next_status.value})
    )
    await send_notification(
        user_id=booking["userId"],
        **NotificationTemplates.invoice_generated(invoice["id"], number, invoice_data["totalAmount"]),
    )
    return updated, invoice


async def _record_payment(client, booking, data, actor_id, now):
    invoice = as_dict(workflow.require_invoice(booking))
    if not data.get("amount") or not data.get("method"):
        raise workflow.WorkflowError("Payment amount and method are required")
    amount = round(coerce_number(data["amount"]), 2)
    updates = workflow.apply_payment(invoice, amount, now)

    await client.invoicepayment.create(
        data={
            "invoiceId": invoice["id"],
            "amount": amount,
            "method": data["method"],
            "reference": data.get("reference") or None,
            "notes": data.get("notes") or None,
            "receivedBy": actor_id,
            "paidAt": now,
        }
    )
    updated_invoice = as_dict(await client.invoice.update(where={"id": invoice["id"]}, data=updates))

    if updates["status"] == InvoiceStatus.PAID.value:
        updated = await apply_transition(
            client, booking, workflow.Transition(booking_updates={"status": BookingStatus.PAID.value})
        )
    else:
        updated = await load_booking(client, booking["id"])

    await send_notification(
        user_id=booking["userId"],
        **NotificationTemplates.invoice_payment_received(
            invoice["id"], invoice.get("invoiceNumber"), amount, updates["balanceDue"]
        ),
    )
    return updated, updated_invoice


async def _issue_invoice(client, booking, data, actor_id, now):
    invoice = as_dict(workflow.require_invoice(booking))
    updated_invoice = await client.invoice.update(
        where={"id": invoice["id"]}, data=workflow.issue_invoice(invoice, now)
    )
    updated = await load_booking(client, booking["id"])
    return updated, as_dict(updated_invoice)


async def _cancel(client, booking, data, actor_id, now):
    updated = await cancel_booking(client, booking, {"id": actor_id}, staff=True)
    return updated, None


_HANDLERS = {
    "confirm": _confirm,
    "collect": _collect,
    "complete": _complete,
    "generate-invoice": _generate_invoice,
    "record-payment": _record_payment,
    "issue-invoice": _issue_invoice,
    "cancel": _cancel,
}


@router.post("/{booking_id}/workflow", summary="Advance a booking through its lifecycle")
async def run_workflow_action(
    booking_id: str,
    payload: Dict[str, Any] = Body(...),
    user=Depends(get_current_user),
) -> Dict[str, Any]:
    _require_staff(user)
    data = dict(payload)
    action = data.pop("action", None)
    handler = _HANDLERS.get(action)
    actor_id = as_dict(user)["id"]

    async with prisma_session(db) as client:
        booking = await load_booking(client, booking_id)
        if handler is None:
            raise HTTPException(status_code=400, detail="Invalid action")
        try:
            updated, invoice = await handler(client, booking, data, actor_id, utcnow())
        except workflow.WorkflowError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.message)
        except (TypeError, ValueError):
            logger.warning("Rejected malformed %s payload for booking %s", action, booking_id, exc_info=True)
            raise HTTPException(status_code=400, detail="Invalid workflow payload")

    logger.info("Booking %s: %s by %s", booking_id, action, actor_id)
    if action != "cancel":
        await publish_booking_update(updated, f"Booking {action}")
    return {"success": True, "booking": updated, "invoice": invoice}
