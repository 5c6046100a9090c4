"""Invoice routes.

Customers see the invoices of their own bookings and can pay the outstanding
balance online through Stripe Checkout; staff list every invoice. Invoices are
created and paid off-line through the booking workflow endpoint.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request

from rentdesk.auth.dependencies import get_current_user, require_role
from rentdesk.bookings import workflow
from rentdesk.common.enums import STAFF_ROLES, BookingStatus, InvoiceStatus
from rentdesk.common.utils import as_dict, is_staff, money, optional_money, parse_datetime, utcnow
from rentdesk.core.config import settings
from rentdesk.db.prisma_client import db, prisma_session
from rentdesk.notifications.service import NotificationTemplates, send_notification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["Invoices"])
admin_router = APIRouter(prefix="/admin/invoices", tags=["Admin Invoices"])

_require_staff = require_role(sorted(STAFF_ROLES))

if settings.stripe_secret_key:
    stripe.api_key = settings.stripe_secret_key

_MONEY_FIELDS = (
    "dailyRate",
    "rentalAmount",
    "extraMileageRate",
    "extraMileageCost",
    "packageCharges",
    "fuelCharge",
    "damageCharge",
    "lateReturnCharge",
    "otherCharges",
    "subtotal",
    "discountAmount",
    "taxRate",
    "taxAmount",
    "advancePaid",
)

INVOICE_INCLUDE: Dict[str, Any] = {"booking": {"include": {"vehicle": True, "user": True}}, "payments": True}


def _sort_key(payment: Dict[str, Any]):
    return parse_datetime(payment.get("paidAt") or payment.get("createdAt"))


def serialise_invoice(record: Any) -> Dict[str, Any]:
    invoice = as_dict(record)
    for key in _MONEY_FIELDS:
        if key in invoice:
            invoice[key] = optional_money(invoice[key])
    for key in ("totalAmount", "amountPaid", "balanceDue"):
        invoice[key] = money(invoice.get(key))

    if invoice.get("payments") is not None:
        payments = [
            {**as_dict(payment), "amount": money(as_dict(payment).get("amount"))}
            for payment in invoice["payments"]
        ]
        payments.sort(key=_sort_key, reverse=True)
        invoice["payments"] = payments

    booking = invoice.get("booking")
    if booking is not None:
        booking = as_dict(booking)
        if booking.get("user") is not None:
            user = as_dict(booking["user"])
            user.pop("hashedPassword", None)
            booking["user"] = user
        if booking.get("vehicle") is not None:
            booking["vehicle"] = as_dict(booking["vehicle"])
        invoice["booking"] = booking
    return invoice


def _owner_id(invoice: Dict[str, Any]) -> Optional[str]:
    return (invoice.get("booking") or {}).get("userId")


async def _load_invoice(client: Any, invoice_id: str) -> Dict[str, Any]:
    record = await client.invoice.find_unique(where={"id": invoice_id}, include=INVOICE_INCLUDE)
    if not record:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return serialise_invoice(record)


@router.get("", summary="List the caller's invoices")
async def list_my_invoices(user=Depends(get_current_user)) -> List[Dict[str, Any]]:
    async with prisma_session(db) as client:
        bookings = await client.booking.find_many(where={"userId": as_dict(user)["id"]})
        booking_ids = [as_dict(booking)["id"] for booking in bookings]
        if not booking_ids:
            return []
        invoices = await client.invoice.find_many(
            where={"bookingId": {"in": booking_ids}},
            include={"booking": {"include": {"vehicle": True}}, "payments": True},
            order={"createdAt": "desc"},
        )
    return [serialise_invoice(invoice) for invoice in invoices]


@router.get("/{invoice_id}", summary="Retrieve an invoice")
async def get_invoice(invoice_id: str, user=Depends(get_current_user)) -> Dict[str, Any]:
    async with prisma_session(db) as client:
        invoice = await _load_invoice(client, invoice_id)
    if not is_staff(user) and _owner_id(invoice) != as_dict(user)["id"]:
        raise HTTPException(status_code=403, detail="Forbidden")
    return invoice


@router.post("/{invoice_id}/pay/online", summary="Start a Stripe Checkout session for the balance")
async def create_checkout_session(invoice_id: str, user=Depends(get_current_user)) -> Dict[str, Any]:
    async with prisma_session(db) as client:
        invoice = await _load_invoice(client, invoice_id)
    if not is_staff(user) and _owner_id(invoice) != as_dict(user)["id"]:
        raise HTTPException(status_code=403, detail="Unauthorized to pay invoice")

    status = getattr(invoice.get("status"), "value", invoice.get("status"))
    balance = invoice["balanceDue"]
    if status in (InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value) or balance <= 0:
        raise HTTPException(status_code=400, detail="Invoice has no outstanding balance")

    number = invoice.get("invoiceNumber") or invoice_id
    try:
        session = stripe.checkout.Session.create(
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": "lkr",
                        "product_data": {"name": f"Invoice {number}"},
                        "unit_amount": int(round(balance * 100)),
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=f"{settings.public_url}/invoices/{invoice_id}?payment=success",
            cancel_url=f"{settings.public_url}/invoices/{invoice_id}?payment=cancelled",
            metadata={"invoice_id": invoice_id, "booking_id": invoice.get("bookingId")},
        )
    except stripe.StripeError:
        logger.exception("Stripe checkout failed for invoice %s", invoice_id)
        raise HTTPException(status_code=502, detail="Payment provider unavailable")

    return {"checkout_url": session.get("url"), "amount": balance}


@admin_router.get("", summary="List all invoices")
async def list_all_invoices(status: Optional[InvoiceStatus] = None, user=Depends(get_current_user)) -> List[Dict[str, Any]]:
    _require_staff(user)
    where: Dict[str, Any] = {"status": status.value} if status else {}
    async with prisma_session(db) as client:
        invoices = await client.invoice.find_many(
            where=where,
            include=INVOICE_INCLUDE,
            order={"createdAt": "desc"},
        )
    return [serialise_invoice(invoice) for invoice in invoices]


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


async def record_online_payment(client: Any, invoice_id: str, amount: float, reference: str) -> Optional[Dict[str, Any]]:
    """Apply a completed checkout to its invoice; returns ``None`` when nothing changed."""

    invoice = await client.invoice.find_unique(where={"id": invoice_id}, include={"booking": True})
    if not invoice:
        logger.warning("Checkout %s refers to unknown invoice %s", reference, invoice_id)
        return None
    invoice = as_dict(invoice)

    # One payment row per checkout session.
    if await client.invoicepayment.count(where={"invoiceId": invoice_id, "reference": reference}):
        return None
    status = getattr(invoice.get("status"), "value", invoice.get("status"))
    if status in (InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value):
        logger.warning("Checkout %s arrived for %s invoice %s", reference, status, invoice_id)
        return None

    now = utcnow()
    updates = workflow.apply_payment(invoice, amount, now)
    await client.invoicepayment.create(
        data={
            "invoiceId": invoice_id,
            "amount": amount,
            "method": "CARD",
            "reference": reference,
            "notes": "Stripe Checkout",
            "paidAt": now,
        }
    )
    updated = as_dict(await client.invoice.update(where={"id": invoice_id}, data=updates))
    if updates["status"] == InvoiceStatus.PAID.value:
        await client.booking.update(where={"id": invoice["bookingId"]}, data={"status": BookingStatus.PAID.value})

    booking = as_dict(invoice.get("booking"))
    if booking.get("userId"):
        await send_notification(
            user_id=booking["userId"],
            **NotificationTemplates.invoice_payment_received(
                invoice_id, invoice.get("invoiceNumber"), amount, updates["balanceDue"]
            ),
        )
    return updated


@router.post("/stripe-webhook", summary="Stripe webhook for completed checkouts")
async def stripe_webhook(request: Request) -> Dict[str, Any]:
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=503, detail="Stripe webhook is not configured")

    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
    except (ValueError, stripe.SignatureVerificationError):
        raise HTTPException(status_code=400, detail="Invalid signature")

    if _field(event, "type") == "checkout.session.completed":
        session = _field(_field(event, "data"), "object")
        invoice_id = _field(_field(session, "metadata"), "invoice_id")
        amount_total = _field(session, "amount_total")
        if invoice_id and amount_total:
            async with prisma_session(db) as client:
                await record_online_payment(client, invoice_id, round(amount_total / 100, 2), _field(session, "id"))
            logger.info("Recorded online payment for invoice %s", invoice_id)

    return {"received": True}
