"""Booking lifecycle rules.

Every admin workflow action is a guarded transition: the booking has to be in
the expected predecessor status, otherwise :class:`WorkflowError` is raised
and the route answers with HTTP 400. Each action returns the field updates to
persist; the routes own the database writes and the notifications.

    PENDING -> CONFIRMED -> COLLECTED -> COMPLETED -> INVOICED -> PAID
    CANCELLED from PENDING, CONFIRMED or COLLECTED
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from rentdesk.common.enums import BookingStatus, FuelLevel, InvoiceStatus
from rentdesk.common.utils import coerce_number, parse_datetime, rental_days
from rentdesk.core.config import settings


class WorkflowError(Exception):
    """Raised when a workflow action is not allowed for a booking."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


ACTIONS = (
    "confirm",
    "collect",
    "complete",
    "generate-invoice",
    "record-payment",
    "issue-invoice",
    "cancel",
)

# action -> (required status, resulting status)
TRANSITIONS: Dict[str, tuple[BookingStatus, BookingStatus]] = {
    "confirm": (BookingStatus.PENDING, BookingStatus.CONFIRMED),
    "collect": (BookingStatus.CONFIRMED, BookingStatus.COLLECTED),
    "complete": (BookingStatus.COLLECTED, BookingStatus.COMPLETED),
    "generate-invoice": (BookingStatus.COMPLETED, BookingStatus.INVOICED),
}

_TRANSITION_ERRORS = {
    "confirm": "Booking can only be confirmed from PENDING status",
    "collect": "Booking must be CONFIRMED before collection",
    "complete": "Booking must be COLLECTED before completion",
    "generate-invoice": "Booking must be COMPLETED before generating invoice",
}

NON_CANCELLABLE = frozenset(
    {
        BookingStatus.COMPLETED.value,
        BookingStatus.INVOICED.value,
        BookingStatus.PAID.value,
        BookingStatus.CANCELLED.value,
    }
)
CUSTOMER_CANCELLABLE = frozenset({BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value})


@dataclass
class Transition:
    """Outcome of a workflow action."""

    booking_updates: Dict[str, Any] = field(default_factory=dict)
    vehicle_available: Optional[bool] = None


def _status(booking: Dict[str, Any]) -> str:
    status = booking.get("status")
    return getattr(status, "value", status)


def require_status(booking: Dict[str, Any], action: str) -> None:
    expected, _ = TRANSITIONS[action]
    if _status(booking) != expected.value:
        raise WorkflowError(_TRANSITION_ERRORS[action])


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _charge(data: Dict[str, Any], key: str) -> float:
    return round(_optional_float(data.get(key)) or 0.0, 2)


def _combine(day: Any, time: Any) -> Optional[datetime]:
    if not day or not time:
        return None
    return parse_datetime(f"{day}T{time}:00")


def free_mileage_for(days: int) -> int:
    return days * settings.rental.free_mileage_per_day


def confirm(booking: Dict[str, Any], data: Dict[str, Any], now: datetime, actor_id: str) -> Transition:
    require_status(booking, "confirm")

    advance_paid = bool(data.get("advancePaid"))
    free_mileage = _optional_int(data.get("freeMileage"))
    if free_mileage is None:
        free_mileage = free_mileage_for(rental_days(booking.get("startDate"), booking.get("endDate")))
    rate = _optional_float(data.get("extraMileageRate"))
    if rate is None:
        rate = settings.rental.extra_mileage_rate

    return Transition(
        booking_updates={
            "status": BookingStatus.CONFIRMED.value,
            "confirmedAt": now,
            "confirmedBy": actor_id,
            "advanceAmount": _optional_float(data.get("advanceAmount")),
            "advancePaid": advance_paid,
            "advancePaidAt": now if advance_paid else None,
            "advancePaymentMethod": data.get("advancePaymentMethod") or None,
            "confirmationNotes": data.get("confirmationNotes") or None,
            "freeMileage": free_mileage,
            "extraMileageRate": rate,
        }
    )


def collect(booking: Dict[str, Any], data: Dict[str, Any], now: datetime, actor_id: str) -> Transition:
    require_status(booking, "collect")

    odometer = _optional_int(data.get("collectionOdometer"))
    if odometer is None:
        raise WorkflowError("Collection odometer reading is required")
    if odometer < 0:
        raise WorkflowError("Odometer readings cannot be negative")

    return Transition(
        booking_updates={
            "status": BookingStatus.COLLECTED.value,
            "collectedAt": now,
            "collectionOdometer": odometer,
            "collectionFuelLevel": data.get("collectionFuelLevel") or FuelLevel.FULL.value,
            "collectionNotes": data.get("collectionNotes") or None,
            "collectedBy": actor_id,
        },
        vehicle_available=False,
    )


def package_charges_for(packages: Iterable[Dict[str, Any]], days: int) -> float:
    """Charge each attached package its flat base price, or its daily price for ``days``."""

    total = 0.0
    for booking_package in packages:
        package = booking_package.get("package") or {}
        base_price = package.get("basePrice")
        per_day = package.get("pricePerDay")
        if base_price:
            total += coerce_number(base_price)
        elif per_day:
            total += coerce_number(per_day) * days
    return round(total, 2)


def advance_credit(booking: Dict[str, Any]) -> float:
    """Advance amount that counts toward the bill; only when it was actually paid."""

    if not booking.get("advancePaid"):
        return 0.0
    return round(coerce_number(booking.get("advanceAmount")), 2)


def complete(booking: Dict[str, Any], data: Dict[str, Any], now: datetime, actor_id: str) -> Transition:
    require_status(booking, "complete")

    return_odometer = _optional_int(data.get("returnOdometer"))
    if return_odometer is None:
        raise WorkflowError("Return odometer reading is required")
    collection_odometer = int(booking.get("collectionOdometer") or 0)
    if return_odometer < collection_odometer:
        raise WorkflowError("Return odometer cannot be lower than the collection reading")

    actual_start = (
        _combine(data.get("actualStartDate"), data.get("actualStartTime"))
        or parse_datetime(booking.get("collectedAt"))
        or parse_datetime(booking.get("startDate"))
    )
    actual_end = _combine(data.get("actualEndDate"), data.get("actualEndTime")) or now
    days = rental_days(actual_start, actual_end)

    vehicle = booking.get("vehicle") or {}
    base_amount = round(coerce_number(vehicle.get("pricePerDay")) * days, 2)

    total_mileage = return_odometer - collection_odometer
    free_mileage = free_mileage_for(days)
    extra_mileage = max(0, total_mileage - free_mileage)
    rate = coerce_number(booking.get("extraMileageRate")) or settings.rental.extra_mileage_rate
    extra_mileage_cost = round(extra_mileage * rate, 2)

    fuel_charge = _charge(data, "fuelCharge")
    damage_charge = _charge(data, "damageCharge")
    late_return_charge = _charge(data, "lateReturnCharge")
    other_charges = _charge(data, "otherCharges")
    package_charges = package_charges_for(booking.get("packages") or [], days)
    discount = _charge(data, "discountAmount")

    additional = extra_mileage_cost + fuel_charge + damage_charge + late_return_charge + other_charges + package_charges
    final_amount = round(base_amount + additional - discount, 2)
    balance_due = round(final_amount - advance_credit(booking), 2)

    return Transition(
        booking_updates={
            "status": BookingStatus.COMPLETED.value,
            "startDate": actual_start,
            "endDate": actual_end,
            "returnedAt": now,
            "returnOdometer": return_odometer,
            "returnFuelLevel": data.get("returnFuelLevel") or None,
            "returnNotes": data.get("returnNotes") or None,
            "returnedBy": actor_id,
            "totalPrice": round(base_amount + package_charges, 2),
            "freeMileage": free_mileage,
            "totalMileage": total_mileage,
            "extraMileage": extra_mileage,
            "extraMileageCost": extra_mileage_cost,
            "fuelCharge": fuel_charge,
            "damageCharge": damage_charge,
            "lateReturnCharge": late_return_charge,
            "otherCharges": other_charges,
            "otherChargesNote": data.get("otherChargesNote") or None,
            "discountAmount": discount,
            "discountReason": data.get("discountReason") or None,
            "finalAmount": final_amount,
            "balanceDue": balance_due,
        },
        vehicle_available=True,
    )


def next_invoice_number(prefix: str, year: int, last_number: Optional[str]) -> str:
    """Next sequential invoice number for ``year``, e.g. ``INV-2025-000042``."""

    sequence = 1
    if last_number:
        try:
            sequence = int(str(last_number).rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            sequence = 1
    return f"{prefix}-{year}-{sequence:06d}"


def build_invoice(
    booking: Dict[str, Any],
    data: Dict[str, Any],
    now: datetime,
    actor_id: str,
    invoice_number: str,
) -> Dict[str, Any]:
    """Invoice row for a completed booking; raises when one already exists."""

    require_status(booking, "generate-invoice")
    if booking.get("invoice"):
        raise WorkflowError("Invoice already exists for this booking")

    start = parse_datetime(booking.get("startDate"))
    end = parse_datetime(booking.get("endDate"))
    days = rental_days(start, end)

    vehicle = booking.get("vehicle") or {}
    daily_rate = round(coerce_number(vehicle.get("pricePerDay")), 2)
    rental_amount = round(daily_rate * days, 2)
    package_charges = round(
        sum(coerce_number(item.get("price")) for item in booking.get("packages") or []), 2
    )

    subtotal = round(
        rental_amount
        + package_charges
        + coerce_number(booking.get("extraMileageCost"))
        + coerce_number(booking.get("fuelCharge"))
        + coerce_number(booking.get("damageCharge"))
        + coerce_number(booking.get("lateReturnCharge"))
        + coerce_number(booking.get("otherCharges")),
        2,
    )
    discount = round(coerce_number(booking.get("discountAmount")), 2)

    tax_rate = _optional_float(data.get("taxRate"))
    if tax_rate is None:
        tax_rate = settings.invoice.tax_rate
    tax_amount = round((subtotal - discount) * tax_rate / 100, 2) if tax_rate > 0 else 0.0
    total = round(subtotal - discount + tax_amount, 2)
    advance = advance_credit(booking)

    return {
        "bookingId": booking["id"],
        "invoiceNumber": invoice_number,
        "status": InvoiceStatus.PARTIALLY_PAID.value if advance > 0 else InvoiceStatus.DRAFT.value,
        "rentalStartDate": start,
        "rentalEndDate": end,
        "rentalDays": days,
        "dailyRate": daily_rate,
        "rentalAmount": rental_amount,
        "collectionOdometer": booking.get("collectionOdometer"),
        "returnOdometer": booking.get("returnOdometer"),
        "totalMileage": booking.get("totalMileage"),
        "freeMileage": booking.get("freeMileage"),
        "extraMileage": booking.get("extraMileage"),
        "extraMileageRate": booking.get("extraMileageRate"),
        "extraMileageCost": booking.get("extraMileageCost"),
        "packageCharges": package_charges if package_charges > 0 else None,
        "fuelCharge": booking.get("fuelCharge"),
        "damageCharge": booking.get("damageCharge"),
        "lateReturnCharge": booking.get("lateReturnCharge"),
        "otherCharges": booking.get("otherCharges"),
        "otherChargesDesc": booking.get("otherChargesNote"),
        "subtotal": subtotal,
        "discountAmount": discount if discount > 0 else None,
        "discountReason": booking.get("discountReason"),
        "taxRate": tax_rate if tax_rate > 0 else None,
        "taxAmount": tax_amount if tax_amount > 0 else None,
        "totalAmount": total,
        "advancePaid": advance if advance > 0 else None,
        "amountPaid": advance,
        "balanceDue": round(total - advance, 2),
        "dueDate": now + timedelta(days=settings.invoice.payment_terms_days),
        "termsAndConditions": settings.invoice.default_terms,
        "notes": data.get("notes") or None,
        "createdBy": actor_id,
    }


def require_invoice(booking: Dict[str, Any]) -> Dict[str, Any]:
    invoice = booking.get("invoice")
    if not invoice:
        raise WorkflowError("No invoice exists for this booking")
    return invoice


def issue_invoice(invoice: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Invoice updates for sending a DRAFT invoice to the customer."""

    status = getattr(invoice.get("status"), "value", invoice.get("status"))
    if status != InvoiceStatus.DRAFT.value:
        raise WorkflowError(f"Only draft invoices can be issued (invoice is {status})")
    return {"status": InvoiceStatus.ISSUED.value, "issuedAt": now}


def apply_payment(invoice: Dict[str, Any], amount: float, now: datetime) -> Dict[str, Any]:
    """Invoice updates after receiving ``amount``; balance never goes below zero."""

    if amount <= 0:
        raise WorkflowError("Payment amount must be greater than zero")
    amount_paid = round(coerce_number(invoice.get("amountPaid")) + amount, 2)
    balance = round(coerce_number(invoice.get("totalAmount")) - amount_paid, 2)
    fully_paid = balance <= 0
    return {
        "amountPaid": amount_paid,
        "balanceDue": max(0.0, balance),
        "status": InvoiceStatus.PAID.value if fully_paid else InvoiceStatus.PARTIALLY_PAID.value,
        "paidAt": now if fully_paid else None,
    }


def can_cancel(status: Any, staff: bool) -> bool:
    status = getattr(status, "value", status)
    if status in NON_CANCELLABLE:
        return False
    if staff:
        return True
    return status in CUSTOMER_CANCELLABLE


def cancel(booking: Dict[str, Any], staff: bool = True) -> Transition:
    status = _status(booking)
    if not can_cancel(status, staff):
        if status == BookingStatus.CANCELLED.value:
            raise WorkflowError("Booking is already cancelled")
        if staff:
            raise WorkflowError("Cannot cancel a completed or invoiced booking")
        raise WorkflowError("This booking cannot be cancelled. Please contact support.")

    return Transition(
        booking_updates={"status": BookingStatus.CANCELLED.value},
        vehicle_available=True if status == BookingStatus.COLLECTED.value else None,
    )
