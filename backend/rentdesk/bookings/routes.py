"""Customer booking routes: create, list, view and cancel reservations."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from rentdesk.auth.dependencies import get_current_user, require_role
from rentdesk.bookings import workflow
from rentdesk.bookings.service import (
    BOOKING_INCLUDE,
    cancel_booking,
    find_conflicting_booking,
    load_booking,
    publish_booking_update,
    serialise_booking,
)
from rentdesk.common.enums import BookingStatus, Role
from rentdesk.common.utils import as_dict, coerce_number, is_staff, parse_datetime, rental_days, vehicle_name
from rentdesk.db.prisma_client import db, prisma_session
from rentdesk.notifications.service import NotificationTemplates, notify_admins, send_notification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


class BookingCreate(BaseModel):
    vehicleId: str
    startDate: datetime
    endDate: datetime
    pickupLocation: Optional[str] = None
    dropoffLocation: Optional[str] = None


class PackageBookingCreate(BaseModel):
    packageId: str
    vehicleId: str
    startDate: datetime
    endDate: datetime
    pickupLocation: Optional[str] = None
    dropoffLocation: Optional[str] = None
    selectedCustomCostIds: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class BookingAction(BaseModel):
    action: str


def _booking_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start_at = parse_datetime(start)
    end_at = parse_datetime(end)
    if end_at <= start_at:
        raise HTTPException(status_code=400, detail="End date must be after start date")
    return start_at, end_at


async def _announce_new_booking(booking: Dict[str, Any], user: Dict[str, Any]) -> None:
    vehicle = vehicle_name(booking.get("vehicle"))
    await send_notification(
        user_id=booking["userId"],
        **NotificationTemplates.booking_created(booking["id"], vehicle),
    )
    who = user.get("name") or user.get("email") or "A customer"
    await notify_admins(
        type="BOOKING_CREATED",
        title="New Booking",
        message=f"{who} requested {vehicle}.",
        data={"bookingId": booking["id"]},
    )
    await publish_booking_update(booking, "Booking created")


@router.get("", summary="List bookings visible to the caller")
async def list_bookings(user=Depends(get_current_user)) -> List[Dict[str, Any]]:
    where: Dict[str, Any] = {} if is_staff(user) else {"userId": as_dict(user)["id"]}
    async with prisma_session(db) as client:
        bookings = await client.booking.find_many(
            where=where,
            include={"vehicle": True, "invoice": True},
            order={"createdAt": "desc"},
        )
    return [serialise_booking(booking) for booking in bookings]


@router.post("", status_code=201, summary="Request a vehicle for a date range")
async def create_booking(payload: BookingCreate, user=Depends(get_current_user)) -> Dict[str, Any]:
    current = as_dict(user)
    start, end = _booking_window(payload.startDate, payload.endDate)

    async with prisma_session(db) as client:
        vehicle = await client.vehicle.find_unique(where={"id": payload.vehicleId})
        vehicle = as_dict(vehicle) if vehicle else None
        if not vehicle or not vehicle.get("available"):
            raise HTTPException(status_code=400, detail="Vehicle not available")

        if await find_conflicting_booking(client, payload.vehicleId, start, end):
            raise HTTPException(status_code=400, detail="Vehicle is already booked for these dates")

        days = rental_days(start, end)
        booking = await client.booking.create(
            data={
                "userId": current["id"],
                "vehicleId": payload.vehicleId,
                "startDate": start,
                "endDate": end,
                "totalPrice": round(coerce_number(vehicle.get("pricePerDay")) * days, 2),
                "status": BookingStatus.PENDING.value,
                "pickupLocation": payload.pickupLocation,
                "dropoffLocation": payload.dropoffLocation,
            },
            include={"vehicle": True},
        )
    booking = serialise_booking(booking)
    logger.info("Booking %s created for vehicle %s", booking["id"], payload.vehicleId)

    await _announce_new_booking(booking, current)
    return booking


@router.post("/package", status_code=201, summary="Book a vehicle under a package offer")
async def create_package_booking(payload: PackageBookingCreate, user=Depends(get_current_user)) -> Dict[str, Any]:
    current = as_dict(user)
    start, end = _booking_window(payload.startDate, payload.endDate)
    days = rental_days(start, end)

    async with prisma_session(db) as client:
        package = await client.package.find_first(
            where={"id": payload.packageId, "isActive": True},
            include={"customCosts": True, "vehiclePackages": True},
        )
        if not package:
            raise HTTPException(status_code=404, detail="Package not found or inactive")
        package = as_dict(package)

        vehicle = await client.vehicle.find_unique(where={"id": payload.vehicleId})
        vehicle = as_dict(vehicle) if vehicle else None
        if not vehicle or not vehicle.get("available"):
            raise HTTPException(status_code=404, detail="Vehicle not found or inactive")

        assignment = next(
            (
                as_dict(item)
                for item in package.get("vehiclePackages") or []
                if as_dict(item).get("vehicleId") == payload.vehicleId
            ),
            None,
        )
        if not package.get("isGlobal") and assignment is None:
            raise HTTPException(status_code=400, detail="Vehicle is not available for this package")

        min_duration = package.get("minDuration")
        max_duration = package.get("maxDuration")
        if min_duration and days < min_duration:
            raise HTTPException(status_code=400, detail=f"Minimum duration for this package is {min_duration} days")
        if max_duration and days > max_duration:
            raise HTTPException(status_code=400, detail=f"Maximum duration for this package is {max_duration} days")

        if await find_conflicting_booking(client, payload.vehicleId, start, end):
            raise HTTPException(status_code=400, detail="Vehicle is not available for the selected dates")

        selected = set(payload.selectedCustomCostIds)
        applicable_costs = [
            cost
            for cost in (as_dict(item) for item in package.get("customCosts") or [])
            if cost.get("isActive", True) and (not cost.get("isOptional") or cost.get("id") in selected)
        ]
        custom_costs_total = round(sum(coerce_number(cost.get("price")) for cost in applicable_costs), 2)
        base_price = round(coerce_number(package.get("basePrice")), 2)
        if assignment and assignment.get("customPrice"):
            vehicle_price = round(coerce_number(assignment["customPrice"]), 2)
        else:
            vehicle_price = round(coerce_number(vehicle.get("pricePerDay")), 2)
        total = round(base_price + custom_costs_total + vehicle_price * days, 2)

        booking = await client.booking.create(
            data={
                "userId": current["id"],
                "vehicleId": payload.vehicleId,
                "startDate": start,
                "endDate": end,
                "totalPrice": total,
                "status": BookingStatus.PENDING.value,
                "pickupLocation": payload.pickupLocation or "To be confirmed",
                "dropoffLocation": payload.dropoffLocation or "To be confirmed",
                "confirmationNotes": payload.notes,
                "isPackageBooking": True,
                "primaryPackageId": payload.packageId,
                "packageBasePrice": base_price,
                "vehiclePackagePrice": vehicle_price,
                "customCostsTotal": custom_costs_total,
                "packages": {"create": [{"packageId": payload.packageId, "price": base_price}]},
                "customCosts": {
                    "create": [
                        {
                            "packageCustomCostId": cost["id"],
                            "name": cost.get("name"),
                            "price": coerce_number(cost.get("price")),
                        }
                        for cost in applicable_costs
                    ]
                },
            },
            include=BOOKING_INCLUDE,
        )
    booking = serialise_booking(booking)

    await _announce_new_booking(booking, current)
    return booking


@router.get("/{booking_id}", summary="Retrieve a booking")
async def get_booking(booking_id: str, user=Depends(get_current_user)) -> Dict[str, Any]:
    async with prisma_session(db) as client:
        booking = await load_booking(client, booking_id)
    if not is_staff(user) and booking.get("userId") != as_dict(user)["id"]:
        raise HTTPException(status_code=403, detail="Forbidden")
    return booking


@router.patch("/{booking_id}", summary="Apply a customer action to a booking")
async def update_booking(booking_id: str, payload: BookingAction, user=Depends(get_current_user)) -> Dict[str, Any]:
    current = as_dict(user)
    staff = is_staff(user)

    async with prisma_session(db) as client:
        booking = await load_booking(client, booking_id, include=BOOKING_INCLUDE)
        if not staff and booking.get("userId") != current["id"]:
            raise HTTPException(status_code=403, detail="Forbidden")
        if payload.action != "cancel":
            raise HTTPException(status_code=400, detail="Invalid action")

        try:
            updated = await cancel_booking(client, booking, current, staff=staff)
        except workflow.WorkflowError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.message)

    return {"success": True, "message": "Booking cancelled successfully", "booking": updated}


@router.delete("/{booking_id}", summary="Delete a booking")
async def delete_booking(booking_id: str, user=Depends(get_current_user)) -> Dict[str, Any]:
    require_role([Role.ADMIN.value, Role.SUPER_ADMIN.value])(user)
    async with prisma_session(db) as client:
        booking = await client.booking.find_unique(where={"id": booking_id})
        if not booking:
            raise HTTPException(status_code=404, detail="Booking not found")
        await client.booking.delete(where={"id": booking_id})
    return {"success": True, "message": "Booking deleted successfully"}
