"""Vehicle catalogue routes and the admin fleet endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from rentdesk.auth.dependencies import get_current_user, require_role
from rentdesk.common.enums import ACTIVE_BOOKING_STATUSES, STAFF_ROLES, Role, VehicleStatus
from rentdesk.common.utils import as_dict, money, parse_datetime
from rentdesk.db.prisma_client import db, prisma_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vehicles", tags=["Vehicles"])
admin_router = APIRouter(prefix="/admin/vehicles", tags=["Admin Vehicles"])

_require_staff = require_role(sorted(STAFF_ROLES))


class VehicleCreate(BaseModel):
    name: str = Field(min_length=1)
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    type: str
    pricePerDay: float = Field(gt=0)
    location: Optional[str] = None
    seats: Optional[int] = None
    transmission: Optional[str] = None
    fuelType: Optional[str] = None
    licensePlate: Optional[str] = None
    imageUrl: Optional[str] = None
    description: Optional[str] = None
    mileage: Optional[int] = None


class VehicleUpdate(BaseModel):
    name: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    type: Optional[str] = None
    pricePerDay: Optional[float] = Field(default=None, gt=0)
    location: Optional[str] = None
    seats: Optional[int] = None
    transmission: Optional[str] = None
    fuelType: Optional[str] = None
    licensePlate: Optional[str] = None
    imageUrl: Optional[str] = None
    description: Optional[str] = None
    mileage: Optional[int] = None
    available: Optional[bool] = None
    status: Optional[VehicleStatus] = None


def serialise_vehicle(record: Any) -> Dict[str, Any]:
    vehicle = as_dict(record)
    if "pricePerDay" in vehicle:
        vehicle["pricePerDay"] = money(vehicle["pricePerDay"])
    return vehicle


async def booked_vehicle_ids(client: Any, start, end) -> set[str]:
    """Ids of vehicles holding an active booking that overlaps ``[start, end)``."""

    bookings = await client.booking.find_many(
        where={
            "status": {"in": ACTIVE_BOOKING_STATUSES},
            "startDate": {"lt": end},
            "endDate": {"gt": start},
        }
    )
    return {as_dict(booking)["vehicleId"] for booking in bookings}


def _date_range(start_date: str, end_date: str):
    try:
        start = parse_datetime(start_date)
        end = parse_datetime(end_date)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format")
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="Start date and end date are required")
    if end <= start:
        raise HTTPException(status_code=400, detail="End date must be after start date")
    return start, end


@router.get("", summary="Browse the fleet")
async def list_vehicles(
    type: Optional[str] = None,
    location: Optional[str] = None,
    available: Optional[bool] = None,
) -> List[Dict[str, Any]]:
    where: Dict[str, Any] = {"status": VehicleStatus.ACTIVE.value}
    if type:
        where["type"] = type
    if location:
        where["location"] = location
    if available is not None:
        where["available"] = available
    async with prisma_session(db) as client:
        vehicles = await client.vehicle.find_many(where=where, order={"pricePerDay": "asc"})
    return [serialise_vehicle(vehicle) for vehicle in vehicles]


@router.get("/available", summary="Vehicles free for a date range")
async def list_available_vehicles(
    startDate: str = Query(...),
    endDate: str = Query(...),
    type: Optional[str] = None,
) -> Dict[str, Any]:
    start, end = _date_range(startDate, endDate)
    where: Dict[str, Any] = {"status": VehicleStatus.ACTIVE.value, "available": True}
    if type:
        where["type"] = type

    async with prisma_session(db) as client:
        vehicles = await client.vehicle.find_many(where=where, order={"pricePerDay": "asc"})
        booked = await booked_vehicle_ids(client, start, end)

    free = [serialise_vehicle(vehicle) for vehicle in vehicles if as_dict(vehicle)["id"] not in booked]
    return {"vehicles": free, "total": len(free), "startDate": start, "endDate": end}


@router.get("/{vehicle_id}", summary="Retrieve a vehicle")
async def get_vehicle(vehicle_id: str) -> Dict[str, Any]:
    async with prisma_session(db) as client:
        vehicle = await client.vehicle.find_unique(where={"id": vehicle_id})
    if not vehicle:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return serialise_vehicle(vehicle)


@admin_router.post("", status_code=201, summary="Add a vehicle to the fleet")
async def create_vehicle(payload: VehicleCreate, user=Depends(get_current_user)) -> Dict[str, Any]:
    _require_staff(user)
    data = payload.model_dump(exclude_none=True)
    data.update({"available": True, "status": VehicleStatus.ACTIVE.value})
    async with prisma_session(db) as client:
        vehicle = await client.vehicle.create(data=data)
    vehicle = serialise_vehicle(vehicle)
    logger.info("Vehicle %s added by %s", vehicle["id"], as_dict(user).get("id"))
    return vehicle


@admin_router.patch("/{vehicle_id}", summary="Update a vehicle")
async def update_vehicle(vehicle_id: str, payload: VehicleUpdate, user=Depends(get_current_user)) -> Dict[str, Any]:
    _require_staff(user)
    data = payload.model_dump(exclude_none=True, mode="json")
    if not data:
        raise HTTPException(status_code=400, detail="No fields to update")
    async with prisma_session(db) as client:
        existing = await client.vehicle.find_unique(where={"id": vehicle_id})
        if not existing:
            raise HTTPException(status_code=404, detail="Vehicle not found")
        vehicle = await client.vehicle.update(where={"id": vehicle_id}, data=data)
    return serialise_vehicle(vehicle)


@admin_router.delete("/{vehicle_id}", summary="Remove a vehicle")
async def delete_vehicle(vehicle_id: str, user=Depends(get_current_user)) -> Dict[str, Any]:
    require_role([Role.ADMIN.value, Role.SUPER_ADMIN.value])(user)
    async with prisma_session(db) as client:
        existing = await client.vehicle.find_unique(where={"id": vehicle_id})
        if not existing:
            raise HTTPException(status_code=404, detail="Vehicle not found")
        active = await client.booking.count(
            where={"vehicleId": vehicle_id, "status": {"in": ACTIVE_BOOKING_STATUSES}}
        )
        if active:
            raise HTTPException(status_code=400, detail="Vehicle has active bookings")
        await client.vehicle.delete(where={"id": vehicle_id})
    return {"success": True, "message": "Vehicle deleted successfully"}
