"""Package offers: public catalogue, availability and admin management."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from rentdesk.auth.dependencies import get_current_user, require_role
from rentdesk.common.enums import ACTIVE_BOOKING_STATUSES, PackageType, Role
from rentdesk.common.utils import as_dict, money, optional_money, parse_datetime
from rentdesk.db.prisma_client import db, prisma_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/packages", tags=["Packages"])
admin_router = APIRouter(prefix="/admin/packages", tags=["Admin Packages"])

_require_admin = require_role([Role.ADMIN.value, Role.SUPER_ADMIN.value])

_PRICE_FIELDS = ("basePrice", "pricePerDay", "pricePerHour", "discount")


class CustomCostIn(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: float = Field(ge=0)
    isOptional: bool = False
    sortOrder: int = 0


class PackageCreate(BaseModel):
    name: str = Field(min_length=1)
    type: PackageType
    description: Optional[str] = None
    basePrice: Optional[float] = Field(default=None, ge=0)
    pricePerDay: Optional[float] = Field(default=None, ge=0)
    pricePerHour: Optional[float] = Field(default=None, ge=0)
    discount: Optional[float] = Field(default=None, ge=0)
    minDuration: Optional[int] = Field(default=None, ge=1)
    maxDuration: Optional[int] = Field(default=None, ge=1)
    isActive: bool = True
    isGlobal: bool = False
    sortOrder: int = 0
    icon: Optional[str] = None
    customCosts: List[CustomCostIn] = Field(default_factory=list)


class PackageUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[PackageType] = None
    description: Optional[str] = None
    basePrice: Optional[float] = Field(default=None, ge=0)
    pricePerDay: Optional[float] = Field(default=None, ge=0)
    pricePerHour: Optional[float] = Field(default=None, ge=0)
    discount: Optional[float] = Field(default=None, ge=0)
    minDuration: Optional[int] = Field(default=None, ge=1)
    maxDuration: Optional[int] = Field(default=None, ge=1)
    isActive: Optional[bool] = None
    isGlobal: Optional[bool] = None
    sortOrder: Optional[int] = None
    icon: Optional[str] = None


class VehicleAssignment(BaseModel):
    vehicleId: str
    customPrice: Optional[float] = Field(default=None, ge=0)


class VehicleAssignments(BaseModel):
    vehicles: List[VehicleAssignment] = Field(default_factory=list)


def serialise_package(record: Any) -> Dict[str, Any]:
    package = as_dict(record)
    for key in _PRICE_FIELDS:
        if key in package:
            package[key] = optional_money(package[key]) if package[key] else None
    if package.get("customCosts") is not None:
        package["customCosts"] = [
            {**as_dict(cost), "price": money(as_dict(cost).get("price"))} for cost in package["customCosts"]
        ]
    if package.get("vehiclePackages") is not None:
        assignments = []
        for item in package["vehiclePackages"]:
            entry = as_dict(item)
            entry["customPrice"] = optional_money(entry.get("customPrice")) if entry.get("customPrice") else None
            if entry.get("vehicle") is not None:
                vehicle = as_dict(entry["vehicle"])
                vehicle["pricePerDay"] = money(vehicle.get("pricePerDay"))
                entry["vehicle"] = vehicle
            assignments.append(entry)
        package["vehiclePackages"] = assignments
    return package


def _check_duration(min_duration: Optional[int], max_duration: Optional[int]) -> None:
    if min_duration and max_duration and min_duration > max_duration:
        raise HTTPException(status_code=400, detail="Minimum duration cannot exceed maximum duration")


@router.get("", summary="List active packages")
async def list_packages(vehicleId: Optional[str] = None, type: Optional[str] = None) -> List[Dict[str, Any]]:
    where: Dict[str, Any] = {"isActive": True, "isGlobal": True}
    if type:
        where["type"] = type

    async with prisma_session(db) as client:
        records = await client.package.find_many(where=where, order={"sortOrder": "asc"})
        packages = [serialise_package(pkg) for pkg in records]
        if vehicleId:
            assignments = await client.vehiclepackage.find_many(
                where={"vehicleId": vehicleId}, include={"package": True}
            )
            for assignment in assignments:
                entry = as_dict(assignment)
                package = serialise_package(entry.get("package"))
                if not package.get("isActive") or package.get("isGlobal"):
                    continue
                if type and package.get("type") != type:
                    continue
                if entry.get("customPrice"):
                    package["basePrice"] = money(entry["customPrice"])
                packages.append(package)
    return packages


@router.get("/{package_id}", summary="Retrieve a package with its options")
async def get_package(package_id: str) -> Dict[str, Any]:
    async with prisma_session(db) as client:
        package = await client.package.find_first(
            where={"id": package_id, "isActive": True},
            include={"customCosts": True, "vehiclePackages": {"include": {"vehicle": True}}},
        )
    if not package:
        raise HTTPException(status_code=404, detail="Package not found")
    package = serialise_package(package)
    package["customCosts"] = sorted(
        (cost for cost in package.get("customCosts") or [] if cost.get("isActive", True)),
        key=lambda cost: cost.get("sortOrder") or 0,
    )
    return package


@router.get("/{package_id}/availability", summary="Which vehicles can take this package for a date range")
async def get_package_availability(
    package_id: str,
    startDate: str = Query(...),
    endDate: str = Query(...),
) -> Dict[str, Any]:
    try:
        start = parse_datetime(startDate)
        end = parse_datetime(endDate)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format")

    async with prisma_session(db) as client:
        package = await client.package.find_first(
            where={"id": package_id, "isActive": True},
            include={"vehiclePackages": {"include": {"vehicle": True}}},
        )
        if not package:
            raise HTTPException(status_code=404, detail="Package not found")
        package = as_dict(package)
        assignments = [as_dict(item) for item in package.get("vehiclePackages") or []]

        if package.get("isGlobal"):
            candidates = [as_dict(v) for v in await client.vehicle.find_many(where={"available": True})]
        else:
            candidates = [
                as_dict(item["vehicle"])
                for item in assignments
                if item.get("vehicle") is not None and as_dict(item["vehicle"]).get("available")
            ]

        booked: set[str] = set()
        if candidates:
            conflicts = await client.booking.find_many(
                where={
                    "vehicleId": {"in": [vehicle["id"] for vehicle in candidates]},
                    "status": {"in": ACTIVE_BOOKING_STATUSES},
                    "startDate": {"lt": end},
                    "endDate": {"gt": start},
                }
            )
            booked = {as_dict(booking)["vehicleId"] for booking in conflicts}

    custom_prices = {item.get("vehicleId"): item.get("customPrice") for item in assignments}
    vehicles = []
    for vehicle in candidates:
        custom_price = None if package.get("isGlobal") else custom_prices.get(vehicle["id"])
        vehicles.append(
            {
                **vehicle,
                "pricePerDay": money(vehicle.get("pricePerDay")),
                "packagePrice": money(custom_price) if custom_price else None,
                "available": vehicle["id"] not in booked,
            }
        )
    vehicles.sort(key=lambda vehicle: (not vehicle["available"], vehicle.get("name") or ""))
    available_count = sum(1 for vehicle in vehicles if vehicle["available"])

    return {
        "packageId": package["id"],
        "packageName": package.get("name"),
        "startDate": startDate,
        "endDate": endDate,
        "availableCount": available_count,
        "unavailableCount": len(vehicles) - available_count,
        "vehicles": vehicles,
    }


@admin_router.get("", summary="List packages for management")
async def admin_list_packages(
    includeInactive: bool = False,
    type: Optional[str] = None,
    user=Depends(get_current_user),
) -> List[Dict[str, Any]]:
    _require_admin(user)
    where: Dict[str, Any] = {} if includeInactive else {"isActive": True}
    if type:
        where["type"] = type
    async with prisma_session(db) as client:
        packages = await client.package.find_many(
            where=where,
            include={"customCosts": True, "vehiclePackages": {"include": {"vehicle": True}}},
            order={"sortOrder": "asc"},
        )
    return [serialise_package(pkg) for pkg in packages]


@admin_router.post("", status_code=201, summary="Create a package")
async def create_package(payload: PackageCreate, user=Depends(get_current_user)) -> Dict[str, Any]:
    _require_admin(user)
    _check_duration(payload.minDuration, payload.maxDuration)
    data = payload.model_dump(exclude={"customCosts"}, exclude_none=True, mode="json")

    async with prisma_session(db) as client:
        package = as_dict(await client.package.create(data=data))
        for cost in payload.customCosts:
            await client.packagecustomcost.create(data={"packageId": package["id"], **cost.model_dump()})
        package = await client.package.find_unique(
            where={"id": package["id"]}, include={"customCosts": True, "vehiclePackages": True}
        )
    package = serialise_package(package)
    logger.info("Package %s created by %s", package["id"], as_dict(user).get("id"))
    return package


@admin_router.patch("/{package_id}", summary="Update a package")
async def update_package(package_id: str, payload: PackageUpdate, user=Depends(get_current_user)) -> Dict[str, Any]:
    _require_admin(user)
    data = payload.model_dump(exclude_none=True, mode="json")
    if not data:
        raise HTTPException(status_code=400, detail="No fields to update")

    async with prisma_session(db) as client:
        existing = await client.package.find_unique(where={"id": package_id})
        if not existing:
            raise HTTPException(status_code=404, detail="Package not found")
        current = as_dict(existing)
        _check_duration(
            data.get("minDuration", current.get("minDuration")),
            data.get("maxDuration", current.get("maxDuration")),
        )
        package = await client.package.update(
            where={"id": package_id},
            data=data,
            include={"customCosts": True, "vehiclePackages": True},
        )
    return serialise_package(package)


@admin_router.delete("/{package_id}", summary="Delete or deactivate a package")
async def delete_package(package_id: str, user=Depends(get_current_user)) -> Dict[str, Any]:
    _require_admin(user)
    async with prisma_session(db) as client:
        existing = await client.package.find_unique(where={"id": package_id})
        if not existing:
            raise HTTPException(status_code=404, detail="Package not found")

        # Packages already sold stay on record for their bookings.
        used = await client.bookingpackage.count(where={"packageId": package_id})
        if used:
            await client.package.update(where={"id": package_id}, data={"isActive": False})
            return {"success": True, "message": "Package has bookings and was deactivated instead of deleted"}

        await client.packagecustomcost.delete_many(where={"packageId": package_id})
        await client.vehiclepackage.delete_many(where={"packageId": package_id})
        await client.package.delete(where={"id": package_id})
    return {"success": True, "message": "Package deleted successfully"}


@admin_router.put("/{package_id}/vehicles", summary="Replace the vehicles assigned to a package")
async def assign_package_vehicles(
    package_id: str, payload: VehicleAssignments, user=Depends(get_current_user)
) -> Dict[str, Any]:
    _require_admin(user)
    async with prisma_session(db) as client:
        existing = await client.package.find_unique(where={"id": package_id})
        if not existing:
            raise HTTPException(status_code=404, detail="Package not found")

        vehicle_ids = [item.vehicleId for item in payload.vehicles]
        if vehicle_ids:
            found = await client.vehicle.find_many(where={"id": {"in": vehicle_ids}})
            missing = set(vehicle_ids) - {as_dict(vehicle)["id"] for vehicle in found}
            if missing:
                raise HTTPException(status_code=400, detail=f"Unknown vehicles: {', '.join(sorted(missing))}")

        await client.vehiclepackage.delete_many(where={"packageId": package_id})
        for item in payload.vehicles:
            await client.vehiclepackage.create(
                data={"packageId": package_id, "vehicleId": item.vehicleId, "customPrice": item.customPrice}
            )
        package = await client.package.find_unique(
            where={"id": package_id}, include={"vehiclePackages": {"include": {"vehicle": True}}}
        )
    return serialise_package(package)
