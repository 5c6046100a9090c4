from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from rentdesk.vehicles import routes

START = datetime(2026, 8, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def fleet(fake_db):
    fake_db.vehicle.add(id="veh-1", name="Prius", type="CAR", location="Colombo", pricePerDay=7000.0)
    fake_db.vehicle.add(id="veh-2", name="Alto", type="CAR", location="Kandy", pricePerDay=3500.0)
    fake_db.vehicle.add(id="veh-3", name="KDH", type="VAN", location="Colombo", pricePerDay=12000.0)
    fake_db.vehicle.add(id="veh-4", name="Retired", type="CAR", pricePerDay=1000.0, status="RETIRED")


@pytest.fixture()
def client(client_for, customer):
    return client_for(customer, routes.router, routes.admin_router)


def test_catalogue_is_sorted_by_price_and_filterable(client, fleet):
    everything = client.get("/vehicles").json()
    assert [v["id"] for v in everything] == ["veh-2", "veh-1", "veh-3"]

    colombo_cars = client.get("/vehicles", params={"type": "CAR", "location": "Colombo"}).json()
    assert [v["id"] for v in colombo_cars] == ["veh-1"]


def test_available_excludes_vehicles_with_overlapping_bookings(fake_db, client, fleet, customer):
    fake_db.booking.add(
        userId=customer["id"],
        vehicleId="veh-1",
        startDate=START + timedelta(days=1),
        endDate=START + timedelta(days=3),
        status="CONFIRMED",
        totalPrice=14000.0,
    )
    fake_db.booking.add(
        userId=customer["id"],
        vehicleId="veh-2",
        startDate=START,
        endDate=START + timedelta(days=2),
        status="CANCELLED",
        totalPrice=7000.0,
    )

    body = client.get(
        "/vehicles/available",
        params={"startDate": START.isoformat(), "endDate": (START + timedelta(days=2)).isoformat()},
    ).json()

    assert [v["id"] for v in body["vehicles"]] == ["veh-2", "veh-3"]
    assert body["total"] == 2


def test_available_validates_the_range(client, fleet):
    response = client.get(
        "/vehicles/available", params={"startDate": START.isoformat(), "endDate": START.isoformat()}
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "End date must be after start date"
    assert client.get("/vehicles/available", params={"startDate": "soon", "endDate": "later"}).status_code == 400


def test_unknown_vehicle_is_404(client, fleet):
    assert client.get("/vehicles/ghost").status_code == 404


def test_staff_manage_the_fleet(fake_db, client_for, admin, fleet):
    client = client_for(admin, routes.router, routes.admin_router)

    created = client.post("/admin/vehicles", json={"name": "Vezel", "type": "SUV", "pricePerDay": 8500})
    assert created.status_code == 201
    assert created.json()["available"] is True

    updated = client.patch("/admin/vehicles/veh-3", json={"status": "MAINTENANCE"})
    assert updated.json()["status"] == "MAINTENANCE"
    assert client.patch("/admin/vehicles/veh-3", json={}).status_code == 400


def test_vehicle_with_active_booking_cannot_be_deleted(fake_db, client_for, admin, customer, fleet):
    client = client_for(admin, routes.router, routes.admin_router)
    fake_db.booking.add(
        userId=customer["id"], vehicleId="veh-1", startDate=START, endDate=START + timedelta(days=1), totalPrice=7000.0
    )

    response = client.delete("/admin/vehicles/veh-1")
    assert response.status_code == 400
    assert response.json()["detail"] == "Vehicle has active bookings"

    assert client.delete("/admin/vehicles/veh-2").json()["success"] is True
    assert fake_db.vehicle.get("veh-2") is None


def test_customers_cannot_add_vehicles(client, fleet):
    response = client.post("/admin/vehicles", json={"name": "Vezel", "type": "SUV", "pricePerDay": 8500})

    assert response.status_code == 403
