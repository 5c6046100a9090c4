from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from rentdesk.packages import routes

START = datetime(2026, 7, 1, 8, 0, tzinfo=timezone.utc)
WINDOW = {"startDate": START.isoformat(), "endDate": (START + timedelta(days=2)).isoformat()}


@pytest.fixture()
def fleet(fake_db):
    return [
        fake_db.vehicle.add(id="veh-1", name="Premio", pricePerDay=6000.0),
        fake_db.vehicle.add(id="veh-2", name="Aqua", pricePerDay=4500.0),
        fake_db.vehicle.add(id="veh-3", name="Hiace", pricePerDay=9000.0, available=False),
    ]


@pytest.fixture()
def airport(fake_db, fleet):
    package = fake_db.package.add(id="pkg-1", name="Airport Drop", type="AIRPORT_DROP", basePrice=3000.0)
    fake_db.vehiclepackage.add(packageId="pkg-1", vehicleId="veh-1", customPrice=3500.0)
    fake_db.vehiclepackage.add(packageId="pkg-1", vehicleId="veh-2")
    fake_db.vehiclepackage.add(packageId="pkg-1", vehicleId="veh-3")
    return package


@pytest.fixture()
def client(client_for, customer):
    return client_for(customer, routes.router, routes.admin_router)


@pytest.fixture()
def admin_client(client_for, admin):
    return client_for(admin, routes.router, routes.admin_router)


def test_availability_lists_free_vehicles_first(fake_db, client, airport, customer):
    fake_db.booking.add(
        userId=customer["id"],
        vehicleId="veh-2",
        startDate=START + timedelta(days=1),
        endDate=START + timedelta(days=4),
        status="CONFIRMED",
        totalPrice=13500.0,
    )

    body = client.get("/packages/pkg-1/availability", params=WINDOW).json()

    assert body["packageName"] == "Airport Drop"
    # veh-3 is out of service, so it is not a candidate at all.
    assert [(v["id"], v["available"]) for v in body["vehicles"]] == [("veh-1", True), ("veh-2", False)]
    assert body["vehicles"][0]["packagePrice"] == 3500.0
    assert body["vehicles"][1]["packagePrice"] is None
    assert (body["availableCount"], body["unavailableCount"]) == (1, 1)


def test_global_package_offers_the_whole_available_fleet(fake_db, client, fleet):
    fake_db.package.add(id="pkg-g", name="Daily", type="DAILY", pricePerDay=5000.0, isGlobal=True)

    body = client.get("/packages/pkg-g/availability", params=WINDOW).json()

    assert [v["name"] for v in body["vehicles"]] == ["Aqua", "Premio"]
    assert body["availableCount"] == 2


def test_availability_for_unknown_package_is_404(client, fleet):
    assert client.get("/packages/nope/availability", params=WINDOW).status_code == 404


def test_list_includes_vehicle_specific_packages_with_override(fake_db, client, airport):
    fake_db.package.add(id="pkg-g", name="Daily", type="DAILY", basePrice=1000.0, isGlobal=True)
    fake_db.package.add(id="pkg-off", name="Old", type="WEEKLY", basePrice=1.0, isGlobal=True, isActive=False)

    everyone = client.get("/packages").json()
    assert [p["id"] for p in everyone] == ["pkg-g"]

    for_premio = client.get("/packages", params={"vehicleId": "veh-1"}).json()
    assert [(p["id"], p["basePrice"]) for p in for_premio] == [("pkg-g", 1000.0), ("pkg-1", 3500.0)]


def test_package_detail_hides_inactive_costs(fake_db, client, airport):
    fake_db.packagecustomcost.add(packageId="pkg-1", name="Parking", price=400.0, sortOrder=2)
    fake_db.packagecustomcost.add(packageId="pkg-1", name="Meet & greet", price=1500.0, sortOrder=1)
    fake_db.packagecustomcost.add(packageId="pkg-1", name="Retired", price=99.0, isActive=False)

    body = client.get("/packages/pkg-1").json()

    assert [cost["name"] for cost in body["customCosts"]] == ["Meet & greet", "Parking"]


def test_admin_creates_package_with_custom_costs(fake_db, admin_client):
    response = admin_client.post(
        "/admin/packages",
        json={
            "name": "Weekly Saver",
            "type": "WEEKLY",
            "pricePerDay": 4200,
            "minDuration": 7,
            "customCosts": [{"name": "Insurance", "price": 2500}],
        },
    )

    assert response.status_code == 201
    package = response.json()
    assert package["type"] == "WEEKLY"
    assert [cost["name"] for cost in package["customCosts"]] == ["Insurance"]
    assert fake_db.packagecustomcost.records[0]["packageId"] == package["id"]


def test_duration_bounds_are_checked(admin_client):
    response = admin_client.post(
        "/admin/packages", json={"name": "Odd", "type": "CUSTOM", "minDuration": 5, "maxDuration": 2}
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Minimum duration cannot exceed maximum duration"


def test_assigning_vehicles_replaces_previous_assignments(fake_db, admin_client, airport):
    response = admin_client.put(
        "/admin/packages/pkg-1/vehicles", json={"vehicles": [{"vehicleId": "veh-2", "customPrice": 3200}]}
    )

    assert response.status_code == 200
    assignments = response.json()["vehiclePackages"]
    assert [(a["vehicleId"], a["customPrice"]) for a in assignments] == [("veh-2", 3200.0)]

    unknown = admin_client.put("/admin/packages/pkg-1/vehicles", json={"vehicles": [{"vehicleId": "ghost"}]})
    assert unknown.status_code == 400
    assert len(fake_db.vehiclepackage.records) == 1


def test_delete_deactivates_a_package_already_booked(fake_db, admin_client, airport):
    fake_db.bookingpackage.add(bookingId="bk-1", packageId="pkg-1")

    body = admin_client.delete("/admin/packages/pkg-1").json()

    assert body["success"] is True
    assert fake_db.package.get("pkg-1")["isActive"] is False


def test_delete_removes_an_unused_package(fake_db, admin_client, airport):
    fake_db.packagecustomcost.add(packageId="pkg-1", name="Parking", price=400.0)

    admin_client.delete("/admin/packages/pkg-1")

    assert fake_db.package.records == []
    assert fake_db.vehiclepackage.records == []
    assert fake_db.packagecustomcost.records == []


def test_customers_cannot_manage_packages(client, airport):
    assert client.get("/admin/packages").status_code == 403
    assert client.delete("/admin/packages/pkg-1").status_code == 403
