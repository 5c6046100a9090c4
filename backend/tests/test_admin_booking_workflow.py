from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from rentdesk.bookings import admin_routes
from rentdesk.realtime.channels import Channels


@pytest.fixture()
def rental(fake_db, customer):
    vehicle = fake_db.vehicle.add(id="veh-1", name="Axio", brand="Toyota", model="Axio", pricePerDay=5000.0)
    start = datetime.now(timezone.utc) + timedelta(days=1)
    booking = fake_db.booking.add(
        id="bk-1",
        userId=customer["id"],
        vehicleId=vehicle["id"],
        startDate=start,
        endDate=start + timedelta(days=2),
        totalPrice=10000.0,
    )
    return booking


@pytest.fixture()
def admin_client(client_for, admin):
    return client_for(admin, admin_routes.router)


def _run(client, action, **data):
    return client.post("/admin/bookings/bk-1/workflow", json={"action": action, **data})


def test_full_lifecycle_from_pending_to_paid(fake_db, rental, admin_client, listen):
    admin_channel = listen(Channels.ADMIN_BOOKINGS)

    assert _run(admin_client, "confirm").json()["booking"]["status"] == "CONFIRMED"

    response = _run(admin_client, "collect", collectionOdometer=1000)
    assert response.json()["booking"]["status"] == "COLLECTED"
    assert fake_db.vehicle.get("veh-1")["available"] is False

    response = _run(admin_client, "complete", returnOdometer=1050)
    assert response.json()["booking"]["status"] == "COMPLETED"
    assert fake_db.vehicle.get("veh-1")["available"] is True

    response = _run(admin_client, "generate-invoice")
    body = response.json()
    year = datetime.now(timezone.utc).year
    assert body["booking"]["status"] == "INVOICED"
    assert body["invoice"]["invoiceNumber"] == f"INV-{year}-000001"
    assert body["invoice"]["totalAmount"] == 5000.0

    response = _run(admin_client, "record-payment", amount=5000, method="CARD")
    body = response.json()
    assert body["invoice"]["status"] == "PAID"
    assert body["booking"]["status"] == "PAID"
    assert len(fake_db.invoicepayment.records) == 1

    statuses = [frame["data"]["status"] for frame in admin_channel.events()]
    assert statuses == ["CONFIRMED", "COLLECTED", "COMPLETED", "INVOICED", "PAID"]


def test_booking_cannot_skip_a_status(fake_db, rental, admin_client):
    response = _run(admin_client, "complete", returnOdometer=1200)

    assert response.status_code == 400
    assert response.json()["detail"] == "Booking must be COLLECTED before completion"
    assert fake_db.booking.get("bk-1")["status"] == "PENDING"


def test_invoice_is_created_at_most_once(fake_db, rental, admin_client):
    fake_db.booking.get("bk-1").update(status="COMPLETED", collectionOdometer=1000, returnOdometer=1100)

    assert _run(admin_client, "generate-invoice").status_code == 200
    # Reset the status to prove the existing invoice alone blocks a second one.
    fake_db.booking.get("bk-1")["status"] = "COMPLETED"
    second = _run(admin_client, "generate-invoice")

    assert second.status_code == 400
    assert second.json()["detail"] == "Invoice already exists for this booking"
    assert len(fake_db.invoice.records) == 1


def test_advance_payment_is_recorded_against_the_invoice(fake_db, rental, admin_client):
    fake_db.booking.get("bk-1").update(
        status="COMPLETED",
        advancePaid=True,
        advanceAmount=2000.0,
        advancePaymentMethod="BANK_TRANSFER",
    )

    body = _run(admin_client, "generate-invoice").json()

    assert body["invoice"]["status"] == "PARTIALLY_PAID"
    assert body["invoice"]["amountPaid"] == 2000.0
    payment = fake_db.invoicepayment.records[0]
    assert payment["amount"] == 2000.0
    assert payment["method"] == "BANK_TRANSFER"


def test_cancelling_a_collected_booking_frees_the_vehicle(fake_db, rental, admin_client, customer, listen):
    fake_db.booking.get("bk-1")["status"] = "COLLECTED"
    fake_db.vehicle.get("veh-1")["available"] = False
    inbox = listen(Channels.user_notifications(customer["id"]))

    response = _run(admin_client, "cancel")

    assert response.status_code == 200
    assert fake_db.booking.get("bk-1")["status"] == "CANCELLED"
    assert fake_db.vehicle.get("veh-1")["available"] is True
    assert inbox.events()[0]["data"]["notification"]["type"] == "BOOKING_CANCELLED"


def test_unknown_action_and_non_staff_are_rejected(fake_db, rental, admin_client, client_for, customer):
    assert _run(admin_client, "teleport").json()["detail"] == "Invalid action"

    customer_client = client_for(customer, admin_routes.router)
    assert _run(customer_client, "confirm").status_code == 403


def test_record_payment_requires_an_invoice(fake_db, rental, admin_client):
    fake_db.booking.get("bk-1")["status"] = "COMPLETED"

    response = _run(admin_client, "record-payment", amount=100, method="CASH")

    assert response.status_code == 400
    assert response.json()["detail"] == "No invoice exists for this booking"


def test_issuing_a_paid_invoice_keeps_it_paid(fake_db, rental, admin_client):
    fake_db.booking.get("bk-1")["status"] = "PAID"
    fake_db.invoice.add(id="inv-1", bookingId="bk-1", status="PAID", totalAmount=5000.0, amountPaid=5000.0)

    response = _run(admin_client, "issue-invoice")

    assert response.status_code == 400
    assert fake_db.invoice.get("inv-1")["status"] == "PAID"


def test_draft_invoice_is_issued(fake_db, rental, admin_client):
    fake_db.booking.get("bk-1")["status"] = "INVOICED"
    fake_db.invoice.add(id="inv-1", bookingId="bk-1", status="DRAFT", totalAmount=5000.0)

    body = _run(admin_client, "issue-invoice").json()

    assert body["invoice"]["status"] == "ISSUED"
    assert fake_db.invoice.get("inv-1")["issuedAt"] is not None
