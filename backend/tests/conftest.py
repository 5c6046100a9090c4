"""Shared fixtures: an in-memory stand-in for the Prisma client and app builders."""

from __future__ import annotations

import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from rentdesk.admin import routes as admin_routes
from rentdesk.auth import dependencies as auth_dependencies
from rentdesk.auth import routes as auth_routes
from rentdesk.auth.dependencies import get_current_user
from rentdesk.bookings import admin_routes as admin_booking_routes
from rentdesk.bookings import routes as booking_routes
from rentdesk.chat import routes as chat_routes
from rentdesk.core import scheduler
from rentdesk.invoices import routes as invoice_routes
from rentdesk.notifications import routes as notification_routes
from rentdesk.notifications import service as notification_service
from rentdesk.packages import routes as package_routes
from rentdesk.realtime import channels
from rentdesk.realtime import routes as realtime_routes
from rentdesk.vehicles import routes as vehicle_routes

PATCHED_MODULES = (
    admin_routes,
    auth_dependencies,
    auth_routes,
    admin_booking_routes,
    booking_routes,
    chat_routes,
    scheduler,
    invoice_routes,
    notification_routes,
    notification_service,
    package_routes,
    realtime_routes,
    vehicle_routes,
)

# relation -> (table, cardinality, local field, remote field)
RELATIONS: Dict[str, Dict[str, tuple]] = {
    "booking": {
        "vehicle": ("vehicle", "one", "vehicleId", "id"),
        "user": ("user", "one", "userId", "id"),
        "packages": ("bookingpackage", "many", "id", "bookingId"),
        "customCosts": ("bookingcustomcost", "many", "id", "bookingId"),
        "invoice": ("invoice", "one", "id", "bookingId"),
    },
    "bookingpackage": {"package": ("package", "one", "packageId", "id")},
    "package": {
        "customCosts": ("packagecustomcost", "many", "id", "packageId"),
        "vehiclePackages": ("vehiclepackage", "many", "id", "packageId"),
    },
    "vehiclepackage": {
        "vehicle": ("vehicle", "one", "vehicleId", "id"),
        "package": ("package", "one", "packageId", "id"),
    },
    "invoice": {
        "booking": ("booking", "one", "bookingId", "id"),
        "payments": ("invoicepayment", "many", "id", "invoiceId"),
    },
    "conversation": {
        "participants": ("conversationparticipant", "many", "id", "conversationId"),
        "messages": ("chatmessage", "many", "id", "conversationId"),
    },
    "conversationparticipant": {"user": ("user", "one", "userId", "id")},
    "chatmessage": {"sender": ("user", "one", "senderId", "id")},
}

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "user": {"role": "CUSTOMER", "status": "ACTIVE", "name": None},
    "vehicle": {"available": True, "status": "ACTIVE"},
    "booking": {"status": "PENDING", "advancePaid": False, "isPackageBooking": False, "reminderSentAt": None},
    "package": {"isActive": True, "isGlobal": False, "sortOrder": 0},
    "packagecustomcost": {"isActive": True, "isOptional": False, "sortOrder": 0},
    "invoice": {"amountPaid": 0.0},
    "notification": {"read": False, "readAt": None, "data": None},
    "conversation": {"status": "OPEN", "closedAt": None},
    "conversationparticipant": {"lastReadAt": None},
    "chatmessage": {"type": "TEXT", "deletedAt": None, "metadata": None},
}

TABLES = (
    "user",
    "vehicle",
    "booking",
    "bookingpackage",
    "bookingcustomcost",
    "package",
    "packagecustomcost",
    "vehiclepackage",
    "invoice",
    "invoicepayment",
    "notification",
    "conversation",
    "conversationparticipant",
    "chatmessage",
    "auditlog",
)


def _value(value: Any) -> Any:
    return getattr(value, "value", value)


def _matches_condition(actual: Any, condition: Any) -> bool:
    if not isinstance(condition, dict):
        return _value(actual) == _value(condition)
    for op, expected in condition.items():
        if op == "equals" and _value(actual) != _value(expected):
            return False
        if op == "in" and _value(actual) not in [_value(item) for item in expected]:
            return False
        if op == "not" and _matches_condition(actual, expected):
            return False
        if op == "startswith" and not str(actual or "").startswith(expected):
            return False
        if op in ("lt", "lte", "gt", "gte"):
            if actual is None:
                return False
            if op == "lt" and not actual < expected:
                return False
            if op == "lte" and not actual <= expected:
                return False
            if op == "gt" and not actual > expected:
                return False
            if op == "gte" and not actual >= expected:
                return False
    return True


def _matches(record: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    return all(_matches_condition(record.get(key), condition) for key, condition in (where or {}).items())


def _sort(records: List[Dict[str, Any]], order: Any) -> List[Dict[str, Any]]:
    if not order:
        return records
    orders = order if isinstance(order, list) else [order]
    for rule in reversed(orders):
        for field, direction in reversed(list(rule.items())):
            present = [record for record in records if record.get(field) is not None]
            missing = [record for record in records if record.get(field) is None]
            present.sort(key=lambda record: _value(record[field]), reverse=direction == "desc")
            records = present + missing
    return records


class FakeTable:
    def __init__(self, db: "FakeDB", name: str) -> None:
        self._db = db
        self.name = name
        self.records: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    def add(self, **data: Any) -> Dict[str, Any]:
        record = {**DEFAULTS.get(self.name, {}), **data}
        record.setdefault("id", f"{self.name}-{next(self._ids)}")
        now = self._db.tick()
        record.setdefault("createdAt", now)
        record.setdefault("updatedAt", now)
        self.records.append(record)
        return record

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        return next((record for record in self.records if record["id"] == record_id), None)

    def _render(self, record: Dict[str, Any], include: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        result = dict(record)
        for relation, options in (include or {}).items():
            if not options:
                continue
            target, cardinality, local, remote = RELATIONS[self.name][relation]
            table = self._db.table(target)
            nested = options.get("include") if isinstance(options, dict) else None
            if cardinality == "one":
                key = record.get(local)
                found = next((item for item in table.records if key is not None and item.get(remote) == key), None)
                result[relation] = table._render(found, nested) if found else None
            else:
                items = [item for item in table.records if item.get(remote) == record.get(local)]
                if isinstance(options, dict):
                    items = [item for item in items if _matches(item, options.get("where"))]
                    items = _sort(items, options.get("order_by"))
                    if options.get("take"):
                        items = items[: options["take"]]
                result[relation] = [table._render(item, nested) for item in items]
        return result

    def _select(self, where: Optional[Dict[str, Any]], order: Any = None) -> List[Dict[str, Any]]:
        return _sort([record for record in self.records if _matches(record, where)], order)

    async def find_unique(self, where: Dict[str, Any], include: Optional[Dict[str, Any]] = None):
        found = self._select(where)
        return self._render(found[0], include) if found else None

    async def find_first(self, where: Optional[Dict[str, Any]] = None, include=None, order=None):
        found = self._select(where, order)
        return self._render(found[0], include) if found else None

    async def find_many(self, where=None, include=None, order=None, take=None, skip=None):
        found = self._select(where, order)
        if skip:
            found = found[skip:]
        if take is not None:
            found = found[:take]
        return [self._render(record, include) for record in found]

    async def create(self, data: Dict[str, Any], include: Optional[Dict[str, Any]] = None):
        self._db.create_calls.append(self.name)
        nested = {
            key: value["create"]
            for key, value in data.items()
            if isinstance(value, dict) and "create" in value
        }
        scalars = {key: _value(value) for key, value in data.items() if key not in nested}
        record = self.add(**scalars)
        for relation, rows in nested.items():
            target, _, local, remote = RELATIONS[self.name][relation]
            for row in rows if isinstance(rows, list) else [rows]:
                self._db.table(target).add(**{key: _value(value) for key, value in row.items()}, **{remote: record[local]})
        return self._render(record, include)

    async def update(self, where: Dict[str, Any], data: Dict[str, Any], include: Optional[Dict[str, Any]] = None):
        found = self._select(where)
        if not found:
            return None
        record = found[0]
        record.update({key: _value(value) for key, value in data.items()})
        record["updatedAt"] = data.get("updatedAt") or self._db.tick()
        return self._render(record, include)

    async def update_many(self, where: Dict[str, Any], data: Dict[str, Any]) -> int:
        found = self._select(where)
        for record in found:
            record.update({key: _value(value) for key, value in data.items()})
        return len(found)

    async def count(self, where: Optional[Dict[str, Any]] = None) -> int:
        return len(self._select(where))

    async def delete(self, where: Dict[str, Any]):
        found = self._select(where)
        if not found:
            return None
        self.records.remove(found[0])
        return dict(found[0])

    async def delete_many(self, where: Optional[Dict[str, Any]] = None) -> int:
        found = self._select(where)
        for record in found:
            self.records.remove(record)
        return len(found)


class FakeDB:
    """Just enough of the Prisma query API for the route modules."""

    def __init__(self) -> None:
        self.connected = False
        self.connect_calls = 0
        self.create_calls: List[str] = []
        self._clock = datetime.now(timezone.utc)
        for name in TABLES:
            setattr(self, name, FakeTable(self, name))

    def table(self, name: str) -> FakeTable:
        return getattr(self, name)

    def tick(self) -> datetime:
        step = timedelta(microseconds=1)
        self._clock = max(self._clock + step, datetime.now(timezone.utc) + step)
        return self._clock

    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connect_calls += 1
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False


class DummyWebSocket:
    """Records frames sent through the realtime registry."""

    def __init__(self, *, should_fail: bool = False) -> None:
        self.should_fail = should_fail
        self.messages: List[str] = []
        self.client_state = "CONNECTED"
        self.application_state = "CONNECTED"

    async def send_text(self, data: str) -> None:
        if self.should_fail:
            self.client_state = "DISCONNECTED"
            self.application_state = "DISCONNECTED"
            raise RuntimeError("connection closed")
        self.messages.append(data)

    def events(self) -> List[Dict[str, Any]]:
        return [json.loads(message) for message in self.messages]

    def event_names(self) -> List[str]:
        return [frame["event"] for frame in self.events()]


@pytest.fixture()
def fake_db(monkeypatch: pytest.MonkeyPatch) -> FakeDB:
    database = FakeDB()
    for module in PATCHED_MODULES:
        monkeypatch.setattr(module, "db", database)
    return database


@pytest.fixture(autouse=True)
def _reset_channels():
    channels._subscriptions.clear()
    yield
    channels._subscriptions.clear()


@pytest.fixture()
def listen() -> Callable[[str], DummyWebSocket]:
    def _listen(channel: str) -> DummyWebSocket:
        websocket = DummyWebSocket()
        channels.subscribe(channel, websocket)
        return websocket

    return _listen


def build_app(*routers: Iterable[Any]) -> FastAPI:
    api = FastAPI()
    for router in routers:
        api.include_router(router)
    return api


@pytest.fixture()
def client_for(fake_db: FakeDB) -> Callable[..., TestClient]:
    """``client_for(user, *routers)`` builds a TestClient acting as ``user``."""

    def _client(user: Optional[Dict[str, Any]], *routers: Any) -> TestClient:
        api = build_app(*routers)
        if user is not None:
            api.dependency_overrides[get_current_user] = lambda: user
        return TestClient(api)

    return _client


@pytest.fixture()
def customer(fake_db: FakeDB) -> Dict[str, Any]:
    return fake_db.user.add(id="cust-1", email="nimal@example.com", name="Nimal", role="CUSTOMER")


@pytest.fixture()
def admin(fake_db: FakeDB) -> Dict[str, Any]:
    return fake_db.user.add(id="admin-1", email="admin@example.com", name="Asha", role="ADMIN")
