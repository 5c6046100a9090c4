from enum import Enum


class Role(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    CUSTOMER = "CUSTOMER"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class VehicleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    MAINTENANCE = "MAINTENANCE"
    RETIRED = "RETIRED"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COLLECTED = "COLLECTED"
    COMPLETED = "COMPLETED"
    INVOICED = "INVOICED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class FuelLevel(str, Enum):
    EMPTY = "EMPTY"
    QUARTER = "QUARTER"
    HALF = "HALF"
    THREE_QUARTER = "THREE_QUARTER"
    FULL = "FULL"


class PackageType(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    AIRPORT_PICKUP = "AIRPORT_PICKUP"
    AIRPORT_DROP = "AIRPORT_DROP"
    AIRPORT_ROUND = "AIRPORT_ROUND"
    HOURLY = "HOURLY"
    CUSTOM = "CUSTOM"


class NotificationType(str, Enum):
    BOOKING_CREATED = "BOOKING_CREATED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    BOOKING_REMINDER = "BOOKING_REMINDER"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REVIEW_RECEIVED = "REVIEW_RECEIVED"
    PROMOTION = "PROMOTION"
    SYSTEM = "SYSTEM"
    CHAT_MESSAGE = "CHAT_MESSAGE"


class ConversationType(str, Enum):
    SUPPORT = "SUPPORT"
    BOOKING = "BOOKING"
    GENERAL = "GENERAL"


class ConversationStatus(str, Enum):
    OPEN = "OPEN"
    WAITING = "WAITING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class ParticipantRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    SUPPORT = "SUPPORT"
    ADMIN = "ADMIN"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"
    SYSTEM = "SYSTEM"


STAFF_ROLES = frozenset({Role.SUPER_ADMIN.value, Role.ADMIN.value, Role.MANAGER.value})

# Statuses that hold a vehicle for the booked date range.
ACTIVE_BOOKING_STATUSES = [
    BookingStatus.PENDING.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.COLLECTED.value,
]
