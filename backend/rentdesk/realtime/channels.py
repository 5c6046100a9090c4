"""Channel registry and event fan-out for realtime subscribers."""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Set, Tuple

from starlette.websockets import WebSocket

from rentdesk.common.utils import is_staff, user_id

logger = logging.getLogger(__name__)


class Channels:
    """Channel name builders shared by the publishers and the socket handler."""

    ADMIN_NOTIFICATIONS = "private-admin-notifications"
    ADMIN_CHAT = "private-admin-chat"
    ADMIN_BOOKINGS = "private-admin-bookings"

    @staticmethod
    def user_notifications(uid: str) -> str:
        return f"private-user-{uid}-notifications"

    @staticmethod
    def user_chat(uid: str) -> str:
        return f"private-user-{uid}-chat"

    @staticmethod
    def conversation(conversation_id: str) -> str:
        return f"private-conversation-{conversation_id}"


class Events:
    NEW_NOTIFICATION = "new-notification"
    NOTIFICATION_READ = "notification-read"
    NOTIFICATIONS_CLEARED = "notifications-cleared"

    NEW_MESSAGE = "new-message"
    MESSAGE_UPDATED = "message-updated"
    MESSAGE_DELETED = "message-deleted"
    TYPING_START = "typing-start"
    TYPING_STOP = "typing-stop"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    CONVERSATION_CLOSED = "conversation-closed"

    BOOKING_UPDATED = "booking-updated"


_subscriptions: Dict[str, Set[WebSocket]] = {}


def subscribe(channel: str, websocket: WebSocket) -> None:
    """Register ``websocket`` as a listener on ``channel``."""

    _subscriptions.setdefault(channel, set()).add(websocket)


def unsubscribe(channel: str, websocket: WebSocket) -> None:
    """Remove ``websocket`` from ``channel`` if present."""

    listeners = _subscriptions.get(channel)
    if listeners is None:
        return
    listeners.discard(websocket)
    if not listeners:
        _subscriptions.pop(channel, None)


def unsubscribe_all(websocket: WebSocket) -> None:
    """Drop every subscription held by ``websocket``."""

    for channel in list(_subscriptions):
        unsubscribe(channel, websocket)


def iter_subscribers(channel: str) -> Tuple[WebSocket, ...]:
    """Return a snapshot of the sockets listening on ``channel``."""

    return tuple(_subscriptions.get(channel, ()))


def active_channels() -> Tuple[str, ...]:
    return tuple(_subscriptions.keys())


def _state_is_connected(state: object) -> bool:
    """Return ``True`` if a websocket state represents an active connection."""

    if state is None:
        return True
    name = getattr(state, "name", state)
    return str(name).upper() == "CONNECTED"


def _should_prune(websocket: WebSocket) -> bool:
    client_state = getattr(websocket, "client_state", None)
    application_state = getattr(websocket, "application_state", None)
    return not (_state_is_connected(client_state) and _state_is_connected(application_state))


async def _safe_send(websocket: WebSocket, payload: str) -> bool:
    """Attempt to send data and return ``True`` if successful."""

    if _should_prune(websocket):
        return False

    try:
        await websocket.send_text(payload)
        return True
    except Exception:
        logger.warning("Failed to send event to websocket; pruning connection.", exc_info=True)
        return False


async def trigger(channel: str, event: str, data: Dict[str, Any]) -> int:
    """Publish ``event`` on ``channel`` and return how many sockets received it."""

    message = json.dumps({"channel": channel, "event": event, "data": data}, default=str)
    delivered = 0
    stale: list[WebSocket] = []

    for websocket in iter_subscribers(channel):
        if await _safe_send(websocket, message):
            delivered += 1
        else:
            stale.append(websocket)

    for websocket in stale:
        unsubscribe_all(websocket)

    logger.debug("Published %s on %s to %d subscriber(s)", event, channel, delivered)
    return delivered


async def authorize_channel(
    user: Any,
    channel: str,
    is_participant: Callable[[str], Awaitable[bool]] | None = None,
) -> bool:
    """Decide whether ``user`` may listen on ``channel``.

    ``is_participant`` is awaited with a conversation id and reports membership;
    it is only consulted for conversation channels and only for non-staff users.
    """

    staff = is_staff(user)
    uid = str(user_id(user))

    if channel.startswith("private-user-"):
        owner = channel[len("private-user-"):].rsplit("-", 1)[0]
        return staff or owner == uid
    if channel.startswith("private-admin-"):
        return staff
    if channel.startswith("private-conversation-"):
        if staff:
            return True
        conversation_id = channel[len("private-conversation-"):]
        if is_participant is None:
            return False
        return bool(await is_participant(conversation_id))
    return False
