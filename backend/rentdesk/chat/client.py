"""Client-side view of a support conversation.

:class:`ChatTimeline` keeps the local message list consistent while messages
arrive from two directions: the REST response to our own send and the realtime
``new-message`` event for everyone's messages. Our own sends are shown at once
under a temporary id and reconciled when the server answers.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from rentdesk.realtime.channels import Events

logger = logging.getLogger(__name__)

_temp_ids = itertools.count(1)


def _temp_id() -> str:
    return f"temp-{next(_temp_ids)}"


class MessageNotSent(Exception):
    """A send failed; ``content`` holds the text to put back in the composer."""

    def __init__(self, content: Optional[str]) -> None:
        super().__init__("Message was not delivered")
        self.content = content


@dataclass
class ChatTimeline:
    conversation_id: str
    user_id: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    unread_count: int = 0
    focused: bool = True
    closed: bool = False

    def _index(self, message_id: Any) -> Optional[int]:
        for index, message in enumerate(self.messages):
            if message.get("id") == message_id:
                return index
        return None

    def has_message(self, message_id: Any) -> bool:
        return self._index(message_id) is not None

    def add_optimistic(self, content: str, sender_id: Optional[str] = None) -> Dict[str, Any]:
        message = {
            "id": _temp_id(),
            "conversationId": self.conversation_id,
            "senderId": sender_id or self.user_id,
            "content": content,
            "type": "TEXT",
            "pending": True,
        }
        self.messages.append(message)
        return message

    def confirm(self, temp_id: str, message: Dict[str, Any]) -> None:
        """Swap the pending entry for the stored message."""

        index = self._index(temp_id)
        if self.has_message(message.get("id")):
            # The channel delivered it first; drop the placeholder.
            if index is not None:
                del self.messages[index]
            return
        if index is None:
            self.messages.append(message)
        else:
            self.messages[index] = message

    def fail(self, temp_id: str) -> Optional[str]:
        """Drop a pending entry and return its text for the input box."""

        index = self._index(temp_id)
        if index is None:
            return None
        return self.messages.pop(index).get("content")

    def apply_event(self, event: str, data: Dict[str, Any]) -> bool:
        """Apply a channel event; returns ``True`` when the timeline changed."""

        if event == Events.NEW_MESSAGE:
            message = data.get("message") or {}
            if not message.get("id") or self.has_message(message["id"]):
                return False
            self.messages.append(message)
            if message.get("senderId") != self.user_id and not self.focused:
                self.unread_count += 1
            return True

        if event == Events.MESSAGE_DELETED:
            index = self._index(data.get("messageId"))
            if index is None:
                return False
            del self.messages[index]
            return True

        if event == Events.MESSAGE_UPDATED:
            message = data.get("message") or {}
            index = self._index(message.get("id"))
            if index is None:
                return False
            self.messages[index] = {**self.messages[index], **message}
            return True

        if event == Events.CONVERSATION_CLOSED:
            self.closed = True
            return True

        return False

    def mark_read(self) -> None:
        self.unread_count = 0


class ChatClient:
    """Send messages through the HTTP API with optimistic timeline updates."""

    def __init__(self, base_url: str, token: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url)
        self._headers = {"Authorization": f"Bearer {token}"}

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send_message(self, timeline: ChatTimeline, content: str) -> Dict[str, Any]:
        """Post ``content``; on failure the pending entry is removed and ``MessageNotSent`` raised."""

        pending = timeline.add_optimistic(content)
        try:
            response = await self._client.post(
                f"/chat/conversations/{timeline.conversation_id}/messages",
                json={"content": content},
                headers=self._headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            restored = timeline.fail(pending["id"])
            logger.warning("Message to %s was not delivered", timeline.conversation_id, exc_info=True)
            raise MessageNotSent(restored) from exc
        message = response.json()
        timeline.confirm(pending["id"], message)
        return message

    async def load_messages(
        self, timeline: ChatTimeline, limit: int = 50, before: Optional[str] = None
    ) -> bool:
        """Prepend an older page to the timeline; returns ``hasMore``."""

        params: Dict[str, Any] = {"limit": limit}
        if before:
            params["before"] = before
        response = await self._client.get(
            f"/chat/conversations/{timeline.conversation_id}/messages",
            params=params,
            headers=self._headers,
        )
        response.raise_for_status()
        page = response.json()
        older = [message for message in page.get("messages", []) if not timeline.has_message(message.get("id"))]
        timeline.messages[:0] = older
        timeline.mark_read()
        return bool(page.get("hasMore"))
