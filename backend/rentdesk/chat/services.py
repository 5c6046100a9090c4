"""Support chat persistence backed by Prisma."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from rentdesk.common.enums import ConversationStatus, ConversationType, MessageType, ParticipantRole
from rentdesk.common.utils import as_dict, extract, is_staff, parse_datetime, utcnow
from rentdesk.db.prisma_client import db

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

PARTICIPANTS_INCLUDE: Dict[str, Any] = {"participants": {"include": {"user": True}}}


class ConversationNotFoundError(Exception):
    """Raised when a conversation cannot be located."""


class ConversationAccessError(Exception):
    """Raised when a user opens a conversation they are not part of."""


def _public_user(record: Any) -> Optional[Dict[str, Any]]:
    if record is None:
        return None
    user = as_dict(record)
    return {key: user.get(key) for key in ("id", "name", "email", "image", "role")}


def serialise_message(record: Any) -> Dict[str, Any]:
    message = as_dict(record)
    if "sender" in message:
        message["sender"] = _public_user(message["sender"])
    metadata = message.get("metadata")
    if isinstance(metadata, str):
        try:
            message["metadata"] = json.loads(metadata)
        except ValueError:
            message["metadata"] = None
    return message


def serialise_conversation(record: Any) -> Dict[str, Any]:
    conversation = as_dict(record)
    if conversation.get("participants") is not None:
        participants = []
        for item in conversation["participants"]:
            entry = as_dict(item)
            if "user" in entry:
                entry["user"] = _public_user(entry["user"])
            participants.append(entry)
        conversation["participants"] = participants
    if conversation.get("messages") is not None:
        conversation["messages"] = [serialise_message(message) for message in conversation["messages"]]
    return conversation


def find_participant(conversation: Dict[str, Any], uid: Any) -> Optional[Dict[str, Any]]:
    for participant in conversation.get("participants") or []:
        entry = as_dict(participant)
        if entry.get("userId") == uid:
            return entry
    return None


class ConversationRepository:
    """Conversation and message queries sharing one database session."""

    def __init__(self, database=db):
        self._db = database
        self._should_disconnect = False

    async def __aenter__(self) -> "ConversationRepository":
        if not self._db.is_connected():
            await self._db.connect()
            self._should_disconnect = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._should_disconnect:
            await self._db.disconnect()
        self._should_disconnect = False

    async def get_conversation(self, conversation_id: str, include: Dict[str, Any] | None = None) -> Dict[str, Any]:
        record = await self._db.conversation.find_unique(
            where={"id": conversation_id},
            include=include or PARTICIPANTS_INCLUDE,
        )
        if not record:
            raise ConversationNotFoundError(conversation_id)
        return serialise_conversation(record)

    async def ensure_access(
        self, conversation_id: str, user: Any, include: Dict[str, Any] | None = None
    ) -> Dict[str, Any]:
        conversation = await self.get_conversation(conversation_id, include)
        if not is_staff(user) and find_participant(conversation, extract(user, "id")) is None:
            raise ConversationAccessError(conversation_id)
        return conversation

    async def is_participant(self, conversation_id: str, uid: str) -> bool:
        count = await self._db.conversationparticipant.count(
            where={"conversationId": conversation_id, "userId": uid}
        )
        return count > 0

    async def add_participant(self, conversation_id: str, uid: str, role: ParticipantRole) -> Dict[str, Any]:
        participant = await self._db.conversationparticipant.create(
            data={"conversationId": conversation_id, "userId": uid, "role": role.value}
        )
        return as_dict(participant)

    async def list_for_user(self, user: Any, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Staff see every conversation (optionally by status); others only their own."""

        where: Dict[str, Any] = {}
        if is_staff(user):
            if status:
                where["status"] = status
        else:
            memberships = await self._db.conversationparticipant.find_many(where={"userId": extract(user, "id")})
            ids = [as_dict(member)["conversationId"] for member in memberships]
            if not ids:
                return []
            where["id"] = {"in": ids}

        records = await self._db.conversation.find_many(
            where=where,
            include=PARTICIPANTS_INCLUDE,
            order={"updatedAt": "desc"},
        )
        return [serialise_conversation(record) for record in records]

    async def find_open_support(self, uid: str) -> Optional[Dict[str, Any]]:
        memberships = await self._db.conversationparticipant.find_many(
            where={"userId": uid, "role": ParticipantRole.CUSTOMER.value}
        )
        ids = [as_dict(member)["conversationId"] for member in memberships]
        if not ids:
            return None
        record = await self._db.conversation.find_first(
            where={
                "id": {"in": ids},
                "type": ConversationType.SUPPORT.value,
                "status": {"in": [ConversationStatus.OPEN.value, ConversationStatus.WAITING.value]},
            },
            include=PARTICIPANTS_INCLUDE,
        )
        return serialise_conversation(record) if record else None

    async def create_conversation(
        self,
        uid: str,
        type: ConversationType,
        title: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = await self._db.conversation.create(
            data={
                "type": type.value,
                "title": title or "Support Request",
                "bookingId": booking_id,
                "status": ConversationStatus.OPEN.value,
            }
        )
        conversation_id = as_dict(record)["id"]
        await self.add_participant(conversation_id, uid, ParticipantRole.CUSTOMER)
        return await self.get_conversation(conversation_id)

    async def update_conversation(self, conversation_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = await self._db.conversation.update(
            where={"id": conversation_id},
            data=data,
            include=PARTICIPANTS_INCLUDE,
        )
        return serialise_conversation(record)

    async def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        type: MessageType = MessageType.TEXT,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        message = await self._db.chatmessage.create(
            data={
                "conversationId": conversation_id,
                "senderId": sender_id,
                "content": content,
                "type": type.value,
                "metadata": json.dumps(metadata) if metadata else None,
            },
            include={"sender": True},
        )
        return serialise_message(message)

    async def list_messages(
        self, conversation_id: str, limit: int = 50, before: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Newest ``limit`` non-deleted messages older than ``before``, oldest first."""

        where: Dict[str, Any] = {"conversationId": conversation_id, "deletedAt": None}
        if before is not None:
            where["createdAt"] = {"lt": before}
        records: Iterable[Any] = await self._db.chatmessage.find_many(
            where=where,
            order={"createdAt": "desc"},
            take=limit,
            include={"sender": True},
        )
        messages = [serialise_message(record) for record in records]
        messages.reverse()
        return messages

    async def last_message(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        record = await self._db.chatmessage.find_first(
            where={"conversationId": conversation_id},
            order={"createdAt": "desc"},
            include={"sender": True},
        )
        return serialise_message(record) if record else None

    async def mark_read(self, conversation_id: str, uid: str) -> None:
        await self._db.conversationparticipant.update_many(
            where={"conversationId": conversation_id, "userId": uid},
            data={"lastReadAt": utcnow()},
        )

    async def unread_count(self, conversation: Dict[str, Any], uid: str) -> int:
        """Messages from other people newer than the user's last read marker."""

        participant = find_participant(conversation, uid) or {}
        last_read = parse_datetime(participant.get("lastReadAt")) or _EPOCH
        return await self._db.chatmessage.count(
            where={
                "conversationId": conversation["id"],
                "createdAt": {"gt": last_read},
                "senderId": {"not": uid},
            }
        )
