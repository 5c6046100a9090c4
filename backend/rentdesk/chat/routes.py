"""Support chat routes.

Messages are stored through :class:`ConversationRepository` and fanned out on
the conversation channel; customer messages are mirrored to the admin chat
channel so the support console sees new activity without joining first.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from rentdesk.auth.dependencies import get_current_user
from rentdesk.chat.services import (
    ConversationAccessError,
    ConversationNotFoundError,
    ConversationRepository,
    find_participant,
)
from rentdesk.common.enums import ConversationStatus, ConversationType, MessageType, ParticipantRole
from rentdesk.common.utils import as_dict, display_name, is_staff, parse_datetime, utcnow
from rentdesk.db.prisma_client import db
from rentdesk.notifications.service import NotificationTemplates, send_bulk_notifications
from rentdesk.realtime.channels import Channels, Events, trigger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["Chat"])

DETAIL_INCLUDE: Dict[str, Any] = {
    "participants": {"include": {"user": True}},
    "messages": {"include": {"sender": True}, "order_by": {"createdAt": "asc"}},
}


class ConversationCreate(BaseModel):
    type: ConversationType = ConversationType.SUPPORT
    title: Optional[str] = None
    bookingId: Optional[str] = None
    initialMessage: Optional[str] = None


class ConversationUpdate(BaseModel):
    status: Optional[ConversationStatus] = None
    joinAsSupport: bool = False


class MessageCreate(BaseModel):
    content: str = ""
    type: MessageType = MessageType.TEXT
    metadata: Optional[Dict[str, Any]] = None


class MessagePage(BaseModel):
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    hasMore: bool = False


async def _open_conversation(
    repo: ConversationRepository, conversation_id: str, user: Any, include: Dict[str, Any] | None = None
) -> Dict[str, Any]:
    try:
        return await repo.ensure_access(conversation_id, user, include)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except ConversationAccessError:
        raise HTTPException(status_code=403, detail="Access denied")


@router.get("/conversations", summary="List conversations visible to the caller")
async def list_conversations(status: Optional[str] = None, user=Depends(get_current_user)) -> List[Dict[str, Any]]:
    uid = as_dict(user)["id"]
    async with ConversationRepository(db) as repo:
        conversations = await repo.list_for_user(user, status)
        for conversation in conversations:
            conversation["unreadCount"] = await repo.unread_count(conversation, uid)
            conversation["lastMessage"] = await repo.last_message(conversation["id"])
    return conversations


@router.post("/conversations", status_code=201, summary="Start a support conversation")
async def create_conversation(
    payload: ConversationCreate, response: Response, user=Depends(get_current_user)
) -> Dict[str, Any]:
    uid = as_dict(user)["id"]
    async with ConversationRepository(db) as repo:
        if payload.type == ConversationType.SUPPORT:
            existing = await repo.find_open_support(uid)
            if existing:
                response.status_code = 200
                return existing

        conversation = await repo.create_conversation(uid, payload.type, payload.title, payload.bookingId)
        initial = (payload.initialMessage or "").strip()
        message = await repo.create_message(conversation["id"], uid, initial) if initial else None

    logger.info("Conversation %s opened by %s", conversation["id"], uid)
    if message:
        await trigger(
            Channels.ADMIN_CHAT,
            Events.NEW_MESSAGE,
            {"conversationId": conversation["id"], "message": message, "isNewConversation": True},
        )
    return conversation


@router.get("/conversations/{conversation_id}", summary="Conversation with participants and messages")
async def get_conversation(conversation_id: str, user=Depends(get_current_user)) -> Dict[str, Any]:
    async with ConversationRepository(db) as repo:
        conversation = await _open_conversation(repo, conversation_id, user, DETAIL_INCLUDE)
        await repo.mark_read(conversation_id, as_dict(user)["id"])
    return conversation


@router.patch("/conversations/{conversation_id}", summary="Join as support or change status")
async def update_conversation(
    conversation_id: str, payload: ConversationUpdate, user=Depends(get_current_user)
) -> Dict[str, Any]:
    current = as_dict(user)
    uid = current["id"]
    staff = is_staff(user)
    name = display_name(current, "Support agent")
    events: List[tuple[str, Dict[str, Any]]] = []

    async with ConversationRepository(db) as repo:
        conversation = await _open_conversation(repo, conversation_id, user)

        if payload.joinAsSupport and staff and find_participant(conversation, uid) is None:
            await repo.add_participant(conversation_id, uid, ParticipantRole.SUPPORT)
            await repo.create_message(
                conversation_id, uid, f"{name} joined the conversation", MessageType.SYSTEM
            )
            events.append(
                (Events.USER_JOINED, {"userId": uid, "name": current.get("name"), "role": ParticipantRole.SUPPORT.value})
            )

        if payload.status:
            data: Dict[str, Any] = {"status": payload.status.value}
            if payload.status == ConversationStatus.CLOSED:
                data["closedAt"] = utcnow()
            conversation = await repo.update_conversation(conversation_id, data)
            if payload.status == ConversationStatus.CLOSED:
                await repo.create_message(
                    conversation_id, uid, "This conversation has been closed", MessageType.SYSTEM
                )
                events.append((Events.CONVERSATION_CLOSED, {"closedBy": current.get("name")}))
        else:
            conversation = await repo.get_conversation(conversation_id)

    for event, data in events:
        await trigger(Channels.conversation(conversation_id), event, data)
    return conversation


@router.post("/conversations/{conversation_id}/messages", status_code=201, summary="Send a message")
async def send_message(
    conversation_id: str, payload: MessageCreate, user=Depends(get_current_user)
) -> Dict[str, Any]:
    content = payload.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content is required")

    current = as_dict(user)
    uid = current["id"]
    staff = is_staff(user)

    async with ConversationRepository(db) as repo:
        conversation = await _open_conversation(repo, conversation_id, user)
        if staff and find_participant(conversation, uid) is None:
            await repo.add_participant(conversation_id, uid, ParticipantRole.SUPPORT)

        message = await repo.create_message(conversation_id, uid, content, payload.type, payload.metadata)
        # A staff reply leaves the thread waiting on the customer.
        status = ConversationStatus.WAITING if staff else ConversationStatus.OPEN
        await repo.update_conversation(conversation_id, {"status": status.value, "updatedAt": utcnow()})
        await repo.mark_read(conversation_id, uid)

    await trigger(Channels.conversation(conversation_id), Events.NEW_MESSAGE, {"message": message})

    recipients = [
        as_dict(participant)["userId"]
        for participant in conversation.get("participants") or []
        if as_dict(participant).get("userId") != uid
    ]
    if recipients:
        await send_bulk_notifications(
            recipients,
            **NotificationTemplates.new_chat_message(display_name(current), conversation_id),
        )

    if not staff:
        await trigger(
            Channels.ADMIN_CHAT,
            Events.NEW_MESSAGE,
            {"conversationId": conversation_id, "message": message},
        )
    return message


@router.get("/conversations/{conversation_id}/messages", summary="Page through a conversation")
async def list_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=200),
    before: Optional[str] = None,
    user=Depends(get_current_user),
) -> Dict[str, Any]:
    try:
        cursor = parse_datetime(before)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid cursor")

    async with ConversationRepository(db) as repo:
        await _open_conversation(repo, conversation_id, user)
        messages = await repo.list_messages(conversation_id, limit, cursor)
        await repo.mark_read(conversation_id, as_dict(user)["id"])

    return MessagePage(messages=messages, hasMore=len(messages) == limit).model_dump()
