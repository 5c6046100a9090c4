"""WebSocket endpoint for realtime channel subscriptions."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel

from rentdesk.auth.dependencies import get_current_user, resolve_user
from rentdesk.chat.services import ConversationRepository
from rentdesk.common.utils import as_dict
from rentdesk.db.prisma_client import db
from rentdesk.realtime.channels import authorize_channel, subscribe, unsubscribe, unsubscribe_all

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


class ChannelAuthRequest(BaseModel):
    channel_name: str


def _participant_check(user: Any):
    uid = as_dict(user).get("id")

    async def is_participant(conversation_id: str) -> bool:
        async with ConversationRepository(db) as repo:
            return await repo.is_participant(conversation_id, uid)

    return is_participant


@router.post("/auth")
async def authorize_subscription(payload: ChannelAuthRequest, user=Depends(get_current_user)) -> Dict[str, Any]:
    allowed = await authorize_channel(user, payload.channel_name, _participant_check(user))
    if not allowed:
        raise HTTPException(status_code=403, detail="Forbidden")
    return {"channel": payload.channel_name, "authorized": True}


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket) -> None:
    token = websocket.query_params.get("token") or websocket.headers.get("Authorization")
    if token and token.lower().startswith("bearer "):
        token = token.split(" ", 1)[1]
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        user = await resolve_user(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    is_participant = _participant_check(user)

    try:
        while True:
            raw = (await websocket.receive_text()).strip()
            if not raw:
                continue
            try:
                frame = json.loads(raw)
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"message": "Invalid frame"}})
                continue

            action = frame.get("action") if isinstance(frame, dict) else None
            channel = frame.get("channel") if isinstance(frame, dict) else None
            if not isinstance(channel, str) or not channel or action not in ("subscribe", "unsubscribe"):
                await websocket.send_json({"event": "error", "data": {"message": "Invalid frame"}})
                continue

            if action == "unsubscribe":
                unsubscribe(channel, websocket)
                continue

            if await authorize_channel(user, channel, is_participant):
                subscribe(channel, websocket)
                await websocket.send_json({"channel": channel, "event": "subscription_succeeded", "data": {}})
            else:
                logger.info("Subscription to %s refused for user %s", channel, as_dict(user).get("id"))
                await websocket.send_json(
                    {"channel": channel, "event": "subscription_error", "data": {"status": 403}}
                )
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe_all(websocket)
