from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from rentdesk.auth.dependencies import get_current_user
from rentdesk.common.enums import NotificationType
from rentdesk.common.utils import as_dict, is_staff, utcnow
from rentdesk.db.prisma_client import db, prisma_session
from rentdesk.notifications.service import send_notification, serialise_notification
from rentdesk.realtime.channels import Channels, Events, trigger

router = APIRouter(prefix="/notifications", tags=["Notifications"])


class NotificationCreate(BaseModel):
    userId: Optional[str] = None
    type: Optional[NotificationType] = None
    title: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class NotificationUpdate(BaseModel):
    notificationIds: Optional[List[str]] = None
    markAllRead: bool = False


@router.get("")
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    unreadOnly: bool = False,
    user=Depends(get_current_user),
) -> Dict[str, Any]:
    uid = as_dict(user)["id"]
    where: Dict[str, Any] = {"userId": uid}
    if unreadOnly:
        where["read"] = False

    async with prisma_session(db) as client:
        notifications = await client.notification.find_many(
            where=where, order={"createdAt": "desc"}, take=limit, skip=offset
        )
        total = await client.notification.count(where=where)
        unread = await client.notification.count(where={"userId": uid, "read": False})

    return {
        "notifications": [serialise_notification(item) for item in notifications],
        "total": total,
        "unreadCount": unread,
        "hasMore": offset + len(notifications) < total,
    }


@router.post("", status_code=201)
async def create_notification(payload: NotificationCreate, user=Depends(get_current_user)) -> Dict[str, Any]:
    # Only staff may address someone else.
    target = payload.userId if is_staff(user) else as_dict(user)["id"]
    if not target or not payload.type or not payload.title or not payload.message:
        raise HTTPException(status_code=400, detail="Missing required fields")
    return await send_notification(
        user_id=target,
        type=payload.type,
        title=payload.title,
        message=payload.message,
        data=payload.data,
    )


@router.patch("")
async def mark_notifications_read(payload: NotificationUpdate, user=Depends(get_current_user)) -> Dict[str, Any]:
    uid = as_dict(user)["id"]
    channel = Channels.user_notifications(uid)
    now = utcnow()

    if payload.markAllRead:
        async with prisma_session(db) as client:
            await client.notification.update_many(
                where={"userId": uid, "read": False},
                data={"read": True, "readAt": now},
            )
        await trigger(channel, Events.NOTIFICATIONS_CLEARED, {})
        return {"success": True, "message": "All notifications marked as read"}

    if payload.notificationIds is None:
        raise HTTPException(status_code=400, detail="Missing notification IDs")

    async with prisma_session(db) as client:
        await client.notification.update_many(
            where={"id": {"in": payload.notificationIds}, "userId": uid},
            data={"read": True, "readAt": now},
        )
    await trigger(channel, Events.NOTIFICATION_READ, {"notificationIds": payload.notificationIds})
    return {"success": True}


@router.delete("")
async def delete_notifications(
    id: Optional[str] = None,
    deleteAll: bool = False,
    user=Depends(get_current_user),
) -> Dict[str, Any]:
    uid = as_dict(user)["id"]
    if deleteAll:
        async with prisma_session(db) as client:
            await client.notification.delete_many(where={"userId": uid})
        return {"success": True, "message": "All notifications deleted"}

    if not id:
        raise HTTPException(status_code=400, detail="Missing notification ID")

    async with prisma_session(db) as client:
        deleted = await client.notification.delete_many(where={"id": id, "userId": uid})
    if not deleted:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}
