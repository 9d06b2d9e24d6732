"""Notification routes."""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from app.config import MAX_PAGE_SIZE
from app.deps import get_current_user, get_notification_service
from app.models.notification import NotificationStatus, NotificationType
from app.models.user import User
from app.services.notifications import NotificationService
from app.utils.serialization import pagination_meta, success_response

router = APIRouter(tags=["notifications"])


@router.get("/notifications")
async def get_notifications(
    status: Optional[NotificationStatus] = None,
    type: Optional[NotificationType] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    user: User = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    """Get user's notifications"""
    items, total, unread = await notifications.list_for_user(
        user.user_id,
        status=status.value if status else None,
        notification_type=type.value if type else None,
        page=page,
        limit=limit,
    )
    body = success_response(items, pagination=pagination_meta(page, limit, total))
    body["unread_count"] = unread
    return body


@router.get("/notifications/unread-count")
async def get_unread_count(
    user: User = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    return success_response({"unread_count": await notifications.unread_count(user.user_id)})


@router.put("/notifications/mark-all-read")
async def mark_all_notifications_read(
    user: User = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    """Mark all notifications as read"""
    count = await notifications.mark_all_read(user.user_id)
    return success_response({"count": count}, message="All notifications marked as read")


@router.put("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    user: User = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    """Mark notification as read"""
    return success_response(await notifications.mark_read(notification_id, user.user_id))


@router.put("/notifications/{notification_id}/acknowledge")
async def acknowledge_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    return success_response(await notifications.acknowledge(notification_id, user.user_id))


@router.put("/notifications/{notification_id}/dismiss")
async def dismiss_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    return success_response(await notifications.dismiss(notification_id, user.user_id))
