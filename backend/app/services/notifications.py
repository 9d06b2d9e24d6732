"""
Notification helpers - durable records plus best-effort live push.
"""

from typing import List, Optional, Tuple

from pymongo import ReturnDocument

from app.config import logger
from app.errors import NotFound, StateConflict
from app.models.notification import NotificationStatus
from app.utils.ids import new_id, utc_now_iso
from app.utils.serialization import serialize_doc

PUSH_USER = "user"
PUSH_TEACHER_AND_ADMIN = "teacher_and_admin"


class NotificationService:
    def __init__(self, db, hub=None):
        self.db = db
        self.hub = hub

    async def create(
        self,
        recipient_id: str,
        notification_type: str,
        title: str,
        message: str,
        priority: str = "MEDIUM",
        related_entity_id: str = None,
        related_entity_type: str = None,
        metadata: dict = None,
        push: Optional[str] = PUSH_USER,
    ) -> dict:
        """Persist a notification and push it to the recipient's live sessions.

        The record is written before any push is attempted; push failures are
        logged by the hub and never surface here.
        """
        notification = {
            "notification_id": new_id("notif"),
            "type": notification_type,
            "priority": priority,
            "status": NotificationStatus.UNREAD.value,
            "title": title,
            "message": message,
            "recipient_id": recipient_id,
            "related_entity_id": related_entity_id,
            "related_entity_type": related_entity_type,
            "metadata": metadata or {},
            "is_active": True,
            "created_at": utc_now_iso(),
        }
        await self.db.notifications.insert_one(notification)
        notification = serialize_doc(notification)
        logger.info(f"🔔 Notification {notification['notification_id']} ({notification_type}) -> {recipient_id}")

        if self.hub is not None and push:
            if push == PUSH_TEACHER_AND_ADMIN:
                await self.hub.send_to_teacher_and_admin(recipient_id, notification)
            else:
                await self.hub.send_to_user(recipient_id, notification)
        return notification

    async def list_for_user(self, user_id: str, status: str = None, notification_type: str = None,
                            page: int = 1, limit: int = 20) -> Tuple[List[dict], int, int]:
        query = {"recipient_id": user_id, "is_active": True}
        if status:
            query["status"] = status
        if notification_type:
            query["type"] = notification_type

        total = await self.db.notifications.count_documents(query)
        items = await self.db.notifications.find(query, {"_id": 0}).sort(
            "created_at", -1
        ).skip((page - 1) * limit).limit(limit).to_list(limit)
        unread = await self.unread_count(user_id)
        return items, total, unread

    async def unread_count(self, user_id: str) -> int:
        return await self.db.notifications.count_documents(
            {"recipient_id": user_id, "status": NotificationStatus.UNREAD.value, "is_active": True}
        )

    async def _get_own(self, notification_id: str, user_id: str) -> dict:
        notification = await self.db.notifications.find_one(
            {"notification_id": notification_id, "recipient_id": user_id, "is_active": True}, {"_id": 0}
        )
        if not notification:
            raise NotFound("Notification not found")
        return notification

    async def _transition(self, notification_id: str, user_id: str, from_statuses: List[str],
                          update: dict) -> Optional[dict]:
        return serialize_doc(await self.db.notifications.find_one_and_update(
            {
                "notification_id": notification_id,
                "recipient_id": user_id,
                "is_active": True,
                "status": {"$in": from_statuses},
            },
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        ))

    async def mark_read(self, notification_id: str, user_id: str) -> dict:
        updated = await self._transition(
            notification_id, user_id, [NotificationStatus.UNREAD.value],
            {"status": NotificationStatus.READ.value, "read_at": utc_now_iso()},
        )
        if updated:
            return updated
        # Already read (or further along); never move a notification backwards
        return await self._get_own(notification_id, user_id)

    async def mark_all_read(self, user_id: str) -> int:
        result = await self.db.notifications.update_many(
            {"recipient_id": user_id, "status": NotificationStatus.UNREAD.value, "is_active": True},
            {"$set": {"status": NotificationStatus.READ.value, "read_at": utc_now_iso()}},
        )
        return result.modified_count

    async def acknowledge(self, notification_id: str, user_id: str) -> dict:
        updated = await self._transition(
            notification_id, user_id,
            [NotificationStatus.UNREAD.value, NotificationStatus.READ.value],
            {
                "status": NotificationStatus.ACKNOWLEDGED.value,
                "acknowledged_at": utc_now_iso(),
                "acknowledged_by": user_id,
            },
        )
        if updated:
            return updated
        current = await self._get_own(notification_id, user_id)
        if current["status"] == NotificationStatus.ACKNOWLEDGED.value:
            return current
        raise StateConflict(f"Notification is {current['status']} and cannot be acknowledged")

    async def dismiss(self, notification_id: str, user_id: str) -> dict:
        updated = await self._transition(
            notification_id, user_id,
            [
                NotificationStatus.UNREAD.value,
                NotificationStatus.READ.value,
                NotificationStatus.ACKNOWLEDGED.value,
                NotificationStatus.RESOLVED.value,
            ],
            {"status": NotificationStatus.DISMISSED.value, "dismissed_at": utc_now_iso()},
        )
        if updated:
            return updated
        return await self._get_own(notification_id, user_id)

    async def acknowledge_related(self, entity_id: str, acknowledged_by: str) -> int:
        """Mark every still-unread notification about an entity as acknowledged."""
        result = await self.db.notifications.update_many(
            {"related_entity_id": entity_id, "status": NotificationStatus.UNREAD.value},
            {"$set": {
                "status": NotificationStatus.ACKNOWLEDGED.value,
                "acknowledged_at": utc_now_iso(),
                "acknowledged_by": acknowledged_by,
            }},
        )
        return result.modified_count

    async def resolve_related(self, entity_id: str, resolved_by: str) -> int:
        result = await self.db.notifications.update_many(
            {
                "related_entity_id": entity_id,
                "status": {"$nin": [NotificationStatus.DISMISSED.value, NotificationStatus.RESOLVED.value]},
            },
            {"$set": {
                "status": NotificationStatus.RESOLVED.value,
                "resolved_at": utc_now_iso(),
                "resolved_by": resolved_by,
            }},
        )
        return result.modified_count
