"""
Staff access grants and the capability gate consulted before staff-originated mutations.
"""

from typing import List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.config import logger
from app.errors import Conflict, Forbidden, NotFound, ValidationFailure
from app.models.staff_access import (
    AccessLevel, AccessSummary, ClassCapability, StaffAccessCreate, StaffAccessGrant, StaffAccessUpdate,
    SubjectCapability,
)
from app.models.user import ADMIN_ROLES, Role, User
from app.services.lookups import get_user
from app.utils.ids import new_id, parse_iso, utc_now, utc_now_iso
from app.utils.serialization import serialize_doc

CLASS_CAPABILITIES = [c.value for c in ClassCapability]
SUBJECT_CAPABILITIES = [c.value for c in SubjectCapability]


def _is_expired(grant: dict) -> bool:
    expires_at = grant.get("expires_at")
    if not expires_at:
        return False
    return parse_iso(expires_at) <= utc_now()


class AccessGate:
    def __init__(self, db):
        self.db = db

    async def get_grant(self, staff_id: str) -> Optional[dict]:
        return await self.db.staff_access.find_one({"staff_id": staff_id, "is_active": True}, {"_id": 0})

    async def can_act(self, staff_id: str, class_id: str = None, subject_id: str = None,
                      capability: str = None, role: str = None) -> AccessSummary:
        """Resolve whether a staff member may act on a class or subject.

        Returns a summary whose ``reason`` explains a denial instead of a bare
        boolean. ``capability`` names a class or subject capability flag; when
        omitted only read access is checked.
        """
        if capability and (class_id or subject_id):
            allowed = CLASS_CAPABILITIES if class_id else SUBJECT_CAPABILITIES
            if capability not in allowed:
                raise ValidationFailure(f"Unknown capability '{capability}'")

        summary = dict(staff_id=staff_id, class_id=class_id, subject_id=subject_id, capability=capability)

        if role is None:
            user = await get_user(self.db, staff_id)
            role = user.get("role") if user else None
        if role in ADMIN_ROLES:
            capabilities = {c: True for c in (CLASS_CAPABILITIES if class_id else SUBJECT_CAPABILITIES)}
            return AccessSummary(**summary, has_access=True, reason="ADMIN_ROLE",
                                 access_level=AccessLevel.FULL_ACCESS, capabilities=capabilities)

        grant = await self.get_grant(staff_id)
        if not grant:
            return AccessSummary(**summary, has_access=False, reason="NO_GRANT")
        summary["expires_at"] = grant.get("expires_at")
        if _is_expired(grant):
            return AccessSummary(**summary, has_access=False, reason="EXPIRED")

        global_permissions = grant.get("global_permissions") or {}
        if class_id:
            entries = grant.get("class_access", [])
            entry = next((e for e in entries if e.get("class_id") == class_id), None)
            view_all = global_permissions.get("can_view_all_classes", False)
            capability_names = CLASS_CAPABILITIES
        elif subject_id:
            entries = grant.get("subject_access", [])
            entry = next((e for e in entries if e.get("subject_id") == subject_id), None)
            view_all = global_permissions.get("can_view_all_subjects", False)
            capability_names = SUBJECT_CAPABILITIES
        else:
            return AccessSummary(**summary, has_access=False, reason="NOT_ASSIGNED")

        if entry is None:
            if view_all and not capability:
                # View-all grants read access only
                return AccessSummary(**summary, has_access=True, reason="GRANTED",
                                     access_level=AccessLevel.READ_ONLY,
                                     capabilities={c: False for c in capability_names})
            return AccessSummary(**summary, has_access=False, reason="NOT_ASSIGNED")

        access_level = entry.get("access_level", AccessLevel.READ_WRITE.value)
        capabilities = {c: bool(entry.get(c, False)) for c in capability_names}
        summary.update(access_level=access_level, capabilities=capabilities)
        if capability:
            if access_level == AccessLevel.READ_ONLY.value:
                return AccessSummary(**summary, has_access=False, reason="READ_ONLY")
            if not capabilities.get(capability):
                return AccessSummary(**summary, has_access=False, reason="CAPABILITY_DENIED")
        return AccessSummary(**summary, has_access=True, reason="GRANTED")

    async def require(self, user: User, class_id: str = None, subject_id: str = None,
                      capability: str = None) -> AccessSummary:
        summary = await self.can_act(user.user_id, class_id=class_id, subject_id=subject_id,
                                     capability=capability, role=user.role)
        if not summary.has_access:
            if class_id:
                target = f"class {class_id}"
            elif subject_id:
                target = f"subject {subject_id}"
            else:
                target = "an unassigned class"
            detail = f" ({capability})" if capability else ""
            logger.warning(f"🚫 Access denied for {user.user_id} on {target}{detail}: {summary.reason}")
            raise Forbidden(f"Access denied to {target}{detail}: {summary.reason}")
        return summary

    async def accessible_class_ids(self, user: User) -> Optional[List[str]]:
        """Class ids the user may read; None means every class."""
        if user.is_admin:
            return None
        grant = await self.get_grant(user.user_id)
        if not grant or _is_expired(grant):
            return []
        if (grant.get("global_permissions") or {}).get("can_view_all_classes"):
            return None
        return [e["class_id"] for e in grant.get("class_access", [])]

    # ---- grant administration ----

    async def create_grant(self, data: StaffAccessCreate, assigned_by: str) -> dict:
        staff = await get_user(self.db, data.staff_id)
        if not staff or staff.get("role") != Role.TEACHER.value:
            raise ValidationFailure("Invalid staff member")
        if data.expires_at:
            self._validate_expiry(data.expires_at)
        if await self.get_grant(data.staff_id):
            raise Conflict("Staff member already has an active access grant")

        now = utc_now_iso()
        grant = StaffAccessGrant(
            access_id=new_id("access"),
            assigned_by=assigned_by,
            created_at=now,
            updated_at=now,
            **data.model_dump(),
        ).model_dump(mode="json")
        try:
            await self.db.staff_access.insert_one({**grant, "active_key": data.staff_id})
        except DuplicateKeyError:
            raise Conflict("Staff member already has an active access grant")
        logger.info(f"🔑 Access grant {grant['access_id']} created for {data.staff_id} by {assigned_by}")
        return grant

    async def get_grant_or_404(self, staff_id: str) -> dict:
        grant = await self.get_grant(staff_id)
        if not grant:
            raise NotFound("Access grant not found")
        grant.pop("active_key", None)
        return grant

    async def list_grants(self, page: int = 1, limit: int = 10) -> Tuple[List[dict], int]:
        query = {"is_active": True}
        total = await self.db.staff_access.count_documents(query)
        grants = await self.db.staff_access.find(query, {"_id": 0, "active_key": 0}).sort(
            "created_at", -1
        ).skip((page - 1) * limit).limit(limit).to_list(limit)
        return grants, total

    async def update_grant(self, staff_id: str, data: StaffAccessUpdate) -> dict:
        changes = data.model_dump(mode="json", exclude_unset=True)
        if not changes:
            raise ValidationFailure("No changes supplied")
        if changes.get("expires_at"):
            self._validate_expiry(changes["expires_at"])
        changes["updated_at"] = utc_now_iso()
        updated = await self.db.staff_access.find_one_and_update(
            {"staff_id": staff_id, "is_active": True},
            {"$set": changes},
            projection={"active_key": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFound("Access grant not found")
        logger.info(f"🔑 Access grant for {staff_id} updated: {sorted(changes)}")
        return serialize_doc(updated)

    async def deactivate_grant(self, staff_id: str) -> dict:
        updated = await self.db.staff_access.find_one_and_update(
            {"staff_id": staff_id, "is_active": True},
            {"$set": {"is_active": False, "updated_at": utc_now_iso()}, "$unset": {"active_key": ""}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFound("Access grant not found")
        logger.info(f"🔑 Access grant for {staff_id} deactivated")
        return serialize_doc(updated)

    @staticmethod
    def _validate_expiry(value: str):
        try:
            parse_iso(value)
        except ValueError:
            raise ValidationFailure("expires_at must be an ISO-8601 timestamp")
