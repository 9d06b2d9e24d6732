"""
Live notification push: session registry and role-aware fan-out.

Sessions are indexed under their owning user id; TEACHER sessions are also
indexed under their administering admin's id. ADMIN sessions are indexed only
under their own user id. Delivery is fire-and-forget: failures are logged and
never retried, the durable Notification record is the source of truth.
"""

import asyncio
import uuid
from typing import Dict, List, Optional, Set

from app.config import logger
from app.models.user import Role

NOTIFICATION_EVENT = "notification"


class PushSession:
    """One live connection. ``sender`` is anything with an async ``send_json`` (a WebSocket)."""

    def __init__(self, sender, user_id: str, role: str, admin_id: Optional[str] = None,
                 session_id: Optional[str] = None):
        self.sender = sender
        self.user_id = user_id
        self.role = role
        # Only teachers are indexed under an administering admin
        self.admin_id = admin_id if role == Role.TEACHER.value else None
        self.session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"

    async def send(self, message: dict):
        await self.sender.send_json(message)

    def __repr__(self):
        return f"PushSession({self.session_id}, user={self.user_id}, role={self.role}, admin={self.admin_id})"


class SessionRegistry:
    """Single owner of the user -> sessions and admin -> sessions indexes."""

    def __init__(self):
        self._by_user: Dict[str, Set[str]] = {}
        self._by_admin: Dict[str, Set[str]] = {}
        self._sessions: Dict[str, PushSession] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: PushSession):
        async with self._lock:
            self._sessions[session.session_id] = session
            self._by_user.setdefault(session.user_id, set()).add(session.session_id)
            if session.admin_id:
                self._by_admin.setdefault(session.admin_id, set()).add(session.session_id)
        logger.info(
            f"🔌 Session connected: {session.session_id} user={session.user_id} "
            f"role={session.role} admin={session.admin_id}"
        )

    async def remove(self, session: PushSession):
        async with self._lock:
            self._sessions.pop(session.session_id, None)
            self._discard(self._by_user, session.user_id, session.session_id)
            if session.admin_id:
                self._discard(self._by_admin, session.admin_id, session.session_id)
        logger.info(f"🔌 Session disconnected: {session.session_id} user={session.user_id}")

    @staticmethod
    def _discard(index: Dict[str, Set[str]], key: str, session_id: str):
        sessions = index.get(key)
        if sessions is None:
            return
        sessions.discard(session_id)
        if not sessions:
            del index[key]

    async def user_sessions(self, user_id: str) -> List[PushSession]:
        async with self._lock:
            return [self._sessions[sid] for sid in self._by_user.get(user_id, ())]

    async def admin_sessions(self, admin_id: str) -> List[PushSession]:
        """The admin's own sessions plus every teacher session under that admin."""
        async with self._lock:
            session_ids = set(self._by_admin.get(admin_id, ())) | set(self._by_user.get(admin_id, ()))
            return [self._sessions[sid] for sid in session_ids]

    async def all_sessions(self) -> List[PushSession]:
        async with self._lock:
            return list(self._sessions.values())

    def connection_count(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, ()))

    def admin_connection_count(self, admin_id: str) -> int:
        return len(self._by_admin.get(admin_id, ()))

    def total_connections(self) -> int:
        return len(self._sessions)

    def indexed_users(self) -> List[str]:
        return list(self._by_user.keys())

    def indexed_admins(self) -> List[str]:
        return list(self._by_admin.keys())


class NotificationHub:
    """Routes notification payloads to the right set of live sessions."""

    def __init__(self, registry: SessionRegistry, db=None):
        self.registry = registry
        self.db = db

    async def lookup_admin(self, teacher_id: str) -> Optional[str]:
        if self.db is None:
            return None
        teacher = await self.db.teachers.find_one({"user_id": teacher_id}, {"_id": 0, "admin_id": 1})
        return teacher.get("admin_id") if teacher else None

    async def _deliver(self, sessions: List[PushSession], payload: dict, target: str) -> int:
        message = {"event": NOTIFICATION_EVENT, "data": payload}
        delivered = 0
        for session in sessions:
            try:
                await session.send(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"⚠️ Push to {session.session_id} ({target}) failed: {e}")
        logger.info(
            f"📤 Pushed {payload.get('type')} {payload.get('notification_id')} to {target}: "
            f"{delivered}/{len(sessions)} session(s)"
        )
        return delivered

    async def send_to_user(self, user_id: str, payload: dict) -> int:
        """Deliver only to sessions indexed under this exact user id, never the admin index."""
        sessions = await self.registry.user_sessions(user_id)
        return await self._deliver(sessions, payload, f"user:{user_id}")

    async def send_to_admin(self, admin_id: str, payload: dict) -> int:
        sessions = await self.registry.admin_sessions(admin_id)
        return await self._deliver(sessions, payload, f"admin:{admin_id}")

    async def send_to_teacher_and_admin(self, teacher_id: str, payload: dict) -> int:
        delivered = await self.send_to_user(teacher_id, payload)
        try:
            admin_id = await self.lookup_admin(teacher_id)
        except Exception as e:
            logger.warning(f"⚠️ Admin lookup for teacher {teacher_id} failed: {e}")
            return delivered
        if admin_id:
            admin_payload = {
                **payload,
                "metadata": {**(payload.get("metadata") or {}), "teacher_id": teacher_id, "from_teacher": True},
            }
            delivered += await self.send_to_admin(admin_id, admin_payload)
        return delivered

    async def broadcast(self, payload: dict) -> int:
        sessions = await self.registry.all_sessions()
        return await self._deliver(sessions, payload, "broadcast")
