# tests/conftest.py
import os

os.environ.setdefault("JWT_SECRET", "examdesk-test-secret")
os.environ.setdefault("DB_NAME", "examdesk_test")

import pytest
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from app.database import ensure_indexes
from app.models.user import User
from app.services.access import AccessGate
from app.services.answer_sheets import AnswerSheetLedger
from app.services.flags import FlagTracker
from app.services.incidents import IncidentTracker
from app.services.notifications import NotificationService
from app.services.push import NotificationHub, SessionRegistry
from app.utils.auth import create_access_token
from main import create_app

NOW = "2026-01-15T09:00:00+00:00"

USERS = [
    {"user_id": "A1", "email": "admin@school.test", "name": "Asha Admin", "role": "ADMIN"},
    {"user_id": "A2", "email": "admin2@school.test", "name": "Other Admin", "role": "ADMIN"},
    {"user_id": "T1", "email": "t1@school.test", "name": "Tara Teacher", "role": "TEACHER", "admin_id": "A1"},
    {"user_id": "T2", "email": "t2@school.test", "name": "Tom Teacher", "role": "TEACHER", "admin_id": "A1"},
    {"user_id": "T3", "email": "t3@school.test", "name": "Banned Teacher", "role": "TEACHER",
     "admin_id": "A1", "account_status": "banned"},
    {"user_id": "ST1", "email": "student@school.test", "name": "Sam Student", "role": "STUDENT"},
]

TEACHERS = [
    {"user_id": "T1", "admin_id": "A1"},
    {"user_id": "T2", "admin_id": "A1"},
    {"user_id": "T3", "admin_id": "A1"},
]

STUDENTS = [
    {"student_id": "S1", "name": "Ravi", "roll_number": "001", "class_id": "C1"},
    {"student_id": "S2", "name": "Meera", "roll_number": "002", "class_id": "C1"},
    {"student_id": "S3", "name": "Kiran", "roll_number": "101", "class_id": "C2"},
]

EXAMS = [
    {"exam_id": "E1", "exam_name": "Mid-term Mathematics", "class_id": "C1", "subject_id": "SUB1", "admin_id": "A1"},
    {"exam_id": "E2", "exam_name": "Physics Unit Test", "class_id": "C2", "subject_id": "SUB2"},
]

T1_GRANT = {
    "access_id": "access_t1",
    "staff_id": "T1",
    "active_key": "T1",
    "assigned_by": "A1",
    "class_access": [{
        "class_id": "C1",
        "class_name": "Grade 8 A",
        "access_level": "READ_WRITE",
        "can_upload_sheets": True,
        "can_mark_absent": True,
        "can_mark_missing": True,
        "can_override_ai": True,
    }],
    "subject_access": [{
        "subject_id": "SUB1",
        "subject_name": "Mathematics",
        "access_level": "READ_WRITE",
        "can_create_questions": True,
        "can_upload_syllabus": False,
    }],
    "global_permissions": {"can_view_all_classes": False, "can_print_reports": True},
    "is_active": True,
    "expires_at": None,
    "created_at": NOW,
}


async def seed_database(db):
    await ensure_indexes(db)
    await db.users.insert_many([dict(u) for u in USERS])
    await db.teachers.insert_many([dict(t) for t in TEACHERS])
    await db.students.insert_many([dict(s) for s in STUDENTS])
    await db.exams.insert_many([dict(e) for e in EXAMS])
    await db.staff_access.insert_one(dict(T1_GRANT))


# Make anyio run on asyncio
@pytest.fixture(scope="session", autouse=True)
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["examdesk_test"]
    await seed_database(database)
    return database


@pytest.fixture
def users():
    return {u["user_id"]: User(**u) for u in USERS}


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def hub(registry, db):
    return NotificationHub(registry, db)


@pytest.fixture
def gate(db):
    return AccessGate(db)


@pytest.fixture
def notifications(db, hub):
    return NotificationService(db, hub)


@pytest.fixture
def flags(db):
    return FlagTracker(db)


@pytest.fixture
def incidents(db, gate, notifications):
    return IncidentTracker(db, gate, notifications)


@pytest.fixture
def ledger(db, gate, flags, notifications, incidents):
    return AnswerSheetLedger(db, gate, flags, notifications, incidents)


@pytest.fixture
def app(db):
    return create_app(database=db)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def auth_headers(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def as_admin():
    return auth_headers("A1", "ADMIN")


@pytest.fixture
def as_teacher():
    return auth_headers("T1", "TEACHER")


@pytest.fixture
def as_ungranted_teacher():
    return auth_headers("T2", "TEACHER")


class RecordingSocket:
    """Stands in for a WebSocket: records every JSON message sent to it."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


@pytest.fixture
def socket_factory():
    return RecordingSocket
