"""
FastAPI dependencies - database/hub handles, get_current_user, get_admin_user, service factories.
"""

from fastapi import Depends, Request

from .errors import Forbidden, Unauthorized
from .models.user import User
from .services.access import AccessGate
from .services.answer_sheets import AnswerSheetLedger
from .services.flags import FlagTracker
from .services.incidents import IncidentTracker
from .services.notifications import NotificationService
from .utils.auth import decode_token


def get_db(request: Request):
    return request.app.state.db


def get_hub(request: Request):
    return request.app.state.hub


def extract_token(request: Request):
    """Bearer header first, then the session cookie"""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1]
    return request.cookies.get("session_token")


async def load_user(db, token: str) -> User:
    if not token:
        raise Unauthorized("Not authenticated")

    payload = decode_token(token)
    if not payload:
        raise Unauthorized("Invalid or expired token")

    user = await db.users.find_one({"user_id": payload["sub"]}, {"_id": 0})
    if not user:
        raise Unauthorized("User not found")

    account_status = user.get("account_status", "active")
    if account_status == "banned":
        raise Forbidden("Account banned. Contact support.")
    elif account_status == "disabled":
        raise Forbidden("Account disabled. Contact support.")

    return User(**user)


async def get_current_user(request: Request, db=Depends(get_db)) -> User:
    """Get current user from the bearer JWT (or session_token cookie)"""
    user = await load_user(db, extract_token(request))
    request.state.user_id = user.user_id
    return user


async def get_staff_user(user: User = Depends(get_current_user)) -> User:
    if not user.is_staff:
        raise Forbidden("Staff access required")
    return user


async def get_admin_user(user: User = Depends(get_current_user)) -> User:
    """Dependency to ensure user has admin privileges"""
    if not user.is_admin:
        raise Forbidden("Admin access required")
    return user


# ---- services ----

def get_access_gate(db=Depends(get_db)) -> AccessGate:
    return AccessGate(db)


def get_notification_service(db=Depends(get_db), hub=Depends(get_hub)) -> NotificationService:
    return NotificationService(db, hub)


def get_flag_tracker(db=Depends(get_db)) -> FlagTracker:
    return FlagTracker(db)


def get_incident_tracker(
    db=Depends(get_db),
    gate: AccessGate = Depends(get_access_gate),
    notifications: NotificationService = Depends(get_notification_service),
) -> IncidentTracker:
    return IncidentTracker(db, gate, notifications)


def get_ledger(
    db=Depends(get_db),
    gate: AccessGate = Depends(get_access_gate),
    flags: FlagTracker = Depends(get_flag_tracker),
    notifications: NotificationService = Depends(get_notification_service),
    incidents: IncidentTracker = Depends(get_incident_tracker),
) -> AnswerSheetLedger:
    return AnswerSheetLedger(db, gate, flags, notifications, incidents)
