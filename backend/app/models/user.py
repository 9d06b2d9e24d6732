"""User-related Pydantic models"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime, timezone
from enum import Enum


class Role(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


ADMIN_ROLES = {Role.ADMIN.value, Role.SUPER_ADMIN.value}
STAFF_ROLES = ADMIN_ROLES | {Role.TEACHER.value}


class User(BaseModel):
    model_config = ConfigDict(extra="ignore")
    user_id: str
    email: str
    name: str
    role: str = Role.TEACHER.value
    admin_id: Optional[str] = None  # Administering admin, for teachers
    account_status: str = "active"  # active, disabled, banned
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES
