"""Staff access grant Pydantic models"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict
from enum import Enum


class AccessLevel(str, Enum):
    READ_ONLY = "READ_ONLY"
    READ_WRITE = "READ_WRITE"
    FULL_ACCESS = "FULL_ACCESS"


class ClassCapability(str, Enum):
    UPLOAD_SHEETS = "can_upload_sheets"
    MARK_ABSENT = "can_mark_absent"
    MARK_MISSING = "can_mark_missing"
    OVERRIDE_AI = "can_override_ai"


class SubjectCapability(str, Enum):
    CREATE_QUESTIONS = "can_create_questions"
    UPLOAD_SYLLABUS = "can_upload_syllabus"


class ClassAccess(BaseModel):
    class_id: str
    class_name: str = ""
    access_level: AccessLevel = AccessLevel.READ_WRITE
    can_upload_sheets: bool = True
    can_mark_absent: bool = True
    can_mark_missing: bool = True
    can_override_ai: bool = False


class SubjectAccess(BaseModel):
    subject_id: str
    subject_name: str = ""
    access_level: AccessLevel = AccessLevel.READ_WRITE
    can_create_questions: bool = False
    can_upload_syllabus: bool = False


class GlobalPermissions(BaseModel):
    can_view_all_classes: bool = False
    can_view_all_subjects: bool = False
    can_access_analytics: bool = False
    can_print_reports: bool = True
    can_send_notifications: bool = False
    can_access_question_papers: bool = False


class StaffAccessGrant(BaseModel):
    model_config = ConfigDict(extra="ignore")
    access_id: str
    staff_id: str
    assigned_by: str
    class_access: List[ClassAccess] = []
    subject_access: List[SubjectAccess] = []
    global_permissions: GlobalPermissions = GlobalPermissions()
    is_active: bool = True
    expires_at: Optional[str] = None
    notes: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None


class StaffAccessCreate(BaseModel):
    staff_id: str = Field(..., min_length=1)
    class_access: List[ClassAccess] = []
    subject_access: List[SubjectAccess] = []
    global_permissions: GlobalPermissions = GlobalPermissions()
    expires_at: Optional[str] = None  # ISO-8601
    notes: Optional[str] = None


class StaffAccessUpdate(BaseModel):
    class_access: Optional[List[ClassAccess]] = None
    subject_access: Optional[List[SubjectAccess]] = None
    global_permissions: Optional[GlobalPermissions] = None
    expires_at: Optional[str] = None
    notes: Optional[str] = None


class AccessSummary(BaseModel):
    """Result of an access check; explains denials instead of a bare boolean"""
    staff_id: str
    has_access: bool
    reason: str  # ADMIN_ROLE, GRANTED, NO_GRANT, EXPIRED, NOT_ASSIGNED, CAPABILITY_DENIED, READ_ONLY
    class_id: Optional[str] = None
    subject_id: Optional[str] = None
    capability: Optional[str] = None
    access_level: Optional[AccessLevel] = None
    capabilities: Dict[str, bool] = {}
    expires_at: Optional[str] = None
