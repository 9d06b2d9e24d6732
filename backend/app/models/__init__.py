"""Pydantic models for the ExamDesk application"""

from .user import User, Role, ADMIN_ROLES, STAFF_ROLES
from .answer_sheet import (
    SheetStatus,
    PRE_COMPLETION_STATUSES,
    ScanQuality,
    FlagType,
    FlagSeverity,
    Flag,
    FlagCreate,
    FlagResolve,
    BulkFlagResolve,
    AnalysisSignals,
    QuestionResult,
    CorrectionResult,
    ManualOverride,
    ManualOverrideCreate,
    AnswerSheetUpload,
    SheetMarkReason,
    AnswerSheet,
)
from .incident import (
    IncidentType,
    IncidentStatus,
    Priority,
    PRIORITY_RANK,
    Incident,
    IncidentReport,
    IncidentAcknowledge,
    IncidentResolve,
    IncidentEscalate,
)
from .notification import Notification, NotificationType, NotificationStatus
from .staff_access import (
    AccessLevel,
    ClassCapability,
    SubjectCapability,
    ClassAccess,
    SubjectAccess,
    GlobalPermissions,
    StaffAccessGrant,
    StaffAccessCreate,
    StaffAccessUpdate,
    AccessSummary,
)
