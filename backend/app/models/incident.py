"""Incident (missing paper / absence) tracking Pydantic models"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from enum import Enum


class IncidentType(str, Enum):
    ABSENT = "ABSENT"
    MISSING_SHEET = "MISSING_SHEET"
    LATE_SUBMISSION = "LATE_SUBMISSION"
    QUALITY_ISSUE = "QUALITY_ISSUE"
    ROLL_NUMBER_ISSUE = "ROLL_NUMBER_ISSUE"


class IncidentStatus(str, Enum):
    PENDING = "PENDING"
    REPORTED = "REPORTED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    ESCALATED = "ESCALATED"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


PRIORITY_RANK = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "URGENT": 4}


class Incident(BaseModel):
    model_config = ConfigDict(extra="ignore")
    incident_id: str
    exam_id: str
    student_id: str
    class_id: Optional[str] = None
    subject_id: Optional[str] = None
    type: IncidentType
    status: IncidentStatus = IncidentStatus.PENDING
    priority: Priority = Priority.MEDIUM
    priority_rank: int = 2
    reported_by: str
    reported_at: str
    reason: str
    details: Optional[str] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[str] = None
    admin_remarks: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None
    resolution_notes: Optional[str] = None
    escalated_to: Optional[str] = None
    escalated_at: Optional[str] = None
    escalation_reason: Optional[str] = None
    is_red_flag: bool = True
    requires_acknowledgment: bool = True
    is_completed: bool = False
    completed_at: Optional[str] = None
    completion_notes: Optional[str] = None
    answer_sheet_id: Optional[str] = None
    related_notification_ids: List[str] = []
    is_active: bool = True
    created_at: str
    updated_at: Optional[str] = None


class IncidentReport(BaseModel):
    exam_id: str
    student_id: str
    type: IncidentType
    reason: str = Field(..., min_length=1)
    details: Optional[str] = None
    priority: Priority = Priority.MEDIUM


class IncidentAcknowledge(BaseModel):
    remarks: Optional[str] = None
    priority: Optional[Priority] = None


class IncidentResolve(BaseModel):
    resolution_notes: str = Field(..., min_length=1)
    completion_notes: Optional[str] = None


class IncidentEscalate(BaseModel):
    escalate_to: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
