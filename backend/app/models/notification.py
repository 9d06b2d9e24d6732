"""Notification Pydantic models"""

from pydantic import BaseModel, ConfigDict
from typing import Optional, Dict, Any
from enum import Enum


class NotificationType(str, Enum):
    MISSING_PAPER_REPORTED = "MISSING_PAPER_REPORTED"
    MISSING_ANSWER_SHEET = "MISSING_ANSWER_SHEET"
    ABSENT_STUDENT = "ABSENT_STUDENT"
    INCIDENT_ESCALATED = "INCIDENT_ESCALATED"
    AI_CORRECTION_COMPLETE = "AI_CORRECTION_COMPLETE"
    MANUAL_REVIEW_REQUIRED = "MANUAL_REVIEW_REQUIRED"
    ANSWER_SHEET_UPLOADED = "ANSWER_SHEET_UPLOADED"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class NotificationStatus(str, Enum):
    UNREAD = "UNREAD"
    READ = "READ"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    DISMISSED = "DISMISSED"
    RESOLVED = "RESOLVED"  # only set when the related incident is resolved


class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")
    notification_id: str
    type: NotificationType
    priority: str = "MEDIUM"
    status: NotificationStatus = NotificationStatus.UNREAD
    title: str
    message: str
    recipient_id: str
    related_entity_id: Optional[str] = None
    related_entity_type: Optional[str] = None  # incident, answer_sheet, exam
    metadata: Dict[str, Any] = {}
    is_active: bool = True
    created_at: str
    read_at: Optional[str] = None
    acknowledged_at: Optional[str] = None
    acknowledged_by: Optional[str] = None
    dismissed_at: Optional[str] = None
    resolved_at: Optional[str] = None
    resolved_by: Optional[str] = None
