"""Answer sheet and flag Pydantic models"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from enum import Enum


class SheetStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    AI_CORRECTED = "AI_CORRECTED"
    MANUALLY_REVIEWED = "MANUALLY_REVIEWED"
    COMPLETED = "COMPLETED"
    MISSING = "MISSING"
    ABSENT = "ABSENT"


# States a sheet can still be graded from; MISSING/ABSENT are reachable from any of these
PRE_COMPLETION_STATUSES = [
    SheetStatus.UPLOADED.value,
    SheetStatus.PROCESSING.value,
    SheetStatus.AI_CORRECTED.value,
    SheetStatus.MANUALLY_REVIEWED.value,
]


class ScanQuality(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"
    UNREADABLE = "UNREADABLE"


class FlagType(str, Enum):
    UNMATCHED_ROLL = "UNMATCHED_ROLL"
    POOR_QUALITY = "POOR_QUALITY"
    MISSING_PAGES = "MISSING_PAGES"
    ALIGNMENT_ISSUE = "ALIGNMENT_ISSUE"
    DUPLICATE_UPLOAD = "DUPLICATE_UPLOAD"
    INVALID_FORMAT = "INVALID_FORMAT"
    SIZE_TOO_LARGE = "SIZE_TOO_LARGE"
    CORRUPTED_FILE = "CORRUPTED_FILE"
    MANUAL_REVIEW_REQUIRED = "MANUAL_REVIEW_REQUIRED"


class FlagSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Flag(BaseModel):
    """Quality/integrity annotation embedded in an answer sheet"""
    model_config = ConfigDict(extra="ignore")
    type: FlagType
    severity: FlagSeverity
    description: str
    detected_at: str
    detected_by: Optional[str] = None  # None for automatic detection
    resolved: bool = False
    auto_resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None
    resolution_notes: Optional[str] = None


class FlagCreate(BaseModel):
    type: FlagType
    severity: FlagSeverity
    description: str = Field(..., min_length=1)


class FlagResolve(BaseModel):
    resolution_notes: Optional[str] = None


class BulkFlagResolve(BaseModel):
    sheet_ids: List[str] = Field(..., min_length=1)
    resolution_notes: Optional[str] = None


class AnalysisSignals(BaseModel):
    """Quality/confidence signals fed to flag auto-detection.

    Every field is optional; a rule only fires when its signal is present.
    """
    roll_number_detected: Optional[str] = None
    roll_number_confidence: Optional[float] = Field(default=None, ge=0, le=100)
    expected_roll_number: Optional[str] = None
    scan_quality: Optional[ScanQuality] = None
    is_aligned: Optional[bool] = None
    file_size: Optional[int] = Field(default=None, ge=0)
    file_format: Optional[str] = None
    ai_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    blank_answers: List[int] = []  # question numbers
    irrelevant_answers: List[int] = []


class QuestionResult(BaseModel):
    question_number: int
    question_id: Optional[str] = None
    correct_answer: str = ""
    student_answer: Optional[str] = None
    is_correct: bool = False
    marks_obtained: float = Field(..., ge=0)
    max_marks: float = Field(..., ge=0)
    feedback: str = ""
    confidence: float = Field(default=1.0, ge=0, le=1)
    is_irrelevant: bool = False


class CorrectionResult(BaseModel):
    """Structured result returned by the automated-correction capability"""
    confidence: float = Field(..., ge=0, le=1)
    total_marks: float = Field(..., ge=0)
    obtained_marks: float = Field(..., ge=0)
    question_results: List[QuestionResult] = []
    overall_feedback: str = ""
    strengths: List[str] = []
    weaknesses: List[str] = []
    suggestions: List[str] = []
    processing_time: Optional[float] = Field(default=None, ge=0)
    errors: List[str] = []


class ManualOverride(BaseModel):
    question_id: str
    corrected_answer: str
    corrected_marks: float
    reason: str
    corrected_by: str
    corrected_at: str


class AnswerSheetUpload(BaseModel):
    exam_id: str
    student_id: str
    file_ref: str = Field(..., min_length=1)  # Storage key of the uploaded scan
    original_file_name: Optional[str] = None
    language: str = "ENGLISH"
    scan_quality: ScanQuality = ScanQuality.GOOD
    is_aligned: bool = True
    roll_number_detected: Optional[str] = None
    roll_number_confidence: Optional[float] = Field(default=None, ge=0, le=100)
    file_size: Optional[int] = Field(default=None, ge=0)
    file_format: Optional[str] = None


class ManualOverrideCreate(BaseModel):
    question_id: str = Field(..., min_length=1)
    corrected_answer: str
    corrected_marks: float = Field(..., ge=0)
    reason: str = Field(..., min_length=10)


class SheetMarkReason(BaseModel):
    reason: str = Field(..., min_length=1)


class AnswerSheet(BaseModel):
    """One student's sheet for one exam"""
    model_config = ConfigDict(extra="ignore")
    sheet_id: str
    exam_id: str
    student_id: str
    class_id: Optional[str] = None
    uploaded_by: str
    file_ref: Optional[str] = None
    original_file_name: Optional[str] = None
    status: SheetStatus = SheetStatus.UPLOADED
    scan_quality: ScanQuality = ScanQuality.GOOD
    is_aligned: bool = True
    roll_number_detected: Optional[str] = None
    roll_number_confidence: float = 0
    language: str = "ENGLISH"
    correction_result: Optional[CorrectionResult] = None
    obtained_marks: Optional[float] = None
    total_marks: Optional[float] = None
    percentage: Optional[float] = None
    manual_overrides: List[ManualOverride] = []
    flags: List[Flag] = []
    flag_count: int = 0
    open_flag_count: int = 0
    last_flagged_at: Optional[str] = None
    is_missing: bool = False
    missing_reason: Optional[str] = None
    is_absent: bool = False
    absent_reason: Optional[str] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[str] = None
    is_active: bool = True
    uploaded_at: str
    processed_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None
