"""
Answer sheet ledger - the per (exam, student) sheet record and its status machine.

UPLOADED -> PROCESSING -> AI_CORRECTED -> MANUALLY_REVIEWED -> COMPLETED, with
MISSING and ABSENT reachable from any pre-completion state. Every transition is
a conditional write on the expected status, so the loser of a race gets a
state conflict instead of overwriting the winner.
"""

from typing import TYPE_CHECKING, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.config import logger
from app.errors import Conflict, NotFound, StateConflict, ValidationFailure
from app.models.answer_sheet import (
    PRE_COMPLETION_STATUSES, AnalysisSignals, AnswerSheetUpload, CorrectionResult, FlagType,
    ManualOverrideCreate, SheetStatus,
)
from app.models.incident import IncidentType, Priority
from app.models.notification import NotificationType
from app.models.staff_access import ClassCapability
from app.models.user import User
from app.services.access import AccessGate
from app.services.flags import FlagTracker, detect_flags
from app.services.lookups import get_exam_and_student, get_exam_or_404
from app.services.notifications import PUSH_TEACHER_AND_ADMIN, NotificationService
from app.utils.ids import new_id, utc_now_iso
from app.utils.serialization import serialize_doc

if TYPE_CHECKING:
    from app.services.incidents import IncidentTracker

MIN_OVERRIDE_REASON_LENGTH = 10
INGEST_STATUSES = [SheetStatus.UPLOADED.value, SheetStatus.PROCESSING.value, SheetStatus.AI_CORRECTED.value]
COMPLETABLE_STATUSES = [SheetStatus.AI_CORRECTED.value, SheetStatus.MANUALLY_REVIEWED.value]


def sheet_key(exam_id: str, student_id: str) -> str:
    return f"{exam_id}|{student_id}"


def compute_aggregate(correction_result: Optional[dict], overrides: List[dict]) -> dict:
    """Obtained/total marks where the latest override per question replaces the AI marks."""
    result = correction_result or {}
    ai_marks = {}
    for question in result.get("question_results", []):
        key = question.get("question_id") or str(question["question_number"])
        ai_marks[key] = question.get("marks_obtained", 0)
    latest = {}
    for override in overrides:
        latest[override["question_id"]] = override["corrected_marks"]

    obtained = (result.get("obtained_marks") or 0) + sum(
        marks - ai_marks.get(question_id, 0) for question_id, marks in latest.items()
    )
    total = result.get("total_marks")
    percentage = round(obtained / total * 100, 2) if total else None
    return {"obtained_marks": obtained, "total_marks": total, "percentage": percentage}


async def apply_incident_to_sheet(db, exam_id: str, student_id: str, incident_type: str,
                                  reason: str) -> Optional[str]:
    """Reflect a reported incident on the active sheet, if one exists; returns its id.

    ABSENT and MISSING_SHEET set the matching boolean and terminal status, but
    only while the sheet is still pre-completion. Other incident types only link.
    """
    sheet = await db.answer_sheets.find_one(
        {"active_key": sheet_key(exam_id, student_id)}, {"_id": 0, "sheet_id": 1}
    )
    if not sheet:
        return None

    now = utc_now_iso()
    if incident_type == IncidentType.ABSENT.value:
        update = {"is_absent": True, "absent_reason": reason, "status": SheetStatus.ABSENT.value}
        allowed = PRE_COMPLETION_STATUSES + [SheetStatus.ABSENT.value]
    elif incident_type == IncidentType.MISSING_SHEET.value:
        update = {"is_missing": True, "missing_reason": reason, "status": SheetStatus.MISSING.value}
        allowed = PRE_COMPLETION_STATUSES + [SheetStatus.MISSING.value]
    else:
        return sheet["sheet_id"]

    result = await db.answer_sheets.update_one(
        {"sheet_id": sheet["sheet_id"], "status": {"$in": allowed}},
        {"$set": {**update, "updated_at": now}},
    )
    if result.modified_count:
        logger.info(f"📄 Sheet {sheet['sheet_id']} marked {update['status']} from incident report")
    else:
        logger.info(f"📄 Sheet {sheet['sheet_id']} linked to {incident_type} incident without a status change")
    return sheet["sheet_id"]


async def stamp_sheet_acknowledgment(db, sheet_id: str, acknowledged_by: str):
    now = utc_now_iso()
    await db.answer_sheets.update_one(
        {"sheet_id": sheet_id},
        {"$set": {"acknowledged_by": acknowledged_by, "acknowledged_at": now, "updated_at": now}},
    )


class AnswerSheetLedger:
    def __init__(self, db, gate: AccessGate, flags: FlagTracker, notifications: NotificationService,
                 incidents: "IncidentTracker" = None):
        self.db = db
        self.gate = gate
        self.flags = flags
        self.notifications = notifications
        self.incidents = incidents

    async def _require(self, user: Optional[User], class_id: str, capability: str = None):
        # user is None for system-originated actions (e.g. the correction pipeline)
        if user is not None:
            await self.gate.require(user, class_id=class_id, capability=capability)

    async def _raise_for(self, sheet_id: str, action: str):
        sheet = await self.db.answer_sheets.find_one({"sheet_id": sheet_id, "is_active": True}, {"_id": 0, "status": 1})
        if not sheet:
            raise NotFound("Answer sheet not found")
        raise StateConflict(f"Cannot {action} an answer sheet in {sheet['status']} status")

    async def _transition(self, sheet_id: str, from_statuses: List[str], update: dict,
                          extra_filter: dict = None) -> Optional[dict]:
        query = {"sheet_id": sheet_id, "is_active": True, "status": {"$in": from_statuses}}
        if extra_filter:
            query.update(extra_filter)
        update.setdefault("$set", {})["updated_at"] = utc_now_iso()
        return serialize_doc(await self.db.answer_sheets.find_one_and_update(
            query, update, projection={"active_key": 0}, return_document=ReturnDocument.AFTER
        ))

    # ---- reads ----

    async def get_sheet(self, sheet_id: str) -> dict:
        sheet = await self.db.answer_sheets.find_one(
            {"sheet_id": sheet_id, "is_active": True}, {"_id": 0, "active_key": 0}
        )
        if not sheet:
            raise NotFound("Answer sheet not found")
        return sheet

    async def list_by_exam(self, exam_id: str, status: str = None, page: int = 1,
                           limit: int = 10, user: Optional[User] = None) -> Tuple[List[dict], int]:
        exam = await get_exam_or_404(self.db, exam_id)
        await self._require(user, exam.get("class_id"))
        query = {"exam_id": exam_id, "is_active": True}
        if status:
            query["status"] = status
        total = await self.db.answer_sheets.count_documents(query)
        sheets = await self.db.answer_sheets.find(query, {"_id": 0, "active_key": 0}).sort(
            "uploaded_at", -1
        ).skip((page - 1) * limit).limit(limit).to_list(limit)
        return sheets, total

    # ---- lifecycle ----

    async def record_upload(self, data: AnswerSheetUpload, user: User) -> dict:
        exam, student = await get_exam_and_student(self.db, data.exam_id, data.student_id)
        await self._require(user, exam.get("class_id"), ClassCapability.UPLOAD_SHEETS.value)

        key = sheet_key(data.exam_id, data.student_id)
        if await self.db.answer_sheets.find_one({"active_key": key}, {"_id": 0, "sheet_id": 1}):
            raise Conflict("Answer sheet already exists for this student")

        now = utc_now_iso()
        sheet = {
            "sheet_id": new_id("sheet"),
            "active_key": key,
            "exam_id": data.exam_id,
            "student_id": data.student_id,
            "class_id": exam.get("class_id"),
            "uploaded_by": user.user_id,
            "file_ref": data.file_ref,
            "original_file_name": data.original_file_name,
            "status": SheetStatus.UPLOADED.value,
            "scan_quality": data.scan_quality.value,
            "is_aligned": data.is_aligned,
            "roll_number_detected": data.roll_number_detected,
            "roll_number_confidence": data.roll_number_confidence or 0,
            "file_size": data.file_size,
            "file_format": data.file_format,
            "language": data.language,
            "correction_result": None,
            "obtained_marks": None,
            "total_marks": None,
            "percentage": None,
            "manual_overrides": [],
            "flags": [],
            "flag_count": 0,
            "open_flag_count": 0,
            "last_flagged_at": None,
            "is_missing": False,
            "missing_reason": None,
            "is_absent": False,
            "absent_reason": None,
            "is_active": True,
            "uploaded_at": now,
            "updated_at": now,
        }
        try:
            await self.db.answer_sheets.insert_one(sheet)
        except DuplicateKeyError:
            raise Conflict("Answer sheet already exists for this student")
        logger.info(f"📄 Answer sheet {sheet['sheet_id']} uploaded for {data.student_id} in {data.exam_id}")

        signals = AnalysisSignals(
            roll_number_detected=data.roll_number_detected,
            roll_number_confidence=data.roll_number_confidence,
            expected_roll_number=student.get("roll_number"),
            scan_quality=data.scan_quality,
            is_aligned=data.is_aligned,
            file_size=data.file_size,
            file_format=data.file_format,
        )
        await self.flags.add_flags(sheet["sheet_id"], detect_flags(signals))
        return await self.get_sheet(sheet["sheet_id"])

    async def begin_processing(self, sheet_id: str, user: Optional[User] = None) -> dict:
        sheet = await self.get_sheet(sheet_id)
        await self._require(user, sheet.get("class_id"), ClassCapability.UPLOAD_SHEETS.value)
        updated = await self._transition(
            sheet_id, [SheetStatus.UPLOADED.value], {"$set": {"status": SheetStatus.PROCESSING.value}}
        )
        if not updated:
            await self._raise_for(sheet_id, "begin processing")
        logger.info(f"⚙️ Sheet {sheet_id} handed to automated correction")
        return updated

    async def ingest_correction_result(self, sheet_id: str, result: CorrectionResult,
                                       user: Optional[User] = None) -> dict:
        sheet = await self.get_sheet(sheet_id)
        await self._require(user, sheet.get("class_id"), ClassCapability.UPLOAD_SHEETS.value)

        result_doc = result.model_dump(mode="json")
        aggregate = compute_aggregate(result_doc, [])

        updated = await self._transition(
            sheet_id, INGEST_STATUSES,
            {"$set": {
                "status": SheetStatus.AI_CORRECTED.value,
                "correction_result": result_doc,
                "processed_at": utc_now_iso(),
                **aggregate,
            }},
        )
        if not updated:
            await self._raise_for(sheet_id, "ingest a correction result for")
        logger.info(f"🤖 Correction result ingested for {sheet_id}: "
                    f"{result.obtained_marks}/{result.total_marks} (confidence {result.confidence:.2f})")

        signals = AnalysisSignals(
            ai_confidence=result.confidence,
            roll_number_detected=updated.get("roll_number_detected"),
            roll_number_confidence=updated.get("roll_number_confidence") if updated.get("roll_number_detected") else None,
            expected_roll_number=await self._expected_roll_number(updated["student_id"]),
            # A missing transcript is not a blank answer
            blank_answers=[q.question_number for q in result.question_results
                           if q.student_answer is not None and not q.student_answer.strip()],
            irrelevant_answers=[q.question_number for q in result.question_results if q.is_irrelevant],
        )
        # Roll number problems were already flagged at upload
        open_types = {f["type"] for f in updated.get("flags", []) if not f.get("resolved")}
        candidates = [f for f in detect_flags(signals)
                      if not (f.type == FlagType.UNMATCHED_ROLL and f.type.value in open_types)]
        await self.flags.add_flags(sheet_id, candidates)

        await self.notifications.create(
            recipient_id=updated["uploaded_by"],
            notification_type=NotificationType.AI_CORRECTION_COMPLETE.value,
            title="AI Correction Complete",
            message=(f"Answer sheet for student {updated['student_id']} corrected: "
                     f"{result.obtained_marks}/{result.total_marks}"),
            priority=Priority.MEDIUM.value if candidates else Priority.LOW.value,
            related_entity_id=sheet_id,
            related_entity_type="answer_sheet",
            metadata={"exam_id": updated["exam_id"], "confidence": result.confidence,
                      "flags_detected": len(candidates)},
            push=PUSH_TEACHER_AND_ADMIN,
        )
        return await self.get_sheet(sheet_id)

    async def _expected_roll_number(self, student_id: str) -> Optional[str]:
        student = await self.db.students.find_one({"student_id": student_id}, {"_id": 0, "roll_number": 1})
        return student.get("roll_number") if student else None

    async def apply_manual_override(self, sheet_id: str, data: ManualOverrideCreate, user: User) -> dict:
        if data.corrected_marks < 0:
            raise ValidationFailure("Corrected marks cannot be negative")
        if len(data.reason.strip()) < MIN_OVERRIDE_REASON_LENGTH:
            raise ValidationFailure(f"Reason must be at least {MIN_OVERRIDE_REASON_LENGTH} characters")

        sheet = await self.get_sheet(sheet_id)
        await self._require(user, sheet.get("class_id"), ClassCapability.OVERRIDE_AI.value)
        if sheet["status"] not in PRE_COMPLETION_STATUSES:
            raise StateConflict(f"Cannot override marks on an answer sheet in {sheet['status']} status")

        overrides = sheet.get("manual_overrides", [])
        override = {
            "question_id": data.question_id,
            "corrected_answer": data.corrected_answer,
            "corrected_marks": data.corrected_marks,
            "reason": data.reason,
            "corrected_by": user.user_id,
            "corrected_at": utc_now_iso(),
        }
        aggregate = compute_aggregate(sheet.get("correction_result"), overrides + [override])

        # The $size guard detects a concurrent override landing between our read and write
        updated = await self._transition(
            sheet_id, PRE_COMPLETION_STATUSES,
            {
                "$push": {"manual_overrides": override},
                "$set": {"status": SheetStatus.MANUALLY_REVIEWED.value, **aggregate},
            },
            extra_filter={"manual_overrides": {"$size": len(overrides)}},
        )
        if not updated:
            current = await self.get_sheet(sheet_id)
            if current["status"] not in PRE_COMPLETION_STATUSES:
                raise StateConflict(f"Cannot override marks on an answer sheet in {current['status']} status")
            raise StateConflict("Answer sheet was modified concurrently, retry the override")
        logger.info(f"✏️ Manual override on {sheet_id} q={data.question_id} by {user.user_id}: "
                    f"{aggregate['obtained_marks']}/{aggregate['total_marks']}")
        return updated

    async def mark_missing(self, sheet_id: str, reason: str, user: User) -> dict:
        if not reason or not reason.strip():
            raise ValidationFailure("Reason is required")
        sheet = await self.get_sheet(sheet_id)
        exam = await get_exam_or_404(self.db, sheet["exam_id"])
        await self._require(user, sheet.get("class_id"), ClassCapability.MARK_MISSING.value)

        updated = await self._transition(
            sheet_id, PRE_COMPLETION_STATUSES + [SheetStatus.MISSING.value],
            {"$set": {"status": SheetStatus.MISSING.value, "is_missing": True, "missing_reason": reason}},
        )
        if not updated:
            await self._raise_for(sheet_id, "mark missing")
        logger.info(f"📄 Sheet {sheet_id} marked MISSING by {user.user_id}")

        await self._open_incident(exam, updated, IncidentType.MISSING_SHEET.value, reason, user)
        return updated

    async def mark_absent(self, exam_id: str, student_id: str, reason: str, user: User) -> dict:
        if not reason or not reason.strip():
            raise ValidationFailure("Reason is required")
        exam, _ = await get_exam_and_student(self.db, exam_id, student_id)
        await self._require(user, exam.get("class_id"), ClassCapability.MARK_ABSENT.value)

        key = sheet_key(exam_id, student_id)
        now = utc_now_iso()
        query = {"active_key": key, "status": {"$in": PRE_COMPLETION_STATUSES + [SheetStatus.ABSENT.value]}}
        update = {
            "$set": {"status": SheetStatus.ABSENT.value, "is_absent": True, "absent_reason": reason,
                     "updated_at": now},
            "$setOnInsert": {
                "sheet_id": new_id("sheet"),
                "exam_id": exam_id,
                "student_id": student_id,
                "class_id": exam.get("class_id"),
                "uploaded_by": user.user_id,
                "file_ref": None,
                "original_file_name": None,
                "scan_quality": "GOOD",
                "is_aligned": True,
                "roll_number_detected": None,
                "roll_number_confidence": 0,
                "language": "ENGLISH",
                "correction_result": None,
                "manual_overrides": [],
                "flags": [],
                "flag_count": 0,
                "open_flag_count": 0,
                "is_missing": False,
                "is_active": True,
                "uploaded_at": now,
            },
        }
        sheet = None
        for attempt in range(2):
            try:
                sheet = await self.db.answer_sheets.find_one_and_update(
                    query, update, projection={"active_key": 0},
                    upsert=attempt == 0, return_document=ReturnDocument.AFTER,
                )
                sheet = serialize_doc(sheet)
                break
            except DuplicateKeyError:
                # Either a sheet exists in a state we may not overwrite, or a
                # concurrent upsert won; retry once as a plain conditional update
                continue
        if not sheet:
            existing = await self.db.answer_sheets.find_one({"active_key": key}, {"_id": 0, "status": 1})
            status = existing["status"] if existing else "an unknown"
            raise StateConflict(f"Cannot mark absent an answer sheet in {status} status")
        logger.info(f"📄 Student {student_id} marked ABSENT for {exam_id} by {user.user_id}")

        await self._open_incident(exam, sheet, IncidentType.ABSENT.value, reason, user)
        return sheet

    async def _open_incident(self, exam: dict, sheet: dict, incident_type: str, reason: str, user: User):
        if self.incidents is None:
            return
        try:
            await self.incidents.open_incident(
                exam=exam,
                student_id=sheet["student_id"],
                incident_type=incident_type,
                reason=reason,
                priority=Priority.HIGH.value,
                reporter=user,
                answer_sheet_id=sheet["sheet_id"],
            )
        except Conflict:
            logger.info(f"{incident_type} incident already open for {sheet['student_id']} in {exam['exam_id']}")

    async def complete(self, sheet_id: str, user: Optional[User] = None) -> dict:
        sheet = await self.get_sheet(sheet_id)
        await self._require(user, sheet.get("class_id"))
        if sheet["status"] == SheetStatus.COMPLETED.value:
            return sheet

        updated = await self._transition(
            sheet_id, COMPLETABLE_STATUSES,
            {"$set": {"status": SheetStatus.COMPLETED.value, "completed_at": utc_now_iso()}},
            extra_filter={"open_flag_count": 0},
        )
        if updated:
            logger.info(f"🏁 Sheet {sheet_id} completed")
            return updated

        current = await self.get_sheet(sheet_id)
        if current["status"] == SheetStatus.COMPLETED.value:
            return current
        if current.get("open_flag_count", 0) > 0:
            raise StateConflict(f"Answer sheet has {current['open_flag_count']} unresolved flag(s)")
        raise StateConflict(f"Cannot complete an answer sheet in {current['status']} status")

    async def deactivate(self, sheet_id: str, user: User) -> dict:
        updated = await self.db.answer_sheets.find_one_and_update(
            {"sheet_id": sheet_id, "is_active": True},
            {"$set": {"is_active": False, "updated_at": utc_now_iso()}, "$unset": {"active_key": ""}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise NotFound("Answer sheet not found")
        logger.info(f"🗑️ Sheet {sheet_id} deactivated by {user.user_id}")
        return serialize_doc(updated)
