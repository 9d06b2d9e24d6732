"""
Incident tracking - missing papers, absences, late submissions and sheet quality issues.

REPORTED -> ACKNOWLEDGED -> RESOLVED, with ESCALATED reachable from any open
state. ``is_red_flag`` is set exactly while an incident waits for an admin
(PENDING/REPORTED/ESCALATED). ``open_key`` exists only while an incident is
open, so the unique index on it guarantees one open incident per
(exam, student, type).
"""

from collections import Counter
from typing import List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.config import logger
from app.errors import Conflict, NotFound, StateConflict, ValidationFailure
from app.models.incident import PRIORITY_RANK, IncidentReport, IncidentStatus, IncidentType, Priority
from app.models.notification import NotificationType
from app.models.staff_access import ClassCapability
from app.models.user import User
from app.services.access import AccessGate
from app.services.answer_sheets import apply_incident_to_sheet, stamp_sheet_acknowledgment
from app.services.lookups import get_exam_and_student, get_exam_or_404, get_user, responsible_admin
from app.services.notifications import NotificationService
from app.utils.ids import new_id, utc_now_iso
from app.utils.serialization import serialize_doc

ESCALATABLE_STATUSES = [
    IncidentStatus.PENDING.value,
    IncidentStatus.REPORTED.value,
    IncidentStatus.ACKNOWLEDGED.value,
]

# Which class capability a staff report of each incident type requires
REPORT_CAPABILITY = {
    IncidentType.ABSENT.value: ClassCapability.MARK_ABSENT.value,
    IncidentType.MISSING_SHEET.value: ClassCapability.MARK_MISSING.value,
}

NOTIFICATION_FOR_TYPE = {
    IncidentType.ABSENT.value: (NotificationType.ABSENT_STUDENT, "Student Absent"),
    IncidentType.MISSING_SHEET.value: (NotificationType.MISSING_ANSWER_SHEET, "Missing Answer Sheet"),
}


def incident_key(exam_id: str, student_id: str, incident_type: str) -> str:
    return f"{exam_id}|{student_id}|{incident_type}"


class IncidentTracker:
    def __init__(self, db, gate: AccessGate, notifications: NotificationService):
        self.db = db
        self.gate = gate
        self.notifications = notifications

    # ---- creation ----

    async def report(self, data: IncidentReport, user: User) -> dict:
        if not data.reason.strip():
            raise ValidationFailure("Reason is required")
        exam, _ = await get_exam_and_student(self.db, data.exam_id, data.student_id)
        await self.gate.require(user, class_id=exam.get("class_id"),
                                capability=REPORT_CAPABILITY.get(data.type.value))

        incident = await self.open_incident(
            exam=exam,
            student_id=data.student_id,
            incident_type=data.type.value,
            reason=data.reason,
            priority=data.priority.value,
            reporter=user,
            details=data.details,
        )

        sheet_id = await apply_incident_to_sheet(
            self.db, data.exam_id, data.student_id, data.type.value, data.reason
        )
        if sheet_id:
            await self.db.incidents.update_one(
                {"incident_id": incident["incident_id"]}, {"$set": {"answer_sheet_id": sheet_id}}
            )
            incident["answer_sheet_id"] = sheet_id
        return incident

    async def open_incident(self, exam: dict, student_id: str, incident_type: str, reason: str,
                            priority: str, reporter: User, details: str = None,
                            answer_sheet_id: str = None) -> dict:
        """Insert an open incident and notify the responsible admin.

        Raises Conflict when an open incident already exists for the same
        (exam, student, type).
        """
        key = incident_key(exam["exam_id"], student_id, incident_type)
        if await self.db.incidents.find_one({"open_key": key}, {"_id": 0, "incident_id": 1}):
            raise Conflict(f"An open {incident_type} incident already exists for this student")

        now = utc_now_iso()
        incident = {
            "incident_id": new_id("inc"),
            "open_key": key,
            "exam_id": exam["exam_id"],
            "student_id": student_id,
            "class_id": exam.get("class_id"),
            "subject_id": exam.get("subject_id"),
            "type": incident_type,
            "status": IncidentStatus.REPORTED.value,
            "priority": priority,
            "priority_rank": PRIORITY_RANK[priority],
            "reported_by": reporter.user_id,
            "reported_at": now,
            "reason": reason,
            "details": details,
            "is_red_flag": True,
            "requires_acknowledgment": True,
            "is_completed": False,
            "answer_sheet_id": answer_sheet_id,
            "related_notification_ids": [],
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.db.incidents.insert_one(incident)
        except DuplicateKeyError:
            raise Conflict(f"An open {incident_type} incident already exists for this student")
        logger.info(f"🚨 Incident {incident['incident_id']} ({incident_type}, {priority}) reported "
                    f"for {student_id} in {exam['exam_id']} by {reporter.user_id}")

        admin_id = await responsible_admin(self.db, exam, reporter.user_id, reporter.role)
        if admin_id:
            notification_type, title = NOTIFICATION_FOR_TYPE.get(
                incident_type, (NotificationType.MISSING_PAPER_REPORTED, "Missing Paper Reported")
            )
            notification = await self.notifications.create(
                recipient_id=admin_id,
                notification_type=notification_type.value,
                title=title,
                message=f"{incident_type.replace('_', ' ').title()} reported for student "
                        f"{student_id} in {exam.get('exam_name', exam['exam_id'])}: {reason}",
                priority=priority,
                related_entity_id=incident["incident_id"],
                related_entity_type="incident",
                metadata={"exam_id": exam["exam_id"], "student_id": student_id,
                          "incident_type": incident_type, "reported_by": reporter.user_id},
            )
            await self.db.incidents.update_one(
                {"incident_id": incident["incident_id"]},
                {"$push": {"related_notification_ids": notification["notification_id"]}},
            )
            incident["related_notification_ids"] = [notification["notification_id"]]
        else:
            logger.warning(f"⚠️ No responsible admin found for incident {incident['incident_id']}")

        incident.pop("_id", None)
        incident.pop("open_key", None)
        return incident

    # ---- transitions ----

    async def _transition(self, incident_id: str, from_statuses: List[str], update: dict) -> Optional[dict]:
        update.setdefault("$set", {})["updated_at"] = utc_now_iso()
        return serialize_doc(await self.db.incidents.find_one_and_update(
            {"incident_id": incident_id, "is_active": True, "status": {"$in": from_statuses}},
            update,
            projection={"open_key": 0},
            return_document=ReturnDocument.AFTER,
        ))

    async def _current_status(self, incident_id: str) -> str:
        incident = await self.db.incidents.find_one(
            {"incident_id": incident_id, "is_active": True}, {"_id": 0, "status": 1}
        )
        if not incident:
            raise NotFound("Incident not found")
        return incident["status"]

    async def acknowledge(self, incident_id: str, user: User, remarks: str = None,
                          priority: Priority = None) -> dict:
        changes = {
            "status": IncidentStatus.ACKNOWLEDGED.value,
            "is_red_flag": False,
            "acknowledged_by": user.user_id,
            "acknowledged_at": utc_now_iso(),
            "admin_remarks": remarks,
        }
        if priority is not None:
            changes["priority"] = priority.value
            changes["priority_rank"] = PRIORITY_RANK[priority.value]

        incident = await self._transition(incident_id, [IncidentStatus.REPORTED.value], {"$set": changes})
        if not incident:
            status = await self._current_status(incident_id)
            raise StateConflict(f"Incident is {status}; only REPORTED incidents can be acknowledged")

        updated = await self.notifications.acknowledge_related(incident_id, user.user_id)
        if incident.get("answer_sheet_id"):
            await stamp_sheet_acknowledgment(self.db, incident["answer_sheet_id"], user.user_id)
        logger.info(f"👀 Incident {incident_id} acknowledged by {user.user_id} ({updated} notification(s))")
        return incident

    async def resolve(self, incident_id: str, user: User, resolution_notes: str,
                      completion_notes: str = None) -> dict:
        if not resolution_notes or not resolution_notes.strip():
            raise ValidationFailure("Resolution notes are required")
        now = utc_now_iso()
        incident = await self._transition(
            incident_id, [IncidentStatus.ACKNOWLEDGED.value],
            {
                "$set": {
                    "status": IncidentStatus.RESOLVED.value,
                    "is_red_flag": False,
                    "is_completed": True,
                    "completed_at": now,
                    "completion_notes": completion_notes,
                    "resolution_notes": resolution_notes,
                    "resolved_by": user.user_id,
                    "resolved_at": now,
                },
                "$unset": {"open_key": ""},
            },
        )
        if not incident:
            status = await self._current_status(incident_id)
            if status == IncidentStatus.RESOLVED.value:
                raise StateConflict("Incident is already resolved")
            raise StateConflict("Incident must be acknowledged before resolution")

        updated = await self.notifications.resolve_related(incident_id, user.user_id)
        logger.info(f"✅ Incident {incident_id} resolved by {user.user_id} ({updated} notification(s))")
        return incident

    async def escalate(self, incident_id: str, user: User, escalate_to: str, reason: str) -> dict:
        if not reason or not reason.strip():
            raise ValidationFailure("Escalation reason is required")
        target = await get_user(self.db, escalate_to)
        if not target:
            raise NotFound("Escalation target not found")

        incident = await self._transition(
            incident_id, ESCALATABLE_STATUSES,
            {"$set": {
                "status": IncidentStatus.ESCALATED.value,
                "is_red_flag": True,
                "escalated_to": escalate_to,
                "escalated_at": utc_now_iso(),
                "escalation_reason": reason,
            }},
        )
        if not incident:
            status = await self._current_status(incident_id)
            if status == IncidentStatus.ESCALATED.value:
                raise StateConflict("Incident is already escalated; reopen it before escalating again")
            raise StateConflict(f"Cannot escalate an incident in {status} status")
        logger.info(f"⬆️ Incident {incident_id} escalated to {escalate_to} by {user.user_id}")

        notification = await self.notifications.create(
            recipient_id=escalate_to,
            notification_type=NotificationType.INCIDENT_ESCALATED.value,
            title="Incident Escalated",
            message=f"{incident['type'].replace('_', ' ').title()} incident for student "
                    f"{incident['student_id']} escalated: {reason}",
            priority=Priority.URGENT.value,
            related_entity_id=incident_id,
            related_entity_type="incident",
            metadata={"exam_id": incident["exam_id"], "escalated_by": user.user_id},
        )
        await self.db.incidents.update_one(
            {"incident_id": incident_id},
            {"$push": {"related_notification_ids": notification["notification_id"]}},
        )
        incident["related_notification_ids"] = incident.get("related_notification_ids", []) + [
            notification["notification_id"]
        ]
        return incident

    async def reopen(self, incident_id: str, user: User) -> dict:
        incident = await self._transition(
            incident_id, [IncidentStatus.ESCALATED.value],
            {"$set": {"status": IncidentStatus.REPORTED.value, "is_red_flag": True}},
        )
        if not incident:
            status = await self._current_status(incident_id)
            raise StateConflict(f"Only ESCALATED incidents can be reopened (current status {status})")
        logger.info(f"🔁 Incident {incident_id} reopened by {user.user_id}")
        return incident

    # ---- reads ----

    async def get_incident(self, incident_id: str, user: User = None) -> dict:
        incident = await self.db.incidents.find_one(
            {"incident_id": incident_id, "is_active": True}, {"_id": 0, "open_key": 0}
        )
        if not incident:
            raise NotFound("Incident not found")
        if user is not None:
            await self.gate.require(user, class_id=incident.get("class_id"))
        return incident

    @staticmethod
    def _filters(exam_id=None, status=None, priority=None, incident_type=None, is_red_flag=None) -> dict:
        query = {"is_active": True}
        if exam_id:
            query["exam_id"] = exam_id
        if status:
            query["status"] = status
        if priority:
            query["priority"] = priority
        if incident_type:
            query["type"] = incident_type
        if is_red_flag is not None:
            query["is_red_flag"] = is_red_flag
        return query

    async def _page(self, query: dict, sort: list, page: int, limit: int) -> Tuple[List[dict], int]:
        total = await self.db.incidents.count_documents(query)
        items = await self.db.incidents.find(query, {"_id": 0, "open_key": 0}).sort(sort).skip(
            (page - 1) * limit
        ).limit(limit).to_list(limit)
        return items, total

    async def list_for_staff(self, user: User, exam_id: str = None, status: str = None,
                             priority: str = None, incident_type: str = None,
                             page: int = 1, limit: int = 10) -> Tuple[List[dict], int]:
        class_ids = await self.gate.accessible_class_ids(user)
        if class_ids is not None and not class_ids:
            return [], 0
        query = self._filters(exam_id, status, priority, incident_type)
        if class_ids is not None:
            query["class_id"] = {"$in": class_ids}
        return await self._page(query, [("created_at", -1)], page, limit)

    async def list_for_admin(self, exam_id: str = None, status: str = None, priority: str = None,
                             incident_type: str = None, is_red_flag: bool = None,
                             page: int = 1, limit: int = 10) -> Tuple[List[dict], int]:
        query = self._filters(exam_id, status, priority, incident_type, is_red_flag)
        sort = [("is_red_flag", -1), ("priority_rank", -1), ("created_at", -1)]
        return await self._page(query, sort, page, limit)

    async def red_flag_summary(self) -> dict:
        incidents = await self.db.incidents.find(
            {"is_active": True, "is_red_flag": True}, {"_id": 0, "open_key": 0}
        ).sort([("priority_rank", -1), ("created_at", -1)]).to_list(None)
        return {
            "total": len(incidents),
            "by_priority": dict(Counter(i["priority"] for i in incidents)),
            "by_type": dict(Counter(i["type"] for i in incidents)),
            "by_status": dict(Counter(i["status"] for i in incidents)),
            "incidents": incidents,
        }

    async def completion_status(self, exam_id: str, user: User = None) -> dict:
        """Per-student read model of sheet and incident state for one exam."""
        exam = await get_exam_or_404(self.db, exam_id)
        if user is not None:
            await self.gate.require(user, class_id=exam.get("class_id"))

        students = await self.db.students.find(
            {"class_id": exam.get("class_id")}, {"_id": 0, "student_id": 1, "name": 1, "roll_number": 1}
        ).sort("roll_number", 1).to_list(None)
        sheets = await self.db.answer_sheets.find(
            {"exam_id": exam_id, "is_active": True}, {"_id": 0, "sheet_id": 1, "student_id": 1, "status": 1}
        ).to_list(None)
        incidents = await self.db.incidents.find(
            {"exam_id": exam_id, "is_active": True}, {"_id": 0, "open_key": 0}
        ).to_list(None)

        sheet_by_student = {s["student_id"]: s for s in sheets}
        incidents_by_student = {}
        for incident in incidents:
            incidents_by_student.setdefault(incident["student_id"], []).append(incident)

        rows = []
        for student in students:
            sid = student["student_id"]
            sheet = sheet_by_student.get(sid)
            student_incidents = incidents_by_student.get(sid, [])
            open_incidents = [i for i in student_incidents if i["status"] != IncidentStatus.RESOLVED.value]
            rows.append({
                **student,
                "has_answer_sheet": sheet is not None,
                "answer_sheet_id": sheet["sheet_id"] if sheet else None,
                "answer_sheet_status": sheet["status"] if sheet else None,
                "incidents": [
                    {"incident_id": i["incident_id"], "type": i["type"], "status": i["status"],
                     "is_red_flag": i["is_red_flag"], "priority": i["priority"]}
                    for i in student_incidents
                ],
                "requires_action": sheet is None or bool(open_incidents),
            })

        statuses = Counter(i["status"] for i in incidents)
        summary = {
            "total_students": len(students),
            "uploaded_sheets": len(sheets),
            "total_incidents": len(incidents),
            "pending_acknowledgment": statuses.get(IncidentStatus.REPORTED.value, 0)
                                      + statuses.get(IncidentStatus.PENDING.value, 0),
            "acknowledged": statuses.get(IncidentStatus.ACKNOWLEDGED.value, 0),
            "resolved": statuses.get(IncidentStatus.RESOLVED.value, 0),
            "escalated": statuses.get(IncidentStatus.ESCALATED.value, 0),
            "red_flags": sum(1 for i in incidents if i.get("is_red_flag")),
        }
        return {
            "exam_id": exam_id,
            "exam_name": exam.get("exam_name"),
            "class_id": exam.get("class_id"),
            "is_complete": all(i["status"] == IncidentStatus.RESOLVED.value for i in incidents),
            "summary": summary,
            "students": rows,
        }
