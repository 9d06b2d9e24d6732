import anyio
import pytest

from app.errors import Conflict, Forbidden, NotFound, StateConflict, ValidationFailure
from app.models.answer_sheet import AnswerSheetUpload
from app.models.incident import Incident, IncidentReport, IncidentStatus, Priority
from app.services.push import PushSession

pytestmark = pytest.mark.anyio


def report(student_id="S1", type="ABSENT", priority="MEDIUM", exam_id="E1", reason="Not present at roll call"):
    return IncidentReport(exam_id=exam_id, student_id=student_id, type=type, priority=priority, reason=reason)


async def test_report_opens_red_flag_and_rejects_duplicates(incidents, users):
    incident = await incidents.report(report(priority="URGENT"), users["T1"])

    assert incident["status"] == "REPORTED"
    assert incident["is_red_flag"] is True
    assert incident["priority"] == "URGENT"
    assert incident["reported_by"] == "T1"
    assert incident["class_id"] == "C1"
    assert "open_key" not in incident
    assert Incident(**incident).status == IncidentStatus.REPORTED

    with pytest.raises(Conflict):
        await incidents.report(report(priority="URGENT"), users["T1"])


async def test_acknowledge_then_resolve(incidents, users):
    incident = await incidents.report(report(priority="URGENT"), users["T1"])
    incident_id = incident["incident_id"]

    with pytest.raises(StateConflict, match="must be acknowledged before resolution"):
        await incidents.resolve(incident_id, users["A1"], "Parent confirmed illness")

    acknowledged = await incidents.acknowledge(incident_id, users["A1"], remarks="Verified with parent")
    assert acknowledged["status"] == "ACKNOWLEDGED"
    assert acknowledged["is_red_flag"] is False
    assert acknowledged["admin_remarks"] == "Verified with parent"
    assert acknowledged["acknowledged_by"] == "A1"

    resolved = await incidents.resolve(incident_id, users["A1"], "Parent confirmed illness")
    assert resolved["status"] == "RESOLVED"
    assert resolved["is_completed"] is True
    assert resolved["is_red_flag"] is False
    assert resolved["resolved_by"] == "A1"

    with pytest.raises(StateConflict, match="already resolved"):
        await incidents.resolve(incident_id, users["A1"], "again")
    with pytest.raises(StateConflict, match="only REPORTED incidents can be acknowledged"):
        await incidents.acknowledge(incident_id, users["A1"])


async def test_acknowledge_can_reprioritise(incidents, users, db):
    incident = await incidents.report(report(), users["T1"])

    await incidents.acknowledge(incident["incident_id"], users["A1"], priority=Priority.HIGH)

    stored = await db.incidents.find_one({"incident_id": incident["incident_id"]})
    assert stored["priority"] == "HIGH"
    assert stored["priority_rank"] == 3


async def test_resolved_incident_can_be_reported_again(incidents, users):
    first = await incidents.report(report(), users["T1"])
    await incidents.acknowledge(first["incident_id"], users["A1"])
    await incidents.resolve(first["incident_id"], users["A1"], "Handled")

    second = await incidents.report(report(), users["T1"])

    assert second["incident_id"] != first["incident_id"]
    assert second["status"] == "REPORTED"


async def test_report_requires_matching_capability(incidents, users, db):
    with pytest.raises(Forbidden):
        await incidents.report(report(), users["T2"])

    await db.staff_access.update_one({"staff_id": "T1"}, {"$set": {"class_access.0.can_mark_missing": False}})
    with pytest.raises(Forbidden):
        await incidents.report(report(type="MISSING_SHEET"), users["T1"])
    # Types without a dedicated capability only need class access
    assert await incidents.report(report(type="LATE_SUBMISSION"), users["T1"])


async def test_report_validates_input(incidents, users):
    with pytest.raises(ValidationFailure):
        await incidents.report(report(reason="   "), users["T1"])
    with pytest.raises(ValidationFailure):
        await incidents.report(report(student_id="S3"), users["A1"])
    with pytest.raises(NotFound):
        await incidents.report(report(student_id="S404"), users["A1"])


async def test_report_notifies_responsible_admin(incidents, users, db, registry, socket_factory):
    socket = socket_factory()
    await registry.add(PushSession(socket, "A1", "ADMIN"))

    incident = await incidents.report(report(priority="URGENT"), users["T1"])

    notice = await db.notifications.find_one({"related_entity_id": incident["incident_id"]}, {"_id": 0})
    assert notice["recipient_id"] == "A1"
    assert notice["type"] == "ABSENT_STUDENT"
    assert notice["priority"] == "URGENT"
    assert incident["related_notification_ids"] == [notice["notification_id"]]
    assert socket.sent[0]["event"] == "notification"
    assert socket.sent[0]["data"]["notification_id"] == notice["notification_id"]


async def test_exam_without_admin_notifies_reporting_admin(incidents, users, db):
    incident = await incidents.report(report(exam_id="E2", student_id="S3", type="QUALITY_ISSUE"), users["A2"])

    notice = await db.notifications.find_one({"related_entity_id": incident["incident_id"]})
    assert notice["recipient_id"] == "A2"
    assert notice["type"] == "MISSING_PAPER_REPORTED"


async def test_incident_lifecycle_moves_its_notifications(incidents, notifications, users, db):
    incident = await incidents.report(report(), users["T1"])
    query = {"related_entity_id": incident["incident_id"]}

    await incidents.acknowledge(incident["incident_id"], users["A1"])
    acknowledged = await db.notifications.find_one(query)
    assert acknowledged["status"] == "ACKNOWLEDGED"
    assert acknowledged["acknowledged_by"] == "A1"

    await incidents.resolve(incident["incident_id"], users["A1"], "Done")
    resolved = await db.notifications.find_one(query)
    assert resolved["status"] == "RESOLVED"
    assert resolved["resolved_by"] == "A1"


async def test_dismissed_notification_stays_dismissed(incidents, notifications, users, db):
    incident = await incidents.report(report(), users["T1"])
    notice = await db.notifications.find_one({"related_entity_id": incident["incident_id"]})
    await notifications.dismiss(notice["notification_id"], "A1")

    await incidents.acknowledge(incident["incident_id"], users["A1"])
    await incidents.resolve(incident["incident_id"], users["A1"], "Done")

    assert (await db.notifications.find_one({"notification_id": notice["notification_id"]}))["status"] == "DISMISSED"


async def test_report_reflects_on_existing_sheet(incidents, ledger, users, db):
    sheet = await ledger.record_upload(
        AnswerSheetUpload(exam_id="E1", student_id="S1", file_ref="scans/e1/s1.pdf"), users["T1"]
    )

    incident = await incidents.report(report(), users["T1"])
    assert incident["answer_sheet_id"] == sheet["sheet_id"]

    stored = await db.answer_sheets.find_one({"sheet_id": sheet["sheet_id"]})
    assert stored["status"] == "ABSENT"
    assert stored["is_absent"] is True

    await incidents.acknowledge(incident["incident_id"], users["A1"])
    stored = await db.answer_sheets.find_one({"sheet_id": sheet["sheet_id"]})
    assert stored["acknowledged_by"] == "A1"


async def test_escalation_keeps_red_flag_and_notifies_target(incidents, users, db):
    incident = await incidents.report(report(), users["T1"])
    await incidents.acknowledge(incident["incident_id"], users["A1"])

    escalated = await incidents.escalate(incident["incident_id"], users["A1"], "A2", "Needs principal sign-off")

    assert escalated["status"] == "ESCALATED"
    assert escalated["is_red_flag"] is True
    assert escalated["escalated_to"] == "A2"
    notice = await db.notifications.find_one({"recipient_id": "A2"})
    assert notice["type"] == "INCIDENT_ESCALATED"
    assert notice["priority"] == "URGENT"
    assert notice["notification_id"] in escalated["related_notification_ids"]

    with pytest.raises(StateConflict):
        await incidents.resolve(incident["incident_id"], users["A1"], "skip ahead")

    reopened = await incidents.reopen(incident["incident_id"], users["A2"])
    assert reopened["status"] == "REPORTED"
    assert reopened["is_red_flag"] is True
    assert (await incidents.acknowledge(incident["incident_id"], users["A2"]))["status"] == "ACKNOWLEDGED"


async def test_escalation_rules(incidents, users):
    incident = await incidents.report(report(), users["T1"])

    with pytest.raises(NotFound):
        await incidents.escalate(incident["incident_id"], users["A1"], "nobody", "reason")
    with pytest.raises(StateConflict):
        await incidents.reopen(incident["incident_id"], users["A1"])

    await incidents.acknowledge(incident["incident_id"], users["A1"])
    await incidents.resolve(incident["incident_id"], users["A1"], "Done")
    with pytest.raises(StateConflict):
        await incidents.escalate(incident["incident_id"], users["A1"], "A2", "too late")


async def test_unknown_incident(incidents, users):
    with pytest.raises(NotFound):
        await incidents.acknowledge("inc_missing", users["A1"])
    with pytest.raises(NotFound):
        await incidents.get_incident("inc_missing")


async def test_admin_listing_puts_red_flags_and_priority_first(incidents, users):
    handled = await incidents.report(report("S1", "LATE_SUBMISSION", "HIGH"), users["T1"])
    await incidents.acknowledge(handled["incident_id"], users["A1"])
    low = await incidents.report(report("S2", "LATE_SUBMISSION", "LOW"), users["T1"])
    urgent = await incidents.report(report("S2", "ABSENT", "URGENT"), users["T1"])

    items, total = await incidents.list_for_admin()
    assert total == 3
    assert [i["incident_id"] for i in items] == [urgent["incident_id"], low["incident_id"], handled["incident_id"]]

    red, red_total = await incidents.list_for_admin(is_red_flag=True)
    assert red_total == 2

    summary = await incidents.red_flag_summary()
    assert summary["total"] == 2
    assert summary["by_priority"] == {"URGENT": 1, "LOW": 1}
    assert summary["incidents"][0]["incident_id"] == urgent["incident_id"]


async def test_staff_listing_is_scoped_to_accessible_classes(incidents, users):
    await incidents.report(report(), users["T1"])
    await incidents.report(report(exam_id="E2", student_id="S3"), users["A1"])

    assert (await incidents.list_for_staff(users["T1"]))[1] == 1
    assert await incidents.list_for_staff(users["T2"]) == ([], 0)
    assert (await incidents.list_for_staff(users["A1"]))[1] == 2


async def test_get_incident_checks_class_access(incidents, users):
    incident = await incidents.report(report(), users["T1"])

    assert (await incidents.get_incident(incident["incident_id"], users["T1"]))["type"] == "ABSENT"
    with pytest.raises(Forbidden):
        await incidents.get_incident(incident["incident_id"], users["T2"])


async def test_completion_status(incidents, ledger, users):
    await ledger.record_upload(AnswerSheetUpload(exam_id="E1", student_id="S1", file_ref="scans/e1/s1.pdf"),
                               users["T1"])
    incident = await incidents.report(report("S2"), users["T1"])

    status = await incidents.completion_status("E1", users["T1"])
    assert status["is_complete"] is False
    assert status["summary"]["total_students"] == 2
    assert status["summary"]["uploaded_sheets"] == 1
    assert status["summary"]["pending_acknowledgment"] == 1
    assert status["summary"]["red_flags"] == 1
    rows = {row["student_id"]: row for row in status["students"]}
    assert rows["S1"]["has_answer_sheet"] is True
    assert rows["S1"]["requires_action"] is False
    assert rows["S2"]["requires_action"] is True
    assert rows["S2"]["incidents"][0]["status"] == "REPORTED"

    await incidents.acknowledge(incident["incident_id"], users["A1"])
    await incidents.resolve(incident["incident_id"], users["A1"], "Sat a make-up exam")

    status = await incidents.completion_status("E1", users["T1"])
    assert status["is_complete"] is True
    assert status["summary"]["resolved"] == 1
    assert status["summary"]["red_flags"] == 0

    with pytest.raises(Forbidden):
        await incidents.completion_status("E1", users["T2"])


async def test_escalated_incident_cannot_be_escalated_again(incidents, users, db):
    incident = await incidents.report(report(), users["T1"])
    await incidents.escalate(incident["incident_id"], users["A1"], "A2", "Needs principal sign-off")

    with pytest.raises(StateConflict, match="already escalated"):
        await incidents.escalate(incident["incident_id"], users["A1"], "A1", "Redirect")

    stored = await db.incidents.find_one({"incident_id": incident["incident_id"]})
    assert stored["escalated_to"] == "A2"
    assert await db.notifications.count_documents({"type": "INCIDENT_ESCALATED"}) == 1

    await incidents.reopen(incident["incident_id"], users["A2"])
    again = await incidents.escalate(incident["incident_id"], users["A2"], "A1", "Back to the class admin")
    assert again["escalated_to"] == "A1"


async def race(*calls):
    """Run the calls concurrently and collect each outcome."""
    outcomes = []

    async def run(call):
        try:
            outcomes.append(await call())
        except Conflict as exc:
            outcomes.append(exc)

    async with anyio.create_task_group() as tg:
        for call in calls:
            tg.start_soon(run, call)
    return outcomes


async def test_concurrent_reports_open_one_incident(incidents, users, db):
    outcomes = await race(
        lambda: incidents.report(report(), users["T1"]),
        lambda: incidents.report(report(), users["A1"]),
    )

    assert sum(isinstance(o, dict) for o in outcomes) == 1
    assert sum(type(o) is Conflict for o in outcomes) == 1
    assert await db.incidents.count_documents({"exam_id": "E1", "student_id": "S1", "type": "ABSENT"}) == 1


async def test_concurrent_acknowledgments_have_one_winner(incidents, users, db):
    incident = await incidents.report(report(), users["T1"])
    incident_id = incident["incident_id"]

    outcomes = await race(
        lambda: incidents.acknowledge(incident_id, users["A1"], remarks="first"),
        lambda: incidents.acknowledge(incident_id, users["A2"], remarks="second"),
    )

    winners = [o for o in outcomes if isinstance(o, dict)]
    assert len(winners) == 1
    assert sum(isinstance(o, StateConflict) for o in outcomes) == 1
    stored = await db.incidents.find_one({"incident_id": incident_id})
    assert stored["acknowledged_by"] == winners[0]["acknowledged_by"]
    assert stored["admin_remarks"] == winners[0]["admin_remarks"]
