import pytest

from conftest import auth_headers

pytestmark = pytest.mark.anyio

ABSENCE = {"exam_id": "E1", "student_id": "S1", "type": "ABSENT", "priority": "URGENT",
           "reason": "Not present at roll call"}


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["live_sessions"] == 0


async def test_requests_need_a_valid_token(client):
    missing = await client.get("/api/notifications")
    assert missing.status_code == 401
    assert missing.json() == {"success": False, "error": {"kind": "UNAUTHORIZED", "message": "Not authenticated"}}

    garbage = await client.get("/api/notifications", headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401

    banned = await client.get("/api/notifications", headers=auth_headers("T3", "TEACHER"))
    assert banned.status_code == 403
    assert banned.json()["error"]["kind"] == "FORBIDDEN"


async def test_students_are_not_staff(client):
    response = await client.post("/api/incidents", json=ABSENCE, headers=auth_headers("ST1", "STUDENT"))

    assert response.status_code == 403


async def test_admin_routes_reject_teachers(client, as_teacher):
    response = await client.get("/api/admin/incidents", headers=as_teacher)

    assert response.status_code == 403
    assert response.json()["error"]["message"] == "Admin access required"


async def test_schema_errors_use_the_error_envelope(client, as_teacher):
    response = await client.post("/api/incidents", json={"exam_id": "E1", "type": "ABSENT"}, headers=as_teacher)

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]["kind"] == "VALIDATION_FAILED"
    assert {tuple(d["loc"])[-1] for d in body["error"]["details"]} >= {"student_id", "reason"}


async def test_missing_resource_uses_the_error_envelope(client, as_admin):
    response = await client.get("/api/answer-sheets/sheet_missing", headers=as_admin)

    assert response.status_code == 404
    assert response.json()["error"] == {"kind": "NOT_FOUND", "message": "Answer sheet not found"}


async def test_incident_flow_over_http(client, as_teacher, as_admin):
    created = await client.post("/api/incidents", json=ABSENCE, headers=as_teacher)
    assert created.status_code == 201
    incident = created.json()["data"]
    assert incident["status"] == "REPORTED"
    assert incident["is_red_flag"] is True

    duplicate = await client.post("/api/incidents", json=ABSENCE, headers=as_teacher)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["kind"] == "CONFLICT"

    base = f"/api/admin/incidents/{incident['incident_id']}"
    early = await client.post(f"{base}/resolve", json={"resolution_notes": "Done"}, headers=as_admin)
    assert early.status_code == 400
    assert early.json()["error"]["kind"] == "INVALID_STATE"
    assert "must be acknowledged before resolution" in early.json()["error"]["message"]

    inbox = await client.get("/api/notifications", headers=as_admin)
    assert inbox.json()["unread_count"] == 1
    assert inbox.json()["data"][0]["related_entity_id"] == incident["incident_id"]

    acknowledged = await client.post(f"{base}/acknowledge", json={"remarks": "Verified with parent"},
                                     headers=as_admin)
    assert acknowledged.status_code == 200
    assert acknowledged.json()["data"]["status"] == "ACKNOWLEDGED"
    assert acknowledged.json()["data"]["is_red_flag"] is False

    resolved = await client.post(f"{base}/resolve", json={"resolution_notes": "Medical certificate received"},
                                 headers=as_admin)
    assert resolved.status_code == 200
    assert resolved.json()["data"]["status"] == "RESOLVED"
    assert resolved.json()["data"]["is_completed"] is True

    unread = await client.get("/api/notifications/unread-count", headers=as_admin)
    assert unread.json()["data"] == {"unread_count": 0}


async def test_sheet_flow_over_http(client, as_teacher, as_admin):
    uploaded = await client.post(
        "/api/answer-sheets",
        json={"exam_id": "E1", "student_id": "S1", "file_ref": "scans/e1/s1.pdf", "scan_quality": "POOR"},
        headers=as_teacher,
    )
    assert uploaded.status_code == 201
    sheet_id = uploaded.json()["data"]["sheet_id"]

    flags = await client.get(f"/api/answer-sheets/{sheet_id}/flags", headers=as_teacher)
    assert flags.json()["data"]["unresolved"] == 1

    resolved = await client.post(f"/api/answer-sheets/{sheet_id}/flags/0/resolve",
                                 json={"resolution_notes": "checked"}, headers=as_teacher)
    assert resolved.status_code == 200
    again = await client.post(f"/api/answer-sheets/{sheet_id}/flags/0/resolve",
                              json={"resolution_notes": "checked"}, headers=as_teacher)
    assert again.status_code == 400
    assert again.json()["error"]["message"] == "Flag is already resolved"

    result = {"confidence": 0.9, "total_marks": 10, "obtained_marks": 7, "question_results": [
        {"question_number": 1, "question_id": "Q1", "student_answer": "42", "marks_obtained": 7, "max_marks": 10},
    ]}
    corrected = await client.post(f"/api/answer-sheets/{sheet_id}/correction-result", json=result,
                                  headers=as_teacher)
    assert corrected.json()["data"]["status"] == "AI_CORRECTED"

    short = await client.post(f"/api/answer-sheets/{sheet_id}/manual-override", headers=as_teacher, json={
        "question_id": "Q1", "corrected_answer": "42", "corrected_marks": 8, "reason": "short",
    })
    assert short.status_code == 400

    completed = await client.post(f"/api/answer-sheets/{sheet_id}/complete", headers=as_teacher)
    assert completed.json()["data"]["status"] == "COMPLETED"

    removed = await client.delete(f"/api/answer-sheets/{sheet_id}", headers=as_teacher)
    assert removed.status_code == 403
    removed = await client.delete(f"/api/answer-sheets/{sheet_id}", headers=as_admin)
    assert removed.status_code == 200


async def test_ungranted_teacher_is_forbidden(client, as_ungranted_teacher):
    response = await client.post(
        "/api/answer-sheets",
        json={"exam_id": "E1", "student_id": "S1", "file_ref": "scans/e1/s1.pdf"},
        headers=as_ungranted_teacher,
    )

    assert response.status_code == 403
    assert "NO_GRANT" in response.json()["error"]["message"]


async def test_exam_listing_respects_class_access(client, as_teacher, as_ungranted_teacher):
    await client.post("/api/answer-sheets", headers=as_teacher,
                      json={"exam_id": "E1", "student_id": "S1", "file_ref": "scans/e1/s1.pdf"})

    granted = await client.get("/api/answer-sheets/exam/E1", headers=as_teacher)
    assert granted.status_code == 200
    assert granted.json()["pagination"]["total"] == 1

    denied = await client.get("/api/answer-sheets/exam/E1", headers=as_ungranted_teacher)
    assert denied.status_code == 403
    assert "NO_GRANT" in denied.json()["error"]["message"]


async def test_staff_access_over_http(client, as_admin, as_ungranted_teacher):
    created = await client.post("/api/admin/staff-access", headers=as_admin, json={
        "staff_id": "T2",
        "class_access": [{"class_id": "C1", "can_upload_sheets": True}],
    })
    assert created.status_code == 201

    check = await client.get("/api/staff-access/classes/C1", params={"capability": "can_upload_sheets"},
                             headers=as_ungranted_teacher)
    assert check.json()["data"]["has_access"] is True

    denied = await client.get("/api/staff-access/classes/C1", params={"capability": "can_override_ai"},
                              headers=as_ungranted_teacher)
    assert denied.json()["data"]["has_access"] is False
    assert denied.json()["data"]["reason"] == "CAPABILITY_DENIED"

    revoked = await client.delete("/api/admin/staff-access/T2", headers=as_admin)
    assert revoked.status_code == 200
    after = await client.get("/api/staff-access/classes/C1", headers=as_ungranted_teacher)
    assert after.json()["data"]["reason"] == "NO_GRANT"


async def test_pagination_metadata(client, as_teacher, as_admin):
    for student_id in ("S1", "S2"):
        await client.post("/api/incidents", headers=as_teacher, json={
            "exam_id": "E1", "student_id": student_id, "type": "LATE_SUBMISSION", "reason": "Handed in late",
        })

    response = await client.get("/api/admin/incidents", params={"page": 2, "limit": 1}, headers=as_admin)

    body = response.json()
    assert body["pagination"] == {"page": 2, "limit": 1, "total": 2, "pages": 2}
    assert len(body["data"]) == 1

    too_big = await client.get("/api/admin/incidents", params={"limit": 1000}, headers=as_admin)
    assert too_big.status_code == 400
