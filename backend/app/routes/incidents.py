"""Incident (missing paper / absence) routes."""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from app.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from app.deps import get_admin_user, get_incident_tracker, get_staff_user
from app.models.incident import (
    IncidentAcknowledge, IncidentEscalate, IncidentReport, IncidentResolve, IncidentStatus, IncidentType, Priority,
)
from app.models.user import User
from app.services.incidents import IncidentTracker
from app.utils.serialization import pagination_meta, success_response

router = APIRouter(tags=["incidents"])


def _value(enum_value):
    return enum_value.value if enum_value is not None else None


@router.post("/incidents", status_code=201)
async def report_incident(
    data: IncidentReport,
    user: User = Depends(get_staff_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    """Report a missing paper, absence or sheet issue; notifies the responsible admin"""
    incident = await tracker.report(data, user)
    return success_response(incident, message="Incident reported")


@router.get("/incidents")
async def list_my_incidents(
    exam_id: Optional[str] = None,
    status: Optional[IncidentStatus] = None,
    priority: Optional[Priority] = None,
    type: Optional[IncidentType] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: User = Depends(get_staff_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    """Incidents in the classes the caller has access to"""
    incidents, total = await tracker.list_for_staff(
        user, exam_id, _value(status), _value(priority), _value(type), page, limit
    )
    return success_response(incidents, pagination=pagination_meta(page, limit, total))


@router.get("/admin/incidents")
async def list_all_incidents(
    exam_id: Optional[str] = None,
    status: Optional[IncidentStatus] = None,
    priority: Optional[Priority] = None,
    type: Optional[IncidentType] = None,
    is_red_flag: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    admin: User = Depends(get_admin_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    """Red flags first, then by priority, newest first"""
    incidents, total = await tracker.list_for_admin(
        exam_id, _value(status), _value(priority), _value(type), is_red_flag, page, limit
    )
    return success_response(incidents, pagination=pagination_meta(page, limit, total))


@router.get("/admin/incidents/red-flags")
async def red_flag_summary(
    admin: User = Depends(get_admin_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    return success_response(await tracker.red_flag_summary())


@router.get("/incidents/{incident_id}")
async def get_incident(
    incident_id: str,
    user: User = Depends(get_staff_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    return success_response(await tracker.get_incident(incident_id, user))


@router.post("/admin/incidents/{incident_id}/acknowledge")
async def acknowledge_incident(
    incident_id: str,
    data: IncidentAcknowledge,
    admin: User = Depends(get_admin_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    incident = await tracker.acknowledge(incident_id, admin, data.remarks, data.priority)
    return success_response(incident, message="Incident acknowledged")


@router.post("/admin/incidents/{incident_id}/resolve")
async def resolve_incident(
    incident_id: str,
    data: IncidentResolve,
    admin: User = Depends(get_admin_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    incident = await tracker.resolve(incident_id, admin, data.resolution_notes, data.completion_notes)
    return success_response(incident, message="Incident resolved")


@router.post("/admin/incidents/{incident_id}/escalate")
async def escalate_incident(
    incident_id: str,
    data: IncidentEscalate,
    admin: User = Depends(get_admin_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    incident = await tracker.escalate(incident_id, admin, data.escalate_to, data.reason)
    return success_response(incident, message="Incident escalated")


@router.post("/admin/incidents/{incident_id}/reopen")
async def reopen_incident(
    incident_id: str,
    admin: User = Depends(get_admin_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    incident = await tracker.reopen(incident_id, admin)
    return success_response(incident, message="Incident reopened")


@router.get("/exams/{exam_id}/completion-status")
async def exam_completion_status(
    exam_id: str,
    user: User = Depends(get_staff_user),
    tracker: IncidentTracker = Depends(get_incident_tracker),
):
    return success_response(await tracker.completion_status(exam_id, user))
