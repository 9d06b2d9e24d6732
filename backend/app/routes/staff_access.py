"""Staff access grant routes."""

from fastapi import APIRouter, Depends, Query

from app.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from app.deps import get_access_gate, get_admin_user, get_staff_user
from app.models.staff_access import StaffAccessCreate, StaffAccessUpdate
from app.models.user import User
from app.services.access import AccessGate
from app.utils.serialization import pagination_meta, success_response

router = APIRouter(tags=["staff-access"])


@router.post("/admin/staff-access", status_code=201)
async def create_staff_access(
    data: StaffAccessCreate,
    admin: User = Depends(get_admin_user),
    gate: AccessGate = Depends(get_access_gate),
):
    grant = await gate.create_grant(data, assigned_by=admin.user_id)
    return success_response(grant, message="Staff access granted")


@router.get("/admin/staff-access")
async def list_staff_access(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    admin: User = Depends(get_admin_user),
    gate: AccessGate = Depends(get_access_gate),
):
    grants, total = await gate.list_grants(page, limit)
    return success_response(grants, pagination=pagination_meta(page, limit, total))


@router.get("/admin/staff-access/{staff_id}")
async def get_staff_access(
    staff_id: str,
    admin: User = Depends(get_admin_user),
    gate: AccessGate = Depends(get_access_gate),
):
    return success_response(await gate.get_grant_or_404(staff_id))


@router.put("/admin/staff-access/{staff_id}")
async def update_staff_access(
    staff_id: str,
    data: StaffAccessUpdate,
    admin: User = Depends(get_admin_user),
    gate: AccessGate = Depends(get_access_gate),
):
    grant = await gate.update_grant(staff_id, data)
    return success_response(grant, message="Staff access updated")


@router.delete("/admin/staff-access/{staff_id}")
async def revoke_staff_access(
    staff_id: str,
    admin: User = Depends(get_admin_user),
    gate: AccessGate = Depends(get_access_gate),
):
    await gate.deactivate_grant(staff_id)
    return success_response({"staff_id": staff_id}, message="Staff access revoked")


@router.get("/staff-access/classes/{class_id}")
async def check_class_access(
    class_id: str,
    capability: str = None,
    user: User = Depends(get_staff_user),
    gate: AccessGate = Depends(get_access_gate),
):
    """Capability summary for the caller on one class"""
    summary = await gate.can_act(user.user_id, class_id=class_id, capability=capability, role=user.role)
    return success_response(summary)


@router.get("/staff-access/subjects/{subject_id}")
async def check_subject_access(
    subject_id: str,
    capability: str = None,
    user: User = Depends(get_staff_user),
    gate: AccessGate = Depends(get_access_gate),
):
    summary = await gate.can_act(user.user_id, subject_id=subject_id, capability=capability, role=user.role)
    return success_response(summary)
