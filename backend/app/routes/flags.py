"""Answer sheet flag routes."""

from fastapi import APIRouter, Depends
from typing import Optional

from app.deps import get_access_gate, get_flag_tracker, get_staff_user
from app.errors import NotFound
from app.models.answer_sheet import (
    AnalysisSignals, BulkFlagResolve, FlagCreate, FlagResolve, FlagSeverity, FlagType,
)
from app.models.user import User
from app.services.access import AccessGate
from app.services.flags import FlagTracker
from app.services.lookups import get_exam_or_404
from app.utils.serialization import success_response

router = APIRouter(tags=["flags"])


async def _check_sheet_access(flags: FlagTracker, gate: AccessGate, sheet_id: str, user: User):
    sheet = await flags.db.answer_sheets.find_one(
        {"sheet_id": sheet_id, "is_active": True}, {"_id": 0, "class_id": 1}
    )
    if not sheet:
        raise NotFound("Answer sheet not found")
    await gate.require(user, class_id=sheet.get("class_id"))


@router.get("/answer-sheets/{sheet_id}/flags")
async def get_sheet_flags(
    sheet_id: str,
    user: User = Depends(get_staff_user),
    flags: FlagTracker = Depends(get_flag_tracker),
    gate: AccessGate = Depends(get_access_gate),
):
    await _check_sheet_access(flags, gate, sheet_id, user)
    return success_response(await flags.get_flags(sheet_id))


@router.post("/answer-sheets/{sheet_id}/flags", status_code=201)
async def add_sheet_flag(
    sheet_id: str,
    data: FlagCreate,
    user: User = Depends(get_staff_user),
    flags: FlagTracker = Depends(get_flag_tracker),
    gate: AccessGate = Depends(get_access_gate),
):
    await _check_sheet_access(flags, gate, sheet_id, user)
    flag = await flags.add_flag(sheet_id, data, detected_by=user.user_id)
    return success_response(flag, message="Flag added")


@router.post("/answer-sheets/{sheet_id}/flags/resolve-all")
async def resolve_all_sheet_flags(
    sheet_id: str,
    data: FlagResolve,
    user: User = Depends(get_staff_user),
    flags: FlagTracker = Depends(get_flag_tracker),
    gate: AccessGate = Depends(get_access_gate),
):
    await _check_sheet_access(flags, gate, sheet_id, user)
    resolved = await flags.resolve_all_flags(sheet_id, user.user_id, data.resolution_notes)
    return success_response({"sheet_id": sheet_id, "resolved_flags": resolved})


@router.post("/answer-sheets/{sheet_id}/flags/auto-detect")
async def auto_detect_sheet_flags(
    sheet_id: str,
    signals: AnalysisSignals,
    user: User = Depends(get_staff_user),
    flags: FlagTracker = Depends(get_flag_tracker),
    gate: AccessGate = Depends(get_access_gate),
):
    """Append flags derived from quality/confidence signals"""
    await _check_sheet_access(flags, gate, sheet_id, user)
    detected = await flags.auto_detect_flags(sheet_id, signals)
    return success_response(detected, message=f"{len(detected)} flag(s) detected")


@router.post("/answer-sheets/{sheet_id}/flags/{index}/resolve")
async def resolve_sheet_flag(
    sheet_id: str,
    index: int,
    data: FlagResolve,
    user: User = Depends(get_staff_user),
    flags: FlagTracker = Depends(get_flag_tracker),
    gate: AccessGate = Depends(get_access_gate),
):
    await _check_sheet_access(flags, gate, sheet_id, user)
    flag = await flags.resolve_flag(sheet_id, index, user.user_id, data.resolution_notes)
    return success_response(flag, message="Flag resolved")


@router.post("/flags/bulk-resolve")
async def bulk_resolve_flags(
    data: BulkFlagResolve,
    user: User = Depends(get_staff_user),
    flags: FlagTracker = Depends(get_flag_tracker),
    gate: AccessGate = Depends(get_access_gate),
):
    for sheet_id in data.sheet_ids:
        sheet = await flags.db.answer_sheets.find_one(
            {"sheet_id": sheet_id, "is_active": True}, {"_id": 0, "class_id": 1}
        )
        if sheet:
            await gate.require(user, class_id=sheet.get("class_id"))
    result = await flags.bulk_resolve_flags(data.sheet_ids, user.user_id, data.resolution_notes)
    return success_response(result)


@router.get("/flags/exam/{exam_id}")
async def get_flagged_sheets(
    exam_id: str,
    severity: Optional[FlagSeverity] = None,
    type: Optional[FlagType] = None,
    resolved: Optional[bool] = None,
    user: User = Depends(get_staff_user),
    flags: FlagTracker = Depends(get_flag_tracker),
    gate: AccessGate = Depends(get_access_gate),
):
    exam = await get_exam_or_404(flags.db, exam_id)
    await gate.require(user, class_id=exam.get("class_id"))
    sheets = await flags.flagged_sheets(
        exam_id,
        severity=severity.value if severity else None,
        flag_type=type.value if type else None,
        resolved=resolved,
    )
    return success_response(sheets)


@router.get("/flags/exam/{exam_id}/statistics")
async def get_flag_statistics(
    exam_id: str,
    user: User = Depends(get_staff_user),
    flags: FlagTracker = Depends(get_flag_tracker),
    gate: AccessGate = Depends(get_access_gate),
):
    exam = await get_exam_or_404(flags.db, exam_id)
    await gate.require(user, class_id=exam.get("class_id"))
    return success_response(await flags.flag_statistics(exam_id))
