"""Answer sheet routes."""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from app.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from app.deps import get_admin_user, get_ledger, get_staff_user
from app.models.answer_sheet import (
    AnswerSheetUpload, CorrectionResult, ManualOverrideCreate, SheetMarkReason, SheetStatus,
)
from app.models.user import User
from app.services.answer_sheets import AnswerSheetLedger
from app.utils.serialization import pagination_meta, success_response

router = APIRouter(tags=["answer-sheets"])


@router.post("/answer-sheets", status_code=201)
async def upload_answer_sheet(
    data: AnswerSheetUpload,
    user: User = Depends(get_staff_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    """Record an uploaded answer sheet and auto-detect quality flags"""
    sheet = await ledger.record_upload(data, user)
    return success_response(sheet, message="Answer sheet uploaded")


@router.get("/answer-sheets/exam/{exam_id}")
async def list_exam_answer_sheets(
    exam_id: str,
    status: Optional[SheetStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: User = Depends(get_staff_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    sheets, total = await ledger.list_by_exam(exam_id, status.value if status else None, page, limit, user=user)
    return success_response(sheets, pagination=pagination_meta(page, limit, total))


@router.get("/answer-sheets/{sheet_id}")
async def get_answer_sheet(
    sheet_id: str,
    user: User = Depends(get_staff_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    sheet = await ledger.get_sheet(sheet_id)
    await ledger.gate.require(user, class_id=sheet.get("class_id"))
    return success_response(sheet)


@router.post("/answer-sheets/{sheet_id}/process")
async def begin_processing(
    sheet_id: str,
    user: User = Depends(get_staff_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    """Hand a sheet to automated correction (UPLOADED -> PROCESSING)"""
    return success_response(await ledger.begin_processing(sheet_id, user))


@router.post("/answer-sheets/{sheet_id}/correction-result")
async def ingest_correction_result(
    sheet_id: str,
    result: CorrectionResult,
    user: User = Depends(get_staff_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    sheet = await ledger.ingest_correction_result(sheet_id, result, user)
    return success_response(sheet, message="Correction result recorded")


@router.post("/answer-sheets/{sheet_id}/manual-override")
async def apply_manual_override(
    sheet_id: str,
    data: ManualOverrideCreate,
    user: User = Depends(get_staff_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    sheet = await ledger.apply_manual_override(sheet_id, data, user)
    return success_response(sheet, message="Manual override applied")


@router.post("/answer-sheets/{sheet_id}/missing")
async def mark_sheet_missing(
    sheet_id: str,
    data: SheetMarkReason,
    user: User = Depends(get_staff_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    sheet = await ledger.mark_missing(sheet_id, data.reason, user)
    return success_response(sheet, message="Answer sheet marked as missing")


@router.post("/answer-sheets/exam/{exam_id}/student/{student_id}/absent")
async def mark_student_absent(
    exam_id: str,
    student_id: str,
    data: SheetMarkReason,
    user: User = Depends(get_staff_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    sheet = await ledger.mark_absent(exam_id, student_id, data.reason, user)
    return success_response(sheet, message="Student marked as absent")


@router.post("/answer-sheets/{sheet_id}/complete")
async def complete_answer_sheet(
    sheet_id: str,
    user: User = Depends(get_staff_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    return success_response(await ledger.complete(sheet_id, user))


@router.delete("/answer-sheets/{sheet_id}")
async def deactivate_answer_sheet(
    sheet_id: str,
    user: User = Depends(get_admin_user),
    ledger: AnswerSheetLedger = Depends(get_ledger),
):
    """Soft-delete; a fresh upload for the same student becomes possible"""
    await ledger.deactivate(sheet_id, user)
    return success_response({"sheet_id": sheet_id}, message="Answer sheet deactivated")
