"""
Answer sheet flags: auto-detection, manual flags and their resolution lifecycle.

Flags live embedded in the answer sheet document. ``flag_count`` and
``open_flag_count`` are maintained alongside the array so completion checks
and dashboards never need to scan it.
"""

from collections import Counter
from typing import List

from app.config import (
    ALLOWED_SHEET_FORMATS, AI_CONFIDENCE_THRESHOLD, MAX_SHEET_FILE_SIZE, ROLL_NUMBER_CONFIDENCE_THRESHOLD, logger,
)
from app.errors import NotFound, StateConflict, ValidationFailure
from app.models.answer_sheet import (
    AnalysisSignals, FlagCreate, FlagSeverity, FlagType, ScanQuality,
)
from app.utils.ids import parse_iso, utc_now_iso


def detect_flags(signals: AnalysisSignals) -> List[FlagCreate]:
    """Map quality/confidence signals to candidate flags. Pure; a rule fires only when its signal is present."""
    flags = []

    if signals.roll_number_confidence is not None or signals.roll_number_detected is not None:
        confidence = signals.roll_number_confidence or 0
        if not signals.roll_number_detected or confidence < ROLL_NUMBER_CONFIDENCE_THRESHOLD:
            flags.append(FlagCreate(
                type=FlagType.UNMATCHED_ROLL,
                severity=FlagSeverity.HIGH,
                description=f"Roll number not detected or low confidence ({confidence:.0f}%)",
            ))
        elif signals.expected_roll_number and signals.roll_number_detected != signals.expected_roll_number:
            flags.append(FlagCreate(
                type=FlagType.UNMATCHED_ROLL,
                severity=FlagSeverity.HIGH,
                description=(f"Detected roll number {signals.roll_number_detected} does not match "
                             f"expected {signals.expected_roll_number}"),
            ))

    if signals.scan_quality in (ScanQuality.POOR, ScanQuality.UNREADABLE):
        unreadable = signals.scan_quality == ScanQuality.UNREADABLE
        flags.append(FlagCreate(
            type=FlagType.POOR_QUALITY,
            severity=FlagSeverity.CRITICAL if unreadable else FlagSeverity.HIGH,
            description=f"Scan quality is {signals.scan_quality.value.lower()}",
        ))

    if signals.is_aligned is False:
        flags.append(FlagCreate(
            type=FlagType.ALIGNMENT_ISSUE,
            severity=FlagSeverity.MEDIUM,
            description="Answer sheet is not properly aligned",
        ))

    if signals.file_size is not None and signals.file_size > MAX_SHEET_FILE_SIZE:
        flags.append(FlagCreate(
            type=FlagType.SIZE_TOO_LARGE,
            severity=FlagSeverity.MEDIUM,
            description=f"File size {signals.file_size / (1024 * 1024):.1f}MB exceeds the "
                        f"{MAX_SHEET_FILE_SIZE / (1024 * 1024):.0f}MB limit",
        ))

    if signals.file_format and signals.file_format not in ALLOWED_SHEET_FORMATS:
        flags.append(FlagCreate(
            type=FlagType.INVALID_FORMAT,
            severity=FlagSeverity.HIGH,
            description=f"Unsupported file format: {signals.file_format}",
        ))

    if signals.ai_confidence is not None and signals.ai_confidence < AI_CONFIDENCE_THRESHOLD:
        flags.append(FlagCreate(
            type=FlagType.MANUAL_REVIEW_REQUIRED,
            severity=FlagSeverity.MEDIUM,
            description=f"Automated correction confidence is low ({signals.ai_confidence:.0%})",
        ))

    if signals.blank_answers or signals.irrelevant_answers:
        parts = []
        if signals.blank_answers:
            parts.append(f"blank answers for questions {', '.join(map(str, signals.blank_answers))}")
        if signals.irrelevant_answers:
            parts.append(f"irrelevant answers for questions {', '.join(map(str, signals.irrelevant_answers))}")
        flags.append(FlagCreate(
            type=FlagType.MANUAL_REVIEW_REQUIRED,
            severity=FlagSeverity.LOW,
            description="Detected " + "; ".join(parts),
        ))

    return flags


class FlagTracker:
    def __init__(self, db):
        self.db = db

    async def _get_sheet(self, sheet_id: str, projection: dict = None) -> dict:
        sheet = await self.db.answer_sheets.find_one(
            {"sheet_id": sheet_id, "is_active": True}, projection or {"_id": 0}
        )
        if not sheet:
            raise NotFound("Answer sheet not found")
        return sheet

    async def add_flags(self, sheet_id: str, flags: List[FlagCreate], detected_by: str = None) -> List[dict]:
        """Append flags in one atomic push; existing flags are never overwritten."""
        if not flags:
            return []
        now = utc_now_iso()
        docs = [
            {
                **flag.model_dump(mode="json"),
                "detected_at": now,
                "detected_by": detected_by,
                "resolved": False,
                "auto_resolved": False,
                "resolved_by": None,
                "resolved_at": None,
                "resolution_notes": None,
            }
            for flag in flags
        ]
        result = await self.db.answer_sheets.update_one(
            {"sheet_id": sheet_id, "is_active": True},
            {
                "$push": {"flags": {"$each": docs}},
                "$inc": {"flag_count": len(docs), "open_flag_count": len(docs)},
                "$set": {"last_flagged_at": now, "updated_at": now},
            },
        )
        if result.matched_count == 0:
            raise NotFound("Answer sheet not found")
        logger.info(f"🚩 {len(docs)} flag(s) added to {sheet_id}: {[d['type'] for d in docs]}")
        return docs

    async def add_flag(self, sheet_id: str, flag: FlagCreate, detected_by: str = None) -> dict:
        return (await self.add_flags(sheet_id, [flag], detected_by=detected_by))[0]

    async def resolve_flag(self, sheet_id: str, index: int, resolved_by: str,
                           resolution_notes: str = None, auto_resolved: bool = False) -> dict:
        sheet = await self._get_sheet(sheet_id, {"_id": 0, "flags": 1})
        flags = sheet.get("flags", [])
        if index < 0 or index >= len(flags):
            raise ValidationFailure("Invalid flag index")
        if flags[index].get("resolved"):
            raise StateConflict("Flag is already resolved")

        now = utc_now_iso()
        result = await self.db.answer_sheets.update_one(
            {"sheet_id": sheet_id, f"flags.{index}.resolved": False},
            {
                "$set": {
                    f"flags.{index}.resolved": True,
                    f"flags.{index}.auto_resolved": auto_resolved,
                    f"flags.{index}.resolved_by": resolved_by,
                    f"flags.{index}.resolved_at": now,
                    f"flags.{index}.resolution_notes": resolution_notes,
                    "updated_at": now,
                },
                "$inc": {"open_flag_count": -1},
            },
        )
        if result.modified_count == 0:
            # Lost the race against a concurrent resolution
            raise StateConflict("Flag is already resolved")
        logger.info(f"✅ Flag {index} on {sheet_id} resolved by {resolved_by}")
        return {
            **flags[index],
            "resolved": True,
            "auto_resolved": auto_resolved,
            "resolved_by": resolved_by,
            "resolved_at": now,
            "resolution_notes": resolution_notes,
        }

    async def resolve_all_flags(self, sheet_id: str, resolved_by: str, resolution_notes: str = None) -> int:
        """Resolve every open flag; returns how many this call resolved."""
        sheet = await self._get_sheet(sheet_id, {"_id": 0, "flags": 1})
        resolved = 0
        for index, flag in enumerate(sheet.get("flags", [])):
            if flag.get("resolved"):
                continue
            try:
                await self.resolve_flag(sheet_id, index, resolved_by, resolution_notes)
                resolved += 1
            except StateConflict:
                logger.info(f"Flag {index} on {sheet_id} resolved concurrently, skipping")
        return resolved

    async def bulk_resolve_flags(self, sheet_ids: List[str], resolved_by: str, resolution_notes: str = None) -> dict:
        resolved_flags = 0
        processed = []
        missing = []
        for sheet_id in dict.fromkeys(sheet_ids):
            try:
                resolved_flags += await self.resolve_all_flags(sheet_id, resolved_by, resolution_notes)
                processed.append(sheet_id)
            except NotFound:
                missing.append(sheet_id)
        logger.info(f"✅ Bulk resolve by {resolved_by}: {resolved_flags} flag(s) across {len(processed)} sheet(s)")
        return {
            "resolved_flags": resolved_flags,
            "sheets_processed": len(processed),
            "missing_sheet_ids": missing,
        }

    async def auto_detect_flags(self, sheet_id: str, signals: AnalysisSignals) -> List[dict]:
        return await self.add_flags(sheet_id, detect_flags(signals))

    async def get_flags(self, sheet_id: str) -> dict:
        sheet = await self._get_sheet(
            sheet_id, {"_id": 0, "sheet_id": 1, "flags": 1, "flag_count": 1, "open_flag_count": 1, "last_flagged_at": 1}
        )
        flags = sheet.get("flags", [])
        return {
            "sheet_id": sheet_id,
            "flags": flags,
            "total": len(flags),
            "unresolved": sheet.get("open_flag_count", 0),
            "last_flagged_at": sheet.get("last_flagged_at"),
        }

    async def flagged_sheets(self, exam_id: str, severity: str = None, flag_type: str = None,
                             resolved: bool = None) -> List[dict]:
        query = {"exam_id": exam_id, "is_active": True, "flag_count": {"$gt": 0}}
        element = {}
        if severity:
            element["severity"] = severity
        if flag_type:
            element["type"] = flag_type
        if resolved is not None:
            element["resolved"] = resolved
        if element:
            query["flags"] = {"$elemMatch": element}

        return await self.db.answer_sheets.find(
            query,
            {"_id": 0, "sheet_id": 1, "exam_id": 1, "student_id": 1, "status": 1, "flags": 1,
             "flag_count": 1, "open_flag_count": 1, "last_flagged_at": 1},
        ).sort("last_flagged_at", -1).to_list(1000)

    async def flag_statistics(self, exam_id: str) -> dict:
        sheets = await self.db.answer_sheets.find(
            {"exam_id": exam_id, "is_active": True, "flag_count": {"$gt": 0}},
            {"_id": 0, "flags": 1},
        ).to_list(None)

        flags = [flag for sheet in sheets for flag in sheet.get("flags", [])]
        resolved = [f for f in flags if f.get("resolved")]
        by_type = Counter(f["type"] for f in flags)
        by_severity = Counter(f["severity"] for f in flags)

        resolution_hours = []
        for flag in resolved:
            if flag.get("resolved_at") and flag.get("detected_at"):
                delta = parse_iso(flag["resolved_at"]) - parse_iso(flag["detected_at"])
                resolution_hours.append(delta.total_seconds() / 3600)

        total = len(flags)
        return {
            "exam_id": exam_id,
            "flagged_sheets": len(sheets),
            "total_flags": total,
            "resolved_flags": len(resolved),
            "unresolved_flags": total - len(resolved),
            "critical_flags": by_severity.get(FlagSeverity.CRITICAL.value, 0),
            "by_type": dict(by_type),
            "by_severity": dict(by_severity),
            "avg_resolution_hours": round(sum(resolution_hours) / len(resolution_hours), 2) if resolution_hours else 0,
            "resolution_rate": round(len(resolved) / total * 100, 2) if total else 0,
        }
