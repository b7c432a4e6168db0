from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends

from ..schemas.attendance import (
    AttendanceSheet,
    AttendanceSheetRequest,
    AttendanceSubmission,
    AttendanceSubmissionResult,
)
from ..services.attendance import build_attendance_sheet, submit_attendance
from ..services.civicrm import CiviCrmClient, get_civicrm_client
from ..services.settings_store import load_settings
from .settings import settings_db_path

router = APIRouter(prefix="/api/attendance", tags=["attendance"])


@router.post("/sheet", response_model=AttendanceSheet)
def get_attendance_sheet(
    payload: AttendanceSheetRequest,
    client: CiviCrmClient = Depends(get_civicrm_client),
    db_path: Path = Depends(settings_db_path),
) -> AttendanceSheet:
    """Peers, events, statuses and existing participant records for the attendance form."""
    return build_attendance_sheet(client, payload, display=load_settings(db_path))


@router.post("/submit", response_model=AttendanceSubmissionResult)
def submit_attendance_values(
    payload: AttendanceSubmission,
    client: CiviCrmClient = Depends(get_civicrm_client),
) -> AttendanceSubmissionResult:
    return submit_attendance(client, payload)
