from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends

from ..config import get_settings
from ..schemas.settings import AttendanceSettings
from ..services.settings_store import load_settings, save_settings

router = APIRouter(prefix="/api/settings", tags=["settings"])


def settings_db_path() -> Path:
    return get_settings().sqlite_path


@router.get("", response_model=AttendanceSettings)
def read_settings(db_path: Path = Depends(settings_db_path)) -> AttendanceSettings:
    return load_settings(db_path)


@router.put("", response_model=AttendanceSettings)
def update_settings(payload: AttendanceSettings, db_path: Path = Depends(settings_db_path)) -> AttendanceSettings:
    return save_settings(payload, db_path)
