from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional

from ..db import get_connection
from ..exceptions import ServiceError
from ..schemas.settings import AttendanceSettings

logger = logging.getLogger(__name__)

SERVICE_ID = "settings_store"


def load_settings(db_path: Optional[Path] = None) -> AttendanceSettings:
    stored: Dict[str, Any] = {}
    try:
        with get_connection(readonly=True, db_path=db_path) as conn:
            rows = conn.execute("SELECT setting_key, setting_value FROM attendance_settings").fetchall()
    except sqlite3.Error as exc:
        logger.exception("Failed to read attendance settings")
        raise ServiceError.method_call_failed(SERVICE_ID, "load", str(exc)) from exc

    for key, raw_value in rows:
        if key not in AttendanceSettings.model_fields:
            continue
        try:
            stored[key] = json.loads(raw_value)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed stored value for setting %s", key)
    return AttendanceSettings(**stored)


def save_settings(settings: AttendanceSettings, db_path: Optional[Path] = None) -> AttendanceSettings:
    rows = [(key, json.dumps(value)) for key, value in settings.model_dump().items()]
    try:
        with get_connection(db_path=db_path) as conn:
            conn.executemany(
                """
                INSERT INTO attendance_settings (setting_key, setting_value)
                VALUES (?, ?)
                ON CONFLICT(setting_key) DO UPDATE SET setting_value = excluded.setting_value
                """,
                rows,
            )
            conn.commit()
    except sqlite3.Error as exc:
        logger.exception("Failed to save attendance settings")
        raise ServiceError.method_call_failed(SERVICE_ID, "save", str(exc)) from exc
    logger.info("Saved attendance settings")
    return settings
