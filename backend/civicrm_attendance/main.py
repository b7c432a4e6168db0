from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import get_connection
from .exceptions import (
    AttendanceError,
    CiviCrmApiError,
    ParticipantError,
    RecordNotFoundError,
    RemoteTimeoutError,
    RemoteUnavailableError,
    ValidationError,
)
from .routers import attendance, peers, reference, settings as settings_router
from .services.civicrm import get_civicrm_client

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="CiviCRM Attendance", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_CODES = {
    ValidationError: 422,
    ParticipantError: 400,
    RecordNotFoundError: 404,
    RemoteTimeoutError: 504,
    RemoteUnavailableError: 503,
    CiviCrmApiError: 502,
}


@app.exception_handler(AttendanceError)
def handle_attendance_error(request: Request, exc: AttendanceError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _STATUS_CODES.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code >= 500:
        logger.error("%s", exc.to_log_string())
    body = {"detail": exc.message}
    if isinstance(exc, ValidationError) and exc.errors:
        body["errors"] = exc.errors
    return JSONResponse(status_code=status_code, content=body)


@app.on_event("startup")
def ensure_database() -> None:
    with get_connection() as conn:
        conn.execute("SELECT 1")


@app.on_event("shutdown")
def close_civicrm_client() -> None:
    get_civicrm_client().close()


@app.get("/")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(peers.router)
app.include_router(reference.router)
app.include_router(attendance.router)
app.include_router(settings_router.router)
