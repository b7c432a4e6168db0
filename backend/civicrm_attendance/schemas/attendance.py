from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, PositiveInt, model_validator

from ..utils.civicrm import clean_date, coerce_id, to_bool
from .peers import PaginationMetadata, PeerResult


class Event(BaseModel):
    id: int
    title: str = ""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_api(cls, values: Dict[str, Any]) -> "Event":
        return cls(
            id=coerce_id(values.get("id")) or 0,
            title=values.get("title") or "",
            start_date=clean_date(values.get("start_date")),
            end_date=clean_date(values.get("end_date")),
            is_active=to_bool(values.get("is_active", True)),
        )


class Participant(BaseModel):
    id: int
    contact_id: int
    event_id: int
    status_id: Optional[int] = None
    register_date: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def from_api(cls, values: Dict[str, Any]) -> "Participant":
        return cls(
            id=coerce_id(values.get("id") or values.get("participant_id")) or 0,
            contact_id=coerce_id(values.get("contact_id")) or 0,
            event_id=coerce_id(values.get("event_id")) or 0,
            status_id=coerce_id(values.get("status_id") or values.get("participant_status_id")),
            register_date=clean_date(values.get("register_date") or values.get("participant_register_date")),
            source=values.get("source") or values.get("participant_source") or None,
        )


class AttendanceSheetRequest(BaseModel):
    contact_id: Optional[PositiveInt] = None
    user_id: Optional[PositiveInt] = None
    relationship_type_ids: List[PositiveInt] = Field(default_factory=list)
    contact_subtype: Optional[str] = None
    event_ids: List[PositiveInt] = Field(default_factory=list)
    status_ids: List[PositiveInt] = Field(default_factory=list)
    include_inactive_relationships: bool = False
    require_all_patterns: bool = False
    match_roles: bool = True
    event_start_date: Optional[date] = None
    event_end_date: Optional[date] = None
    pagination: bool = True
    items_per_page: int = Field(default=25, ge=1)
    page: int = 1

    @model_validator(mode="after")
    def _require_anchor(self) -> "AttendanceSheetRequest":
        if self.contact_id is None and self.user_id is None:
            raise ValueError("Either contact_id or user_id is required")
        return self


class AttendanceSheet(BaseModel):
    contact_id: int
    peers: List[PeerResult]
    pagination: Optional[PaginationMetadata] = None
    events: Dict[int, Event]
    statuses: Dict[int, str]
    participant_records: Dict[int, Dict[int, Participant]]
    allow_bulk_operations: bool = True
    show_relationship_info: bool = True
    show_search: bool = True


class BulkStatus(BaseModel):
    event_id: PositiveInt
    status_id: PositiveInt


class AttendanceSubmission(BaseModel):
    values: Dict[int, Dict[int, Optional[int]]] = Field(
        default_factory=dict,
        description="Mapping of contact ID to a mapping of event ID to participant status ID",
    )
    bulk: List[BulkStatus] = Field(default_factory=list)
    contact_ids: List[PositiveInt] = Field(
        default_factory=list,
        description="Contacts that bulk operations apply to",
    )


class ParticipantWrite(BaseModel):
    contact_id: int
    event_id: int
    status_id: int
    participant_id: Optional[int] = None
    error: Optional[str] = None


class AttendanceSubmissionResult(BaseModel):
    written: List[ParticipantWrite] = Field(default_factory=list)
    failed: List[ParticipantWrite] = Field(default_factory=list)
    summary: List[str] = Field(default_factory=list)
