from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class AttendanceSettings(BaseModel):
    default_relationship_types: List[int] = Field(default_factory=list)
    default_contact_subtypes: List[str] = Field(default_factory=list)
    default_participant_statuses: List[int] = Field(default_factory=list)
    show_relationship_info: bool = True
    allow_bulk_operations: bool = True
    show_search: bool = True
    items_per_page: int = Field(default=25, ge=0, le=100, description="0 shows all contacts")
