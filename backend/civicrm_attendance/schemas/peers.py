from __future__ import annotations

import math
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from .directory import Contact, Role


def pattern_key(relationship_type_id: int, target_subtype: str, role: Role) -> str:
    return f"{relationship_type_id}|{target_subtype}|{role.value}"


class Pattern(BaseModel):
    """A relationship the anchor holds: this type, in this role, to a contact of this subtype."""

    model_config = ConfigDict(frozen=True)

    relationship_type_id: int
    target_subtype: str
    anchor_role: Role
    counterpart_id: Optional[int] = None
    counterpart_name: Optional[str] = None

    @property
    def key(self) -> str:
        return pattern_key(self.relationship_type_id, self.target_subtype, self.anchor_role)


class RelatedContact(BaseModel):
    id: int
    display_name: str = ""


class MatchedRelationship(BaseModel):
    pattern_key: str
    relationship_id: int
    relationship_type_id: int
    relationship_name: str
    role: Role
    contact_subtype: str
    is_active: bool = True
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    related_contact: RelatedContact


class PeerResult(BaseModel):
    contact: Contact
    relationships: Dict[str, MatchedRelationship] = Field(default_factory=dict)


class PaginationRequest(BaseModel):
    page: int = 1
    page_size: int = Field(default=25, ge=1)
    count_total: bool = True

    @field_validator("page")
    @classmethod
    def _clamp_page(cls, value: int) -> int:
        return max(value, 1)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class PaginationMetadata(BaseModel):
    current_page: int = 1
    items_per_page: int = 0
    total_count: Optional[int] = None
    total_pages: Optional[int] = None

    @classmethod
    def build(cls, page: int, items_per_page: int, total_count: Optional[int]) -> "PaginationMetadata":
        total_pages = None
        if total_count is not None:
            total_pages = math.ceil(total_count / items_per_page) if items_per_page > 0 and total_count > 0 else 0
        return cls(
            current_page=max(page, 1),
            items_per_page=items_per_page,
            total_count=total_count,
            total_pages=total_pages,
        )


class PeerQuery(BaseModel):
    anchor_id: PositiveInt
    relationship_type_ids: List[PositiveInt] = Field(default_factory=list)
    target_subtypes: List[str] = Field(default_factory=list)
    contact_types: List[str] = Field(default_factory=lambda: ["Individual"])
    include_inactive: bool = False
    require_all_patterns: bool = False
    match_roles: bool = True
    pagination: Optional[PaginationRequest] = Field(default_factory=PaginationRequest)
    limit: int = Field(default=0, ge=0, description="Plain result cap when pagination is disabled; 0 means no cap")

    @field_validator("relationship_type_ids")
    @classmethod
    def _dedupe_ids(cls, value: List[int]) -> List[int]:
        return list(dict.fromkeys(value))

    @field_validator("target_subtypes", "contact_types")
    @classmethod
    def _clean_names(cls, value: List[str]) -> List[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        return list(dict.fromkeys(cleaned))


class PeerResponse(BaseModel):
    peers: List[PeerResult] = Field(default_factory=list)
    pagination: Optional[PaginationMetadata] = None


class AnchorPatternsResponse(BaseModel):
    anchor_id: int
    patterns: List[Pattern]
