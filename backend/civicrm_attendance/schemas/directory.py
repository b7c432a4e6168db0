from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from ..utils.civicrm import clean_date, coerce_id, normalize_subtypes, to_bool


class Role(str, Enum):
    """Endpoint a contact occupies in a relationship."""

    A = "A"
    B = "B"


class Contact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    display_name: str = ""
    sort_name: str = ""
    email: Optional[str] = None
    contact_type: str = ""
    subtypes: Tuple[str, ...] = ()

    @classmethod
    def from_api(cls, values: Dict[str, Any]) -> "Contact":
        return cls(
            id=coerce_id(values.get("id") or values.get("contact_id")) or 0,
            display_name=values.get("display_name") or "",
            sort_name=values.get("sort_name") or "",
            email=values.get("email") or None,
            contact_type=values.get("contact_type") or "",
            subtypes=tuple(sorted(normalize_subtypes(values.get("contact_sub_type")))),
        )


class RelationshipType(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    label_a_b: str = ""
    label_b_a: str = ""

    @classmethod
    def from_api(cls, values: Dict[str, Any]) -> "RelationshipType":
        label_a_b = values.get("label_a_b") or values.get("name_a_b") or ""
        return cls(
            id=coerce_id(values.get("id")) or 0,
            label_a_b=label_a_b,
            label_b_a=values.get("label_b_a") or values.get("name_b_a") or label_a_b,
        )

    def label_for(self, role: Role) -> str:
        return self.label_a_b if role is Role.A else self.label_b_a


class Relationship(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    relationship_type_id: int
    contact_id_a: int
    contact_id_b: int
    is_active: bool = True
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    @classmethod
    def from_api(cls, values: Dict[str, Any]) -> "Relationship":
        return cls(
            id=coerce_id(values.get("id")) or 0,
            relationship_type_id=coerce_id(values.get("relationship_type_id")) or 0,
            contact_id_a=coerce_id(values.get("contact_id_a")) or 0,
            contact_id_b=coerce_id(values.get("contact_id_b")) or 0,
            is_active=to_bool(values.get("is_active", True)),
            start_date=clean_date(values.get("start_date")),
            end_date=clean_date(values.get("end_date")),
        )

    def counterpart_of(self, role: Role) -> int:
        return self.contact_id_b if role is Role.A else self.contact_id_a
