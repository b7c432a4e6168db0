"""Shared fixtures: an in-memory CiviCRM directory and an API client."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import pytest
from fastapi.testclient import TestClient

from civicrm_attendance.config import Settings
from civicrm_attendance.exceptions import ParticipantError, RecordNotFoundError, RemoteUnavailableError
from civicrm_attendance.schemas.attendance import Event, Participant
from civicrm_attendance.schemas.directory import Contact, Relationship, RelationshipType, Role


class FakeDirectory:
    """Implements the directory calls the services make, backed by dictionaries."""

    def __init__(self) -> None:
        self.contacts: Dict[int, Contact] = {}
        self.deleted: Set[int] = set()
        self.relationships: List[Relationship] = []
        self.relationship_types: Dict[int, RelationshipType] = {}
        self.missing_contacts: Set[int] = set()
        self.unavailable = False
        self.calls: List[Tuple[str, Any]] = []
        self.user_contacts: Dict[int, int] = {}
        self.events: Dict[int, Event] = {}
        self.statuses: Dict[int, str] = {}
        self.participants: Dict[Tuple[int, int], Participant] = {}
        self.failing_participant_writes: Set[Tuple[int, int]] = set()

    # Setup helpers -------------------------------------------------------
    def add_contact(
        self,
        contact_id: int,
        display_name: str,
        *,
        contact_type: str = "Individual",
        subtypes: Sequence[str] = (),
        sort_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Contact:
        contact = Contact(
            id=contact_id,
            display_name=display_name,
            sort_name=sort_name or display_name,
            email=email,
            contact_type=contact_type,
            subtypes=tuple(sorted(subtypes)),
        )
        self.contacts[contact_id] = contact
        return contact

    def add_type(self, type_id: int, label_a_b: str, label_b_a: str) -> None:
        self.relationship_types[type_id] = RelationshipType(id=type_id, label_a_b=label_a_b, label_b_a=label_b_a)

    def relate(
        self,
        relationship_id: int,
        type_id: int,
        contact_a: int,
        contact_b: int,
        *,
        is_active: bool = True,
        start_date: Optional[str] = None,
    ) -> Relationship:
        relationship = Relationship(
            id=relationship_id,
            relationship_type_id=type_id,
            contact_id_a=contact_a,
            contact_id_b=contact_b,
            is_active=is_active,
            start_date=start_date,
        )
        self.relationships.append(relationship)
        return relationship

    def calls_to(self, name: str) -> List[Any]:
        return [args for called, args in self.calls if called == name]

    def _record(self, name: str, args: Any) -> None:
        self.calls.append((name, args))
        if self.unavailable:
            raise RemoteUnavailableError("CiviCRM request failed: connection refused", "Test", name)

    # Directory contract ----------------------------------------------------
    def is_enabled(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def get_contact(self, contact_id: int) -> Contact:
        self._record("get_contact", contact_id)
        if contact_id in self.missing_contacts or contact_id not in self.contacts:
            raise RecordNotFoundError("Expected one Contact but found 0", "Contact", "getsingle", {"id": contact_id})
        return self.contacts[contact_id]

    def get_contacts(self, contact_ids: Iterable[int]) -> Dict[int, Contact]:
        ids = sorted(set(contact_ids))
        self._record("get_contacts", ids)
        return {
            contact_id: self.contacts[contact_id]
            for contact_id in ids
            if contact_id in self.contacts and contact_id not in self.missing_contacts
        }

    def _pool(self, contact_types: Sequence[str], exclude_deleted: bool) -> List[Contact]:
        return [
            contact
            for contact in self.contacts.values()
            if contact.contact_type in contact_types and not (exclude_deleted and contact.id in self.deleted)
        ]

    def list_contacts(
        self,
        contact_types: Sequence[str],
        *,
        exclude_deleted: bool = True,
        sort: str = "sort_name ASC, id ASC",
        limit: int = 0,
        offset: int = 0,
    ) -> List[Contact]:
        self._record("list_contacts", {"contact_types": list(contact_types), "limit": limit, "offset": offset})
        pool = sorted(self._pool(contact_types, exclude_deleted), key=lambda contact: (contact.sort_name, contact.id))
        pool = pool[offset:]
        return pool[:limit] if limit else pool

    def count_contacts(self, contact_types: Sequence[str], *, exclude_deleted: bool = True) -> int:
        self._record("count_contacts", list(contact_types))
        return len(self._pool(contact_types, exclude_deleted))

    def get_relationships(
        self,
        contact_ids: Union[int, Sequence[int]],
        role: Role,
        relationship_type_ids: Sequence[int],
        *,
        include_inactive: bool = False,
    ) -> List[Relationship]:
        ids = {contact_ids} if isinstance(contact_ids, int) else set(contact_ids)
        self._record("get_relationships", {"contact_ids": ids, "role": role})
        wanted = set(relationship_type_ids)
        found = []
        for relationship in self.relationships:
            endpoint = relationship.contact_id_a if role is Role.A else relationship.contact_id_b
            if endpoint not in ids or relationship.relationship_type_id not in wanted:
                continue
            if not include_inactive and not relationship.is_active:
                continue
            found.append(relationship)
        return found

    def get_relationship_type(self, relationship_type_id: int) -> RelationshipType:
        self._record("get_relationship_type", relationship_type_id)
        if relationship_type_id not in self.relationship_types:
            raise RecordNotFoundError(
                "Expected one RelationshipType but found 0", "RelationshipType", "getsingle", {"id": relationship_type_id}
            )
        return self.relationship_types[relationship_type_id]

    # Reference lists and participants ------------------------------------
    def get_contact_id_by_user_id(self, user_id: int) -> Optional[int]:
        self._record("get_contact_id_by_user_id", user_id)
        return self.user_contacts.get(user_id)

    def get_relationship_types(self) -> Dict[int, str]:
        return {type_id: rel_type.label_a_b for type_id, rel_type in self.relationship_types.items()}

    def get_contact_subtypes(self) -> Dict[str, str]:
        names = sorted({subtype for contact in self.contacts.values() for subtype in contact.subtypes})
        return {name: name for name in names}

    def get_events(
        self,
        active_only: bool = True,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Dict[int, Event]:
        self._record("get_events", {"active_only": active_only, "start_date": start_date, "end_date": end_date})
        events = {}
        for event_id, event in self.events.items():
            if active_only and not event.is_active:
                continue
            if start_date and (event.start_date or "") < start_date:
                continue
            if end_date and (event.start_date or "") > end_date:
                continue
            events[event_id] = event
        return events

    def get_participant_statuses(self) -> Dict[int, str]:
        return dict(self.statuses)

    def get_participant(self, contact_id: int, event_id: int) -> Optional[Participant]:
        self._record("get_participant", (contact_id, event_id))
        return self.participants.get((contact_id, event_id))

    def create_participant(self, contact_id: int, event_id: int, status_id: int) -> Participant:
        self._record("create_participant", (contact_id, event_id, status_id))
        if (contact_id, event_id) in self.failing_participant_writes:
            raise ParticipantError.creation_failed(contact_id, event_id, status_id, "DB Error: constraint violation")
        existing = self.participants.get((contact_id, event_id))
        participant = Participant(
            id=existing.id if existing else 1000 + len(self.participants),
            contact_id=contact_id,
            event_id=event_id,
            status_id=status_id,
        )
        self.participants[(contact_id, event_id)] = participant
        return participant


EMPLOYEE_OF = 5
CONTRACTOR_OF = 9

ANCHOR = 1
INSTITUTION_I = 100
INSTITUTION_J = 101


@pytest.fixture
def directory() -> FakeDirectory:
    """Anchor A employed by I; B employed by I; C contracts for I; D employed by J."""
    fake = FakeDirectory()
    fake.add_type(EMPLOYEE_OF, "Employee of", "Employer of")
    fake.add_type(CONTRACTOR_OF, "Contractor of", "Contracting for")

    fake.add_contact(ANCHOR, "Alice Anchor", sort_name="Anchor, Alice")
    fake.add_contact(2, "Bob Brown", sort_name="Brown, Bob")
    fake.add_contact(3, "Carol Clark", sort_name="Clark, Carol")
    fake.add_contact(4, "Dan Dunn", sort_name="Dunn, Dan")
    fake.add_contact(INSTITUTION_I, "Initech", contact_type="Organization", subtypes=["Employer"])
    fake.add_contact(INSTITUTION_J, "Jupiter Corp", contact_type="Organization", subtypes=["Employer"])

    fake.relate(10, EMPLOYEE_OF, ANCHOR, INSTITUTION_I, start_date="2020-01-01")
    fake.relate(11, EMPLOYEE_OF, 2, INSTITUTION_I)
    fake.relate(12, CONTRACTOR_OF, 3, INSTITUTION_I)
    fake.relate(13, EMPLOYEE_OF, 4, INSTITUTION_J)
    return fake


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        storage_dir=tmp_path,
        sqlite_path=tmp_path / "attendance.db",
        civicrm_api_key="api-key",
        civicrm_site_key="site-key",
        peer_batch_lookups=True,
        peer_match_workers=1,
    )


@pytest.fixture
def api_client(directory, tmp_path):
    from civicrm_attendance.main import app
    from civicrm_attendance.routers.settings import settings_db_path
    from civicrm_attendance.services.civicrm import get_civicrm_client

    app.dependency_overrides[get_civicrm_client] = lambda: directory
    app.dependency_overrides[settings_db_path] = lambda: tmp_path / "attendance.db"
    yield TestClient(app)
    app.dependency_overrides = {}
