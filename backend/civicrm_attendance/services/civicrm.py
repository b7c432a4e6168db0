from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

import requests

from ..config import Settings, get_settings
from ..exceptions import (
    CiviCrmApiError,
    ParticipantError,
    RecordNotFoundError,
    RemoteTimeoutError,
    RemoteUnavailableError,
    ValidationError,
)
from ..schemas.attendance import Event, Participant
from ..schemas.directory import Contact, Relationship, RelationshipType, Role
from ..utils.civicrm import coerce_id, to_bool

logger = logging.getLogger(__name__)

CONTACT_FIELDS = ["id", "display_name", "sort_name", "email", "contact_type", "contact_sub_type"]
RELATIONSHIP_FIELDS = [
    "id",
    "relationship_type_id",
    "contact_id_a",
    "contact_id_b",
    "is_active",
    "start_date",
    "end_date",
]
CANDIDATE_SORT = "sort_name ASC, id ASC"


class CiviCrmClient:
    """Read/write accessor for the CiviCRM APIv3 REST endpoint."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
        session_factory: Optional[Callable[[], requests.Session]] = None,
    ) -> None:
        settings = settings or get_settings()
        self._endpoint = settings.civicrm_base_url.rstrip("/") + settings.civicrm_rest_path
        self._api_key = settings.civicrm_api_key
        self._site_key = settings.civicrm_site_key
        self._timeout = settings.civicrm_timeout_seconds
        self._verify = settings.civicrm_verify_tls
        self._batch_size = max(1, settings.civicrm_batch_size)
        self._participant_source = settings.participant_source
        self._session_factory = session_factory or requests.Session
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()
        if session is not None:
            self._local.session = self._register(session)

        if not self.is_enabled():
            logger.warning("CiviCRM credentials are not configured; directory calls will fail")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def is_enabled(self) -> bool:
        return bool(self._api_key and self._site_key)

    @property
    def session(self) -> requests.Session:
        """Session of the calling thread. requests sessions are not shared across threads."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._register(self._session_factory())
            self._local.session = session
        return session

    def _register(self, session: requests.Session) -> requests.Session:
        session.headers.update(
            {
                "Accept": "application/json",
                "X-Requested-With": "XMLHttpRequest",
            }
        )
        with self._sessions_lock:
            self._sessions.append(session)
        return session

    def close(self) -> None:
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        self._local = threading.local()
        for session in sessions:
            session.close()

    def call(self, entity: str, action: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params = dict(params or {})
        if not self.is_enabled():
            raise RemoteUnavailableError("CiviCRM API credentials are not configured", entity, action, params)

        payload = {
            "entity": entity,
            "action": action,
            "json": json.dumps(params),
            "api_key": self._api_key,
            "key": self._site_key,
        }
        try:
            response = self.session.post(self._endpoint, data=payload, timeout=self._timeout, verify=self._verify)
        except requests.Timeout as exc:
            raise RemoteTimeoutError(
                f"CiviCRM request timed out after {self._timeout}s", entity, action, params
            ) from exc
        except requests.RequestException as exc:
            raise RemoteUnavailableError(f"CiviCRM request failed: {exc}", entity, action, params) from exc

        if response.status_code in (401, 403) or response.status_code >= 500:
            raise RemoteUnavailableError(
                f"CiviCRM returned HTTP {response.status_code}", entity, action, params
            )
        if response.status_code >= 400:
            raise CiviCrmApiError(f"CiviCRM returned HTTP {response.status_code}", entity, action, params)

        try:
            data = response.json()
        except ValueError as exc:
            raise CiviCrmApiError(
                f"CiviCRM returned a non-JSON response: {response.text[:200]}", entity, action, params
            ) from exc

        if not isinstance(data, dict):
            raise CiviCrmApiError("CiviCRM returned an unexpected payload", entity, action, params)

        if to_bool(data.get("is_error")):
            message = data.get("error_message") or "Unknown CiviCRM API error"
            if action == "getsingle" and "found 0" in str(message):
                raise RecordNotFoundError(message, entity, action, params)
            raise CiviCrmApiError.from_api_error(message, entity, action, params)
        return data

    def _get_values(self, entity: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        params = {"sequential": 1, **params}
        data = self.call(entity, "get", params)
        values = data.get("values") or []
        if isinstance(values, dict):
            values = list(values.values())
        return [value for value in values if isinstance(value, dict)]

    def _chunks(self, items: Sequence[int]) -> Iterator[List[int]]:
        for start in range(0, len(items), self._batch_size):
            yield list(items[start : start + self._batch_size])

    # ------------------------------------------------------------------
    # Directory lookups
    # ------------------------------------------------------------------
    def get_contact(self, contact_id: int) -> Contact:
        data = self.call("Contact", "getsingle", {"id": contact_id, "return": CONTACT_FIELDS})
        return Contact.from_api(data)

    def get_contacts(self, contact_ids: Iterable[int]) -> Dict[int, Contact]:
        unique_ids = sorted(set(contact_ids))
        contacts: Dict[int, Contact] = {}
        for chunk in self._chunks(unique_ids):
            rows = self._get_values(
                "Contact",
                {
                    "id": {"IN": chunk},
                    "return": CONTACT_FIELDS,
                    "options": {"limit": 0},
                },
            )
            for row in rows:
                contact = Contact.from_api(row)
                contacts[contact.id] = contact
        return contacts

    def list_contacts(
        self,
        contact_types: Sequence[str],
        *,
        exclude_deleted: bool = True,
        sort: str = CANDIDATE_SORT,
        limit: int = 0,
        offset: int = 0,
    ) -> List[Contact]:
        params: Dict[str, Any] = {
            "contact_type": {"IN": list(contact_types)},
            "return": CONTACT_FIELDS,
            "options": {"sort": sort, "limit": limit, "offset": offset},
        }
        if exclude_deleted:
            params["is_deleted"] = 0
        return [Contact.from_api(row) for row in self._get_values("Contact", params)]

    def count_contacts(self, contact_types: Sequence[str], *, exclude_deleted: bool = True) -> int:
        params: Dict[str, Any] = {"contact_type": {"IN": list(contact_types)}}
        if exclude_deleted:
            params["is_deleted"] = 0
        data = self.call("Contact", "getcount", params)
        count = data.get("result", data.get("count", 0))
        try:
            return int(count)
        except (TypeError, ValueError) as exc:
            raise CiviCrmApiError(f"Unexpected contact count: {count!r}", "Contact", "getcount", params) from exc

    def get_relationships(
        self,
        contact_ids: Union[int, Sequence[int]],
        role: Role,
        relationship_type_ids: Sequence[int],
        *,
        include_inactive: bool = False,
    ) -> List[Relationship]:
        """Relationships where the given contact(s) occupy endpoint ``role``."""
        field = "contact_id_a" if role is Role.A else "contact_id_b"
        if isinstance(contact_ids, int):
            batches: List[Any] = [contact_ids]
        else:
            batches = [{"IN": chunk} for chunk in self._chunks(sorted(set(contact_ids)))]

        relationships: List[Relationship] = []
        for selector in batches:
            params: Dict[str, Any] = {
                field: selector,
                "relationship_type_id": {"IN": list(relationship_type_ids)},
                "return": RELATIONSHIP_FIELDS,
                "options": {"limit": 0},
            }
            if not include_inactive:
                params["is_active"] = 1
            relationships.extend(Relationship.from_api(row) for row in self._get_values("Relationship", params))
        return relationships

    def get_relationship_type(self, relationship_type_id: int) -> RelationshipType:
        data = self.call("RelationshipType", "getsingle", {"id": relationship_type_id})
        return RelationshipType.from_api(data)

    # ------------------------------------------------------------------
    # Reference lists
    # ------------------------------------------------------------------
    def get_contact_id_by_user_id(self, user_id: int) -> Optional[int]:
        rows = self._get_values("UFMatch", {"uf_id": user_id})
        if not rows:
            logger.warning("No CiviCRM contact associated with user ID %s", user_id)
            return None
        return coerce_id(rows[0].get("contact_id"))

    def get_relationship_types(self) -> Dict[int, str]:
        rows = self._get_values("RelationshipType", {"is_active": 1, "options": {"limit": 0}})
        return {int(row["id"]): row.get("label_a_b") or "" for row in rows if coerce_id(row.get("id"))}

    def get_contact_subtypes(self) -> Dict[str, str]:
        rows = self._get_values(
            "ContactType",
            {"is_active": 1, "parent_id": {"IS NOT NULL": 1}, "options": {"limit": 0}},
        )
        return {row["name"]: row.get("label") or row["name"] for row in rows if row.get("name")}

    def get_events(
        self,
        active_only: bool = True,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Dict[int, Event]:
        params: Dict[str, Any] = {
            "return": ["id", "title", "start_date", "end_date", "is_active"],
            "options": {"limit": 0},
        }
        if active_only:
            params["is_active"] = 1
        date_filter: Dict[str, str] = {}
        if start_date:
            date_filter[">="] = start_date
        if end_date:
            date_filter["<="] = end_date
        if date_filter:
            params["start_date"] = date_filter

        events: Dict[int, Event] = {}
        for row in self._get_values("Event", params):
            event = Event.from_api(row)
            events[event.id] = event
        return events

    def get_participant_statuses(self) -> Dict[int, str]:
        rows = self._get_values("ParticipantStatusType", {"is_active": 1, "options": {"limit": 0}})
        return {int(row["id"]): row.get("label") or "" for row in rows if coerce_id(row.get("id"))}

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------
    def get_participant(self, contact_id: int, event_id: int) -> Optional[Participant]:
        rows = self._get_values(
            "Participant",
            {"contact_id": contact_id, "event_id": event_id, "options": {"limit": 1}},
        )
        return Participant.from_api(rows[0]) if rows else None

    def create_participant(self, contact_id: int, event_id: int, status_id: int) -> Participant:
        """Create the participant record, or update the status of the existing one."""
        for field, value in (("contact_id", contact_id), ("event_id", event_id), ("status_id", status_id)):
            if not coerce_id(value):
                raise ValidationError.required_field(field)

        existing = self.get_participant(contact_id, event_id)
        params: Dict[str, Any] = {
            "contact_id": contact_id,
            "event_id": event_id,
            "status_id": status_id,
            "register_date": datetime.now().strftime("%Y%m%d%H%M%S"),
            "source": self._participant_source,
            "sequential": 1,
        }
        action = "created"
        if existing is not None:
            params["id"] = existing.id
            action = "updated"

        try:
            data = self.call("Participant", "create", params)
        except RemoteUnavailableError:
            raise
        except CiviCrmApiError as exc:
            factory = ParticipantError.update_failed if existing else ParticipantError.creation_failed
            raise factory(contact_id, event_id, status_id, exc.message) from exc

        values = data.get("values") or []
        if isinstance(values, dict):
            values = list(values.values())
        if not values:
            logger.warning(
                "Participant record creation returned empty result for contact: %s, event: %s",
                contact_id,
                event_id,
            )
            factory = ParticipantError.update_failed if existing else ParticipantError.creation_failed
            raise factory(contact_id, event_id, status_id, "empty API result")

        participant = Participant.from_api({"contact_id": contact_id, "event_id": event_id, **values[0]})
        logger.info(
            "Successfully %s participant record ID: %s for contact: %s, event: %s",
            action,
            participant.id,
            contact_id,
            event_id,
        )
        return participant


@lru_cache(maxsize=1)
def get_civicrm_client() -> CiviCrmClient:
    return CiviCrmClient()
