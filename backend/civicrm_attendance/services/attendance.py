from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from ..exceptions import (
    CiviCrmApiError,
    ParticipantError,
    RecordNotFoundError,
    RemoteUnavailableError,
    ValidationError,
)
from ..schemas.attendance import (
    AttendanceSheet,
    AttendanceSheetRequest,
    AttendanceSubmission,
    AttendanceSubmissionResult,
    Event,
    Participant,
    ParticipantWrite,
)
from ..schemas.peers import PaginationRequest, PeerQuery
from ..schemas.settings import AttendanceSettings
from .civicrm import CiviCrmClient
from .peers import find_peers

logger = logging.getLogger(__name__)


def resolve_anchor_contact(client: CiviCrmClient, contact_id: Optional[int], user_id: Optional[int]) -> int:
    if contact_id:
        return contact_id
    if not user_id:
        raise ValidationError.required_field("contact_id")
    resolved = client.get_contact_id_by_user_id(user_id)
    if not resolved:
        raise RecordNotFoundError(
            f"No CiviCRM contact associated with user ID {user_id}", "UFMatch", "get", {"uf_id": user_id}
        )
    return resolved


def build_attendance_sheet(
    client: CiviCrmClient,
    request: AttendanceSheetRequest,
    display: Optional[AttendanceSettings] = None,
) -> AttendanceSheet:
    """Collect everything needed to render the attendance form for one user."""
    display = display or AttendanceSettings()
    contact_id = resolve_anchor_contact(client, request.contact_id, request.user_id)

    query = PeerQuery(
        anchor_id=contact_id,
        relationship_type_ids=request.relationship_type_ids,
        target_subtypes=[request.contact_subtype] if request.contact_subtype else [],
        include_inactive=request.include_inactive_relationships,
        require_all_patterns=request.require_all_patterns,
        match_roles=request.match_roles,
        pagination=(
            PaginationRequest(page=request.page, page_size=request.items_per_page) if request.pagination else None
        ),
    )
    peers = find_peers(query, directory=client)

    events: Dict[int, Event] = {}
    if request.event_ids:
        available = client.get_events(
            active_only=True,
            start_date=request.event_start_date.isoformat() if request.event_start_date else None,
            end_date=request.event_end_date.isoformat() if request.event_end_date else None,
        )
        events = {event_id: available[event_id] for event_id in request.event_ids if event_id in available}

    statuses: Dict[int, str] = {}
    if request.status_ids:
        available_statuses = client.get_participant_statuses()
        statuses = {
            status_id: available_statuses[status_id]
            for status_id in request.status_ids
            if status_id in available_statuses
        }

    records: Dict[int, Dict[int, Participant]] = {}
    for peer in peers.peers:
        records[peer.contact.id] = {}
        for event_id in events:
            try:
                participant = client.get_participant(peer.contact.id, event_id)
            except RemoteUnavailableError:
                raise
            except CiviCrmApiError as exc:
                logger.warning(
                    "Error retrieving participant record. Contact: %s, Event: %s (%s)",
                    peer.contact.id,
                    event_id,
                    exc,
                )
                continue
            if participant is not None:
                records[peer.contact.id][event_id] = participant

    return AttendanceSheet(
        contact_id=contact_id,
        peers=peers.peers,
        pagination=peers.pagination,
        events=events,
        statuses=statuses,
        participant_records=records,
        allow_bulk_operations=display.allow_bulk_operations,
        show_relationship_info=display.show_relationship_info,
        show_search=display.show_search,
    )


def expand_submission(submission: AttendanceSubmission) -> List[Tuple[int, int, int]]:
    """Flatten a submission into (contact, event, status) writes.

    Bulk entries fill every listed contact for their event; explicit
    per-contact values take precedence. Empty statuses are dropped.
    """
    planned: Dict[Tuple[int, int], int] = {}
    for bulk in submission.bulk:
        for contact_id in submission.contact_ids:
            planned[(contact_id, bulk.event_id)] = bulk.status_id

    for contact_id, contact_events in submission.values.items():
        for event_id, status_id in contact_events.items():
            if not status_id:
                planned.pop((contact_id, event_id), None)
                continue
            planned[(contact_id, event_id)] = status_id

    return [(contact_id, event_id, status_id) for (contact_id, event_id), status_id in planned.items()]


def submit_attendance(client: CiviCrmClient, submission: AttendanceSubmission) -> AttendanceSubmissionResult:
    writes = expand_submission(submission)
    result = AttendanceSubmissionResult()
    if not writes:
        return result

    statuses = client.get_participant_statuses()
    for contact_id, event_id, status_id in writes:
        entry = ParticipantWrite(contact_id=contact_id, event_id=event_id, status_id=status_id)
        try:
            if status_id not in statuses:
                raise ParticipantError.invalid_status(contact_id, event_id, status_id)
            participant = client.create_participant(contact_id, event_id, status_id)
        except RemoteUnavailableError:
            raise
        except (ParticipantError, ValidationError, CiviCrmApiError) as exc:
            logger.warning(
                "Failed to save participant record. Contact: %s, Event: %s, Status: %s (%s)",
                contact_id,
                event_id,
                status_id,
                exc,
            )
            entry.error = str(exc)
            result.failed.append(entry)
            continue
        entry.participant_id = participant.id
        result.written.append(entry)

    written = [(entry.contact_id, entry.event_id, entry.status_id) for entry in result.written]
    result.summary = summarize_attendance(client, written, statuses)
    return result


def summarize_attendance(
    client: CiviCrmClient,
    writes: List[Tuple[int, int, int]],
    statuses: Dict[int, str],
) -> List[str]:
    if not writes:
        return []
    events = client.get_events(active_only=False)
    names: Dict[int, str] = {}
    lines: List[str] = []
    for contact_id, event_id, status_id in writes:
        if contact_id not in names:
            try:
                names[contact_id] = client.get_contact(contact_id).display_name or f"Contact ID: {contact_id}"
            except RemoteUnavailableError:
                raise
            except CiviCrmApiError:
                names[contact_id] = f"Contact ID: {contact_id}"
        event = events.get(event_id)
        event_name = event.title if event and event.title else f"Event ID: {event_id}"
        status_name = statuses.get(status_id) or f"Status ID: {status_id}"
        lines.append(f"Contact: {names[contact_id]}, Event: {event_name}, Status: {status_name}")
    return lines
