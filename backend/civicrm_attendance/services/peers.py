"""Peer-contact discovery by relationship pattern.

An anchor contact's patterns are the (relationship type, counterpart subtype,
role) combinations it holds. A candidate is a peer when its own relationships
reproduce those patterns, either any of them or all of them.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..config import Settings, get_settings
from ..exceptions import CiviCrmApiError, RecordNotFoundError, RemoteUnavailableError, ValidationError
from ..schemas.directory import Contact, Relationship, RelationshipType, Role
from ..schemas.peers import (
    MatchedRelationship,
    PaginationMetadata,
    PaginationRequest,
    Pattern,
    PeerQuery,
    PeerResponse,
    PeerResult,
    RelatedContact,
    pattern_key,
)
from .civicrm import CANDIDATE_SORT, CiviCrmClient, get_civicrm_client

logger = logging.getLogger(__name__)


@dataclass
class CandidateScan:
    contacts: List[Contact] = field(default_factory=list)
    total_count: Optional[int] = None


class RelationshipLabels:
    """Per-request lookup of relationship type labels."""

    def __init__(self, directory: CiviCrmClient) -> None:
        self._directory = directory
        self._types: Dict[int, RelationshipType] = {}
        self._lock = threading.Lock()

    def label(self, relationship_type_id: int, role: Role) -> str:
        with self._lock:
            relationship_type = self._types.get(relationship_type_id)
        if relationship_type is None:
            relationship_type = self._directory.get_relationship_type(relationship_type_id)
            with self._lock:
                self._types.setdefault(relationship_type_id, relationship_type)
        return relationship_type.label_for(role)


class PageSnapshot:
    """Relationships and counterpart contacts of one candidate page, fetched in batches.

    Exposes the subset of the directory interface that ``match_candidate``
    needs, so matching runs against two relationship queries and one chunked
    contact query instead of several calls per candidate.
    """

    def __init__(
        self,
        relationships: Mapping[Tuple[int, Role], List[Relationship]],
        contacts: Mapping[int, Contact],
    ) -> None:
        self._relationships = relationships
        self._contacts = contacts

    @classmethod
    def load(
        cls,
        directory: CiviCrmClient,
        candidate_ids: Sequence[int],
        relationship_type_ids: Sequence[int],
        include_inactive: bool = False,
    ) -> "PageSnapshot":
        grouped: Dict[Tuple[int, Role], List[Relationship]] = defaultdict(list)
        counterpart_ids: set[int] = set()
        for role in (Role.A, Role.B):
            for relationship in directory.get_relationships(
                list(candidate_ids),
                role,
                relationship_type_ids,
                include_inactive=include_inactive,
            ):
                owner_id = relationship.contact_id_a if role is Role.A else relationship.contact_id_b
                grouped[(owner_id, role)].append(relationship)
                counterpart_ids.add(relationship.counterpart_of(role))

        contacts = directory.get_contacts(counterpart_ids) if counterpart_ids else {}
        return cls(dict(grouped), contacts)

    def get_relationships(
        self,
        contact_id: int,
        role: Role,
        relationship_type_ids: Sequence[int],
        *,
        include_inactive: bool = False,
    ) -> List[Relationship]:
        wanted = set(relationship_type_ids)
        return [
            relationship
            for relationship in self._relationships.get((contact_id, role), [])
            if relationship.relationship_type_id in wanted and (include_inactive or relationship.is_active)
        ]

    def get_contact(self, contact_id: int) -> Contact:
        contact = self._contacts.get(contact_id)
        if contact is None:
            raise RecordNotFoundError(
                f"Expected one Contact but found 0 (id {contact_id})", "Contact", "getsingle", {"id": contact_id}
            )
        return contact


# ----------------------------------------------------------------------
# Pattern extraction
# ----------------------------------------------------------------------
def extract_patterns(
    directory: CiviCrmClient,
    anchor_id: int,
    relationship_type_ids: Sequence[int],
    target_subtypes: Iterable[str],
    include_inactive: bool = False,
) -> Dict[str, Pattern]:
    """Return the anchor's patterns keyed by pattern key, first occurrence first."""
    wanted_subtypes = set(target_subtypes)
    if not relationship_type_ids or not wanted_subtypes:
        return {}

    patterns: Dict[str, Pattern] = {}
    counterparts: Dict[int, Optional[Contact]] = {}

    for role in (Role.A, Role.B):
        relationships = directory.get_relationships(
            anchor_id,
            role,
            list(relationship_type_ids),
            include_inactive=include_inactive,
        )
        for relationship in relationships:
            counterpart_id = relationship.counterpart_of(role)
            if counterpart_id not in counterparts:
                counterparts[counterpart_id] = _lookup_contact(directory, counterpart_id, relationship.id)
            counterpart = counterparts[counterpart_id]
            if counterpart is None:
                continue

            for subtype in counterpart.subtypes:
                if subtype not in wanted_subtypes:
                    continue
                pattern = Pattern(
                    relationship_type_id=relationship.relationship_type_id,
                    target_subtype=subtype,
                    anchor_role=role,
                    counterpart_id=counterpart.id,
                    counterpart_name=counterpart.display_name,
                )
                patterns.setdefault(pattern.key, pattern)

    logger.debug("Anchor %s holds %s relationship pattern(s)", anchor_id, len(patterns))
    return patterns


def _lookup_contact(directory: Any, contact_id: int, relationship_id: int) -> Optional[Contact]:
    try:
        return directory.get_contact(contact_id)
    except RemoteUnavailableError:
        raise
    except CiviCrmApiError as exc:
        logger.warning(
            "Skipping relationship %s: counterpart contact %s could not be loaded (%s)",
            relationship_id,
            contact_id,
            exc,
        )
        return None


# ----------------------------------------------------------------------
# Candidate scan
# ----------------------------------------------------------------------
def scan_candidates(
    directory: CiviCrmClient,
    exclude_id: int,
    contact_types: Sequence[str],
    pagination: Optional[PaginationRequest] = None,
    limit: int = 0,
) -> CandidateScan:
    """Fetch one page of candidates in sort-name order.

    ``total_count`` counts the candidate pool for the contact types, not the
    eventual matches.
    """
    offset = 0
    if pagination is not None:
        limit = pagination.page_size
        offset = pagination.offset

    total_count = None
    if pagination is not None and pagination.count_total:
        total_count = directory.count_contacts(contact_types, exclude_deleted=True)

    contacts = directory.list_contacts(
        contact_types,
        exclude_deleted=True,
        sort=CANDIDATE_SORT,
        limit=limit,
        offset=offset,
    )
    return CandidateScan(
        contacts=[contact for contact in contacts if contact.id != exclude_id],
        total_count=total_count,
    )


# ----------------------------------------------------------------------
# Matching and inclusion
# ----------------------------------------------------------------------
def match_candidate(
    directory: Any,
    candidate: Contact,
    anchor_patterns: Mapping[str, Pattern],
    relationship_type_ids: Sequence[int],
    include_inactive: bool = False,
    match_roles: bool = True,
    labels: Optional[RelationshipLabels] = None,
) -> Dict[str, MatchedRelationship]:
    """Map each anchor pattern key the candidate satisfies to the relationship that satisfied it."""
    labels = labels or RelationshipLabels(directory)
    matched: Dict[str, MatchedRelationship] = {}
    counterparts: Dict[int, Optional[Contact]] = {}

    for role in (Role.A, Role.B):
        try:
            relationships = directory.get_relationships(
                candidate.id,
                role,
                list(relationship_type_ids),
                include_inactive=include_inactive,
            )
        except RemoteUnavailableError:
            raise
        except CiviCrmApiError as exc:
            logger.warning("Skipping role %s relationships of candidate %s: %s", role.value, candidate.id, exc)
            continue

        for relationship in relationships:
            counterpart_id = relationship.counterpart_of(role)
            if counterpart_id == candidate.id:
                continue
            if counterpart_id not in counterparts:
                counterparts[counterpart_id] = _lookup_contact(directory, counterpart_id, relationship.id)
            counterpart = counterparts[counterpart_id]
            if counterpart is None:
                continue

            for subtype in counterpart.subtypes:
                keys = _candidate_keys(relationship.relationship_type_id, subtype, role, match_roles)
                hits = [key for key in keys if key in anchor_patterns and key not in matched]
                if not hits:
                    continue
                try:
                    label = labels.label(relationship.relationship_type_id, role)
                except RemoteUnavailableError:
                    raise
                except CiviCrmApiError as exc:
                    logger.warning(
                        "Skipping relationship %s: relationship type %s could not be loaded (%s)",
                        relationship.id,
                        relationship.relationship_type_id,
                        exc,
                    )
                    break
                for key in hits:
                    matched[key] = MatchedRelationship(
                        pattern_key=key,
                        relationship_id=relationship.id,
                        relationship_type_id=relationship.relationship_type_id,
                        relationship_name=label,
                        role=role,
                        contact_subtype=subtype,
                        is_active=relationship.is_active,
                        start_date=relationship.start_date,
                        end_date=relationship.end_date,
                        related_contact=RelatedContact(id=counterpart.id, display_name=counterpart.display_name),
                    )
    return matched


def _candidate_keys(relationship_type_id: int, subtype: str, role: Role, match_roles: bool) -> List[str]:
    if match_roles:
        return [pattern_key(relationship_type_id, subtype, role)]
    return [pattern_key(relationship_type_id, subtype, each) for each in (Role.A, Role.B)]


def includes(matched_keys: Iterable[str], anchor_keys: Iterable[str], require_all_patterns: bool = False) -> bool:
    anchor = set(anchor_keys)
    matched = set(matched_keys) & anchor
    if require_all_patterns:
        return bool(anchor) and matched == anchor
    return bool(matched)


def assemble(
    accepted: Sequence[PeerResult],
    scan: CandidateScan,
    pagination: Optional[PaginationRequest] = None,
) -> PeerResponse:
    metadata = None
    if pagination is not None:
        metadata = PaginationMetadata.build(pagination.page, pagination.page_size, scan.total_count)
    return PeerResponse(peers=list(accepted), pagination=metadata)


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------
def build_peer_query(**options: Any) -> PeerQuery:
    try:
        return PeerQuery(**options)
    except PydanticValidationError as exc:
        errors = {".".join(str(part) for part in error["loc"]) or "query": error["msg"] for error in exc.errors()}
        raise ValidationError.multiple_errors(errors) from exc


def find_peers(
    query: PeerQuery,
    directory: Optional[CiviCrmClient] = None,
    settings: Optional[Settings] = None,
) -> PeerResponse:
    settings = settings or get_settings()
    directory = directory or get_civicrm_client()

    try:
        patterns = extract_patterns(
            directory,
            query.anchor_id,
            query.relationship_type_ids,
            query.target_subtypes,
            query.include_inactive,
        )
        if not patterns:
            logger.info("Contact %s has no matching relationship patterns; no peers returned", query.anchor_id)
            return PeerResponse()

        anchor_patterns = MappingProxyType(dict(patterns))
        contact_types = query.contact_types or list(settings.peer_default_contact_types)
        pagination = _bounded(query.pagination, settings.peer_max_items_per_page)
        scan = scan_candidates(directory, query.anchor_id, contact_types, pagination, query.limit)
        matches = _match_page(directory, scan.contacts, anchor_patterns, query, settings)
    except CiviCrmApiError as exc:
        exc.add_context("anchor_id", query.anchor_id)
        logger.error("Failed to get peer contacts for %s: %s", query.anchor_id, exc)
        raise

    accepted = [
        PeerResult(contact=candidate, relationships=matched)
        for candidate, matched in zip(scan.contacts, matches)
        if includes(matched.keys(), anchor_patterns.keys(), query.require_all_patterns)
    ]
    logger.info(
        "Matched %s of %s candidate(s) against %s pattern(s) for contact %s",
        len(accepted),
        len(scan.contacts),
        len(anchor_patterns),
        query.anchor_id,
    )
    return assemble(accepted, scan, pagination)


def _bounded(pagination: Optional[PaginationRequest], max_page_size: int) -> Optional[PaginationRequest]:
    if pagination is None or max_page_size <= 0 or pagination.page_size <= max_page_size:
        return pagination
    return pagination.model_copy(update={"page_size": max_page_size})


def _match_page(
    directory: CiviCrmClient,
    candidates: Sequence[Contact],
    anchor_patterns: Mapping[str, Pattern],
    query: PeerQuery,
    settings: Settings,
) -> List[Dict[str, MatchedRelationship]]:
    if not candidates:
        return []

    type_ids = sorted({pattern.relationship_type_id for pattern in anchor_patterns.values()})
    labels = RelationshipLabels(directory)

    if settings.peer_batch_lookups:
        try:
            snapshot = PageSnapshot.load(
                directory,
                [candidate.id for candidate in candidates],
                type_ids,
                query.include_inactive,
            )
        except RemoteUnavailableError:
            raise
        except CiviCrmApiError as exc:
            logger.warning("Batched lookup for %s candidate(s) failed, matching one by one: %s", len(candidates), exc)
        else:
            return [
                match_candidate(
                    snapshot, candidate, anchor_patterns, type_ids, query.include_inactive, query.match_roles, labels
                )
                for candidate in candidates
            ]

    def _match(candidate: Contact) -> Dict[str, MatchedRelationship]:
        return match_candidate(
            directory, candidate, anchor_patterns, type_ids, query.include_inactive, query.match_roles, labels
        )

    workers = min(max(1, settings.peer_match_workers), len(candidates))
    if workers == 1:
        return [_match(candidate) for candidate in candidates]

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="peer-match")
    try:
        # map() yields in submission order, which keeps the scan's sort order.
        return list(executor.map(_match, candidates))
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
