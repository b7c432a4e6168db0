from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from ..schemas.peers import AnchorPatternsResponse, PeerQuery, PeerResponse
from ..services.civicrm import CiviCrmClient, get_civicrm_client
from ..services.peers import extract_patterns, find_peers

router = APIRouter(prefix="/api/peers", tags=["peers"])


def _require_enabled(client: CiviCrmClient) -> None:
    if not client.is_enabled():
        raise HTTPException(status_code=503, detail="CiviCRM integration is disabled or not configured")


@router.post("", response_model=PeerResponse)
def find_peer_contacts(payload: PeerQuery, client: CiviCrmClient = Depends(get_civicrm_client)) -> PeerResponse:
    """Contacts that share the anchor's relationship patterns."""
    _require_enabled(client)
    return find_peers(payload, directory=client)


@router.get("/patterns", response_model=AnchorPatternsResponse)
def get_anchor_patterns(
    anchor_id: int = Query(..., ge=1),
    relationship_type_ids: List[int] = Query(default=[]),
    target_subtypes: List[str] = Query(default=[]),
    include_inactive: bool = Query(False),
    client: CiviCrmClient = Depends(get_civicrm_client),
) -> AnchorPatternsResponse:
    _require_enabled(client)
    patterns = extract_patterns(client, anchor_id, relationship_type_ids, target_subtypes, include_inactive)
    return AnchorPatternsResponse(anchor_id=anchor_id, patterns=list(patterns.values()))
