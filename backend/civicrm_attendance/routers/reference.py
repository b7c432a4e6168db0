from __future__ import annotations

from datetime import date
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query

from ..schemas.attendance import Event
from ..services.civicrm import CiviCrmClient, get_civicrm_client

router = APIRouter(prefix="/api/reference", tags=["reference"])


@router.get("/relationship-types", response_model=Dict[int, str])
def list_relationship_types(client: CiviCrmClient = Depends(get_civicrm_client)) -> Dict[int, str]:
    return client.get_relationship_types()


@router.get("/contact-subtypes", response_model=Dict[str, str])
def list_contact_subtypes(client: CiviCrmClient = Depends(get_civicrm_client)) -> Dict[str, str]:
    return client.get_contact_subtypes()


@router.get("/events", response_model=Dict[int, Event])
def list_events(
    active_only: bool = Query(True),
    start_date: Optional[date] = Query(default=None, description="Only events starting on or after this date"),
    end_date: Optional[date] = Query(default=None, description="Only events starting on or before this date"),
    client: CiviCrmClient = Depends(get_civicrm_client),
) -> Dict[int, Event]:
    return client.get_events(
        active_only=active_only,
        start_date=start_date.isoformat() if start_date else None,
        end_date=end_date.isoformat() if end_date else None,
    )


@router.get("/participant-statuses", response_model=Dict[int, str])
def list_participant_statuses(client: CiviCrmClient = Depends(get_civicrm_client)) -> Dict[int, str]:
    return client.get_participant_statuses()
