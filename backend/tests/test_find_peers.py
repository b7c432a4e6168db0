import pytest

from civicrm_attendance.exceptions import RemoteTimeoutError, RemoteUnavailableError, ValidationError
from civicrm_attendance.schemas.peers import PaginationMetadata, PaginationRequest, PeerQuery
from civicrm_attendance.services.peers import build_peer_query, find_peers, scan_candidates

from conftest import ANCHOR, CONTRACTOR_OF, EMPLOYEE_OF, INSTITUTION_I


def _query(**overrides) -> PeerQuery:
    options = {
        "anchor_id": ANCHOR,
        "relationship_type_ids": [EMPLOYEE_OF],
        "target_subtypes": ["Employer"],
    }
    options.update(overrides)
    return PeerQuery(**options)


def _peer_ids(response):
    return [peer.contact.id for peer in response.peers]


def test_peers_share_type_subtype_and_role(directory, settings):
    response = find_peers(_query(), directory=directory, settings=settings)

    assert _peer_ids(response) == [2, 4]
    bob = response.peers[0]
    assert bob.contact.display_name == "Bob Brown"
    assert set(bob.relationships) == {"5|Employer|A"}
    assert bob.relationships["5|Employer|A"].related_contact.id == INSTITUTION_I
    assert response.peers[1].relationships["5|Employer|A"].related_contact.display_name == "Jupiter Corp"


def test_anchor_never_appears_among_its_peers(directory, settings):
    response = find_peers(_query(pagination=None), directory=directory, settings=settings)

    assert ANCHOR not in _peer_ids(response)


@pytest.mark.parametrize(
    "overrides",
    [
        {"relationship_type_ids": []},
        {"target_subtypes": []},
        {"relationship_type_ids": [CONTRACTOR_OF]},
    ],
)
def test_no_patterns_means_no_candidate_scan(directory, settings, overrides):
    response = find_peers(_query(**overrides), directory=directory, settings=settings)

    assert response.peers == []
    assert response.pagination is None
    assert directory.calls_to("list_contacts") == []
    assert directory.calls_to("count_contacts") == []


def test_require_all_patterns(directory, settings):
    directory.add_type(12, "Volunteer for", "Has volunteer")
    directory.add_contact(110, "Helping Hands", contact_type="Organization", subtypes=["Charity"])
    directory.relate(50, 12, ANCHOR, 110)
    directory.relate(51, 12, 4, 110)

    query = _query(relationship_type_ids=[EMPLOYEE_OF, 12], target_subtypes=["Employer", "Charity"])
    any_match = find_peers(query, directory=directory, settings=settings)
    all_match = find_peers(query.model_copy(update={"require_all_patterns": True}), directory=directory, settings=settings)

    assert _peer_ids(any_match) == [2, 4]
    assert _peer_ids(all_match) == [4]
    assert set(all_match.peers[0].relationships) == {"5|Employer|A", "12|Charity|A"}


def test_ignoring_roles_admits_opposite_endpoint(directory, settings):
    directory.add_contact(20, "Erin Employer", sort_name="Employer, Erin")
    directory.add_contact(102, "Kite Co", contact_type="Organization", subtypes=["Employer"])
    directory.relate(40, EMPLOYEE_OF, 102, 20)

    strict = find_peers(_query(), directory=directory, settings=settings)
    relaxed = find_peers(_query(match_roles=False), directory=directory, settings=settings)

    assert 20 not in _peer_ids(strict)
    assert _peer_ids(relaxed) == [2, 4, 20]
    assert relaxed.peers[2].relationships["5|Employer|A"].relationship_name == "Employer of"


def test_contact_types_limit_the_candidate_pool(directory, settings):
    directory.add_contact(120, "Zeta Household", contact_type="Household")
    directory.relate(52, EMPLOYEE_OF, 120, INSTITUTION_I)

    individuals = find_peers(_query(), directory=directory, settings=settings)
    households = find_peers(_query(contact_types=["Household"]), directory=directory, settings=settings)

    assert 120 not in _peer_ids(individuals)
    assert _peer_ids(households) == [120]


def test_deleted_contacts_are_not_candidates(directory, settings):
    directory.deleted.add(2)

    response = find_peers(_query(), directory=directory, settings=settings)

    assert _peer_ids(response) == [4]


def test_pagination_metadata(directory, settings):
    response = find_peers(_query(pagination={"page": 1, "page_size": 2}), directory=directory, settings=settings)

    assert response.pagination == PaginationMetadata(current_page=1, items_per_page=2, total_count=4, total_pages=2)
    assert directory.calls_to("list_contacts")[-1]["limit"] == 2
    assert directory.calls_to("list_contacts")[-1]["offset"] == 0


def test_pages_are_deterministic_and_disjoint(directory, settings):
    first = find_peers(_query(pagination={"page": 1, "page_size": 2}), directory=directory, settings=settings)
    second = find_peers(_query(pagination={"page": 2, "page_size": 2}), directory=directory, settings=settings)
    again = find_peers(_query(pagination={"page": 2, "page_size": 2}), directory=directory, settings=settings)

    # Pool order: Anchor, Brown, Clark, Dunn; page one loses the anchor itself.
    assert _peer_ids(first) == [2]
    assert _peer_ids(second) == [4]
    assert _peer_ids(again) == _peer_ids(second)
    assert directory.calls_to("list_contacts")[-1]["offset"] == 2
    full = find_peers(_query(pagination=None), directory=directory, settings=settings)
    assert _peer_ids(first) + _peer_ids(second) == _peer_ids(full)


def test_page_below_one_is_treated_as_first_page(directory, settings):
    response = find_peers(_query(pagination={"page": 0, "page_size": 2}), directory=directory, settings=settings)

    assert response.pagination.current_page == 1
    assert directory.calls_to("list_contacts")[-1]["offset"] == 0


def test_total_count_can_be_skipped(directory, settings):
    response = find_peers(
        _query(pagination={"page": 1, "page_size": 10, "count_total": False}), directory=directory, settings=settings
    )

    assert response.pagination.total_count is None
    assert response.pagination.total_pages is None
    assert directory.calls_to("count_contacts") == []


def test_without_pagination_whole_pool_is_scanned(directory, settings):
    response = find_peers(_query(pagination=None), directory=directory, settings=settings)

    assert _peer_ids(response) == [2, 4]
    assert response.pagination is None
    assert directory.calls_to("list_contacts")[-1] == {"contact_types": ["Individual"], "limit": 0, "offset": 0}


def test_plain_limit_applies_without_pagination(directory, settings):
    find_peers(_query(pagination=None, limit=3), directory=directory, settings=settings)

    assert directory.calls_to("list_contacts")[-1]["limit"] == 3


@pytest.mark.parametrize(
    "page, per_page, total, pages",
    [(1, 10, 23, 3), (2, 10, 20, 2), (1, 10, 0, 0), (1, 25, 1, 1), (1, 0, 5, 0)],
)
def test_pagination_metadata_math(page, per_page, total, pages):
    metadata = PaginationMetadata.build(page, per_page, total)

    assert metadata.total_pages == pages
    assert metadata.total_count == total


def test_pagination_offset():
    assert PaginationRequest(page=3, page_size=10).offset == 20
    assert PaginationRequest(page=-4, page_size=10).offset == 0


@pytest.mark.parametrize("workers", [1, 3])
def test_worker_pool_and_batched_modes_agree(directory, settings, workers):
    batched = find_peers(_query(pagination=None), directory=directory, settings=settings)
    pooled_settings = settings.model_copy(update={"peer_batch_lookups": False, "peer_match_workers": workers})

    pooled = find_peers(_query(pagination=None), directory=directory, settings=pooled_settings)

    assert pooled == batched


def test_batched_mode_fetches_relationships_per_page(directory, settings):
    find_peers(_query(pagination=None), directory=directory, settings=settings)

    candidate_fetches = [args for args in directory.calls_to("get_relationships") if args["contact_ids"] != {ANCHOR}]
    assert len(candidate_fetches) == 2
    assert candidate_fetches[0]["contact_ids"] == {2, 3, 4}


def test_one_broken_candidate_does_not_sink_the_page(directory, settings):
    directory.missing_contacts.add(INSTITUTION_I)
    directory.relate(53, EMPLOYEE_OF, ANCHOR, 101)
    pooled_settings = settings.model_copy(update={"peer_batch_lookups": False, "peer_match_workers": 2})

    response = find_peers(_query(pagination=None), directory=directory, settings=pooled_settings)

    assert _peer_ids(response) == [4]


def test_outage_aborts_the_request(directory, settings):
    directory.unavailable = True

    with pytest.raises(RemoteUnavailableError) as excinfo:
        find_peers(_query(), directory=directory, settings=settings)

    assert excinfo.value.context["anchor_id"] == ANCHOR


def test_scan_excludes_anchor_after_fetch(directory):
    scan = scan_candidates(directory, ANCHOR, ["Individual"], PaginationRequest(page=1, page_size=2))

    assert [contact.id for contact in scan.contacts] == [2]
    assert scan.total_count == 4


def test_build_peer_query_reports_invalid_fields():
    with pytest.raises(ValidationError) as excinfo:
        build_peer_query(anchor_id=0, relationship_type_ids=["x"])

    assert "anchor_id" in excinfo.value.errors
    assert any(field.startswith("relationship_type_ids") for field in excinfo.value.errors)


def test_build_peer_query_cleans_filters():
    query = build_peer_query(
        anchor_id=ANCHOR,
        relationship_type_ids=[5, 5, 9],
        target_subtypes=[" Employer ", "Employer", ""],
    )

    assert query.relationship_type_ids == [5, 9]
    assert query.target_subtypes == ["Employer"]
    assert query.contact_types == ["Individual"]


def test_page_size_is_capped_by_settings(directory, settings):
    capped = settings.model_copy(update={"peer_max_items_per_page": 3})

    response = find_peers(_query(pagination={"page": 1, "page_size": 100}), directory=directory, settings=capped)

    assert response.pagination.items_per_page == 3
    assert response.pagination.total_pages == 2
    assert directory.calls_to("list_contacts")[-1]["limit"] == 3


def test_batched_lookup_timeout_falls_back_to_per_candidate_matching(directory, settings, monkeypatch):
    original = directory.get_relationships

    def slow_for_pages(contact_ids, role, type_ids, *, include_inactive=False):
        if not isinstance(contact_ids, int):
            raise RemoteTimeoutError("CiviCRM request timed out after 10.0s", "Relationship", "get")
        return original(contact_ids, role, type_ids, include_inactive=include_inactive)

    monkeypatch.setattr(directory, "get_relationships", slow_for_pages)

    response = find_peers(_query(pagination=None), directory=directory, settings=settings)

    assert _peer_ids(response) == [2, 4]
    per_candidate = [args["contact_ids"] for args in directory.calls_to("get_relationships")]
    assert {2} in per_candidate and {4} in per_candidate
