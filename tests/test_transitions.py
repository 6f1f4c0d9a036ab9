from __future__ import annotations

import pytest

from iris_crm.crm.transitions import (
    ASSIGNABLE_STATUSES,
    CONVERTED_STATUS,
    LEAD_STATUS_TRANSITIONS,
    LEAD_STATUSES,
    allowed_transitions,
    can_convert,
    is_converted,
    is_terminal,
    validate_status_transition,
)

TERMINAL_STATUSES = ["Converted", "Converted to Account", "Lost", "Unqualified"]


def test_transition_table_is_total() -> None:
    for status in LEAD_STATUSES:
        assert status in LEAD_STATUS_TRANSITIONS
        assert isinstance(allowed_transitions(status), list)


def test_transition_targets_are_known_statuses() -> None:
    for targets in LEAD_STATUS_TRANSITIONS.values():
        assert set(targets) <= set(LEAD_STATUSES)


@pytest.mark.parametrize("terminal", TERMINAL_STATUSES)
def test_terminal_states_have_no_outbound_edges(terminal: str) -> None:
    assert is_terminal(terminal)
    for requested in LEAD_STATUSES:
        check = validate_status_transition(terminal, requested)
        assert check.valid is False
        assert check.allowed_statuses == []


def test_terminal_same_state_request_is_rejected() -> None:
    check = validate_status_transition("Converted", "Converted")

    assert check.valid is False
    assert check.reason == "Cannot transition from 'Converted' to 'Converted'. Valid transitions: none"


def test_valid_transition_carries_allowed_list() -> None:
    check = validate_status_transition("New", "Qualified")

    assert check.valid is True
    assert check.reason is None
    assert check.allowed_statuses == ["Qualified", "Contacted", "Unqualified"]


def test_invalid_transition_reason_lists_allowed_statuses() -> None:
    check = validate_status_transition("New", "Negotiation")

    assert check.valid is False
    assert check.current_status == "New"
    assert check.requested_status == "Negotiation"
    assert check.reason == "Cannot transition from 'New' to 'Negotiation'. Valid transitions: Qualified, Contacted, Unqualified"
    assert check.as_details()["allowed_statuses"] == ["Qualified", "Contacted", "Unqualified"]


def test_unknown_current_status_rejects_everything() -> None:
    check = validate_status_transition("Archived", "New")

    assert check.valid is False
    assert check.allowed_statuses == []


def test_conversion_eligibility_follows_transition_table() -> None:
    eligible = {status for status in LEAD_STATUSES if can_convert(status)}

    assert eligible == {"Proposal Sent", "Negotiation"}
    assert all(validate_status_transition(status, CONVERTED_STATUS).valid for status in eligible)


def test_relaxed_conversion_eligibility_excludes_terminal_states() -> None:
    eligible = {status for status in LEAD_STATUSES if can_convert(status, strict=False)}

    assert eligible == {"New", "Qualified", "Contacted", "Proposal Sent", "Negotiation"}


def test_legacy_converted_spelling_is_converted_but_not_assignable() -> None:
    assert is_converted("Converted to Account")
    assert is_converted("Converted")
    assert not is_converted("Lost")
    assert "Converted to Account" not in ASSIGNABLE_STATUSES
