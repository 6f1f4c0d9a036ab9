"""Lead pipeline status rules.

The transition table is the only authority on which status moves are legal.
Status updates, generic lead edits and the conversion workflow all consult it.
"""

from __future__ import annotations

from dataclasses import dataclass, field

NEW = "New"
CONTACTED = "Contacted"
QUALIFIED = "Qualified"
PROPOSAL_SENT = "Proposal Sent"
NEGOTIATION = "Negotiation"
CONVERTED = "Converted"
CONVERTED_TO_ACCOUNT = "Converted to Account"
LOST = "Lost"
UNQUALIFIED = "Unqualified"

CONVERTED_STATUS = CONVERTED
CONVERTED_STATUSES = frozenset({CONVERTED, CONVERTED_TO_ACCOUNT})

LEAD_STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    NEW: (QUALIFIED, CONTACTED, UNQUALIFIED),
    QUALIFIED: (CONTACTED, PROPOSAL_SENT, UNQUALIFIED),
    CONTACTED: (QUALIFIED, PROPOSAL_SENT, NEGOTIATION, UNQUALIFIED),
    PROPOSAL_SENT: (NEGOTIATION, CONVERTED, LOST),
    NEGOTIATION: (CONVERTED, LOST, PROPOSAL_SENT),
    CONVERTED: (),
    CONVERTED_TO_ACCOUNT: (),
    LOST: (),
    UNQUALIFIED: (),
}

LEAD_STATUSES: tuple[str, ...] = tuple(LEAD_STATUS_TRANSITIONS)

# Statuses a caller may request; the legacy spelling is read-only.
ASSIGNABLE_STATUSES: tuple[str, ...] = tuple(status for status in LEAD_STATUSES if status != CONVERTED_TO_ACCOUNT)


@dataclass(frozen=True)
class TransitionCheck:
    valid: bool
    current_status: str
    requested_status: str
    allowed_statuses: list[str] = field(default_factory=list)
    reason: str | None = None

    def as_details(self) -> dict[str, object]:
        return {
            "current_status": self.current_status,
            "requested_status": self.requested_status,
            "allowed_statuses": list(self.allowed_statuses),
            "reason": self.reason,
        }


def is_known_status(status: str | None) -> bool:
    return status in LEAD_STATUS_TRANSITIONS


def allowed_transitions(status: str) -> list[str]:
    return list(LEAD_STATUS_TRANSITIONS.get(status, ()))


def is_terminal(status: str) -> bool:
    return not LEAD_STATUS_TRANSITIONS.get(status, ())


def is_converted(status: str | None) -> bool:
    return status in CONVERTED_STATUSES


def validate_status_transition(current_status: str, requested_status: str) -> TransitionCheck:
    """Check a single status move against the transition table.

    Never raises. Unknown current statuses have no outgoing edges, so every
    request out of them is rejected with an empty allowed list.
    """
    allowed = allowed_transitions(current_status)
    if requested_status in allowed:
        return TransitionCheck(
            valid=True,
            current_status=current_status,
            requested_status=requested_status,
            allowed_statuses=allowed,
        )

    readable = ", ".join(allowed) if allowed else "none"
    return TransitionCheck(
        valid=False,
        current_status=current_status,
        requested_status=requested_status,
        allowed_statuses=allowed,
        reason=f"Cannot transition from '{current_status}' to '{requested_status}'. Valid transitions: {readable}",
    )


def can_convert(status: str, *, strict: bool = True) -> bool:
    if strict:
        return validate_status_transition(status, CONVERTED_STATUS).valid
    return is_known_status(status) and not is_terminal(status)
