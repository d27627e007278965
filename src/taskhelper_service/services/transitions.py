"""
Task and booking state machines.

Every lifecycle rule is expressed here as data: task actions map a set of
source states to one target state and a set of permitted roles, and the
booking table maps each status to the statuses it may move to. Managers ask
these functions for the next state and never compare states inline.
"""

from __future__ import annotations

from dataclasses import dataclass

from taskhelper_service.core.exceptions import ServiceError

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

CLIENT = "client"
TASKER = "tasker"
OPS = "ops"
ADMIN = "admin"

ROLES: frozenset[str] = frozenset({CLIENT, TASKER, OPS, ADMIN})
PRIVILEGED_ROLES: frozenset[str] = frozenset({OPS, ADMIN})

# ---------------------------------------------------------------------------
# Task states
# ---------------------------------------------------------------------------

DRAFT = "draft"
POSTED = "posted"
MATCHING = "matching"
ACCEPTED = "accepted"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
SETTLED = "settled"
REVIEWED = "reviewed"
CANCELED_BY_CLIENT = "canceled_by_client"
CANCELED_BY_TASKER = "canceled_by_tasker"
DISPUTED = "disputed"

TASK_STATES: frozenset[str] = frozenset(
    {
        DRAFT,
        POSTED,
        MATCHING,
        ACCEPTED,
        IN_PROGRESS,
        COMPLETED,
        SETTLED,
        REVIEWED,
        CANCELED_BY_CLIENT,
        CANCELED_BY_TASKER,
        DISPUTED,
    }
)
TERMINAL_TASK_STATES: frozenset[str] = frozenset(
    {SETTLED, REVIEWED, CANCELED_BY_CLIENT, CANCELED_BY_TASKER}
)
EDITABLE_TASK_STATES: frozenset[str] = frozenset({DRAFT, POSTED})
BIDDABLE_TASK_STATES: frozenset[str] = frozenset({POSTED, MATCHING})
BOOKABLE_TASK_STATES: frozenset[str] = frozenset({DRAFT, POSTED, MATCHING})

# ---------------------------------------------------------------------------
# Booking statuses
# ---------------------------------------------------------------------------

OFFERED = "offered"
CONFIRMED = "confirmed"
CANCELED = "canceled"

BOOKING_STATUSES: frozenset[str] = frozenset(
    {OFFERED, ACCEPTED, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELED, DISPUTED}
)
NON_CANCELABLE_BOOKING_STATUSES: frozenset[str] = frozenset({COMPLETED, CANCELED, DISPUTED})

BOOKING_TRANSITIONS: dict[str, frozenset[str]] = {
    OFFERED: frozenset({ACCEPTED, CANCELED}),
    ACCEPTED: frozenset({CONFIRMED, CANCELED}),
    CONFIRMED: frozenset({IN_PROGRESS, CANCELED}),
    IN_PROGRESS: frozenset({COMPLETED, DISPUTED}),
    COMPLETED: frozenset({DISPUTED}),
    CANCELED: frozenset(),
    DISPUTED: frozenset(),
}

# Booking statuses that are mirrored onto the parent task.
BOOKING_TO_TASK_ACTION: dict[str, str] = {
    IN_PROGRESS: "start",
    COMPLETED: "complete",
    DISPUTED: "dispute",
}

# ---------------------------------------------------------------------------
# Bid statuses
# ---------------------------------------------------------------------------

BID_REQUESTED = "requested"
BID_PENDING = "pending"
BID_ACCEPTED = "accepted"
BID_DECLINED = "declined"

BID_STATUSES: frozenset[str] = frozenset({BID_REQUESTED, BID_PENDING, BID_ACCEPTED, BID_DECLINED})
NEGOTIABLE_BID_STATUSES: frozenset[str] = frozenset({BID_REQUESTED, BID_PENDING})

# ---------------------------------------------------------------------------
# Task action table
# ---------------------------------------------------------------------------

# Internal actions are triggered as a consequence of a booking, bid or
# dispute operation that already authorized its caller.
SYSTEM = "system"


@dataclass(frozen=True)
class TaskAction:
    """One edge family of the task state machine."""

    name: str
    sources: frozenset[str]
    target: str
    roles: frozenset[str]


_ANY_ACTOR = ROLES | {SYSTEM}

TASK_ACTIONS: dict[str, TaskAction] = {
    action.name: action
    for action in (
        TaskAction("post", frozenset({DRAFT}), POSTED, frozenset({CLIENT})),
        TaskAction(
            "open_matching",
            frozenset({POSTED}),
            MATCHING,
            PRIVILEGED_ROLES | {SYSTEM},
        ),
        TaskAction("accept_offer", frozenset({MATCHING}), ACCEPTED, frozenset({TASKER})),
        TaskAction(
            "assign",
            frozenset({DRAFT, POSTED, MATCHING, ACCEPTED}),
            ACCEPTED,
            _ANY_ACTOR,
        ),
        TaskAction("reopen", frozenset({ACCEPTED}), MATCHING, _ANY_ACTOR),
        TaskAction("start", frozenset({ACCEPTED}), IN_PROGRESS, _ANY_ACTOR),
        TaskAction("complete", frozenset({IN_PROGRESS}), COMPLETED, _ANY_ACTOR),
        TaskAction("dispute", frozenset({IN_PROGRESS, COMPLETED}), DISPUTED, _ANY_ACTOR),
        TaskAction(
            "cancel_by_client",
            frozenset({DRAFT, POSTED, MATCHING, ACCEPTED, IN_PROGRESS, DISPUTED}),
            CANCELED_BY_CLIENT,
            frozenset({CLIENT}) | PRIVILEGED_ROLES,
        ),
        TaskAction(
            "cancel_by_tasker",
            frozenset({POSTED, MATCHING, ACCEPTED, IN_PROGRESS}),
            CANCELED_BY_TASKER,
            frozenset({TASKER}),
        ),
        TaskAction(
            "resolve_dispute",
            frozenset({DISPUTED}),
            COMPLETED,
            PRIVILEGED_ROLES,
        ),
        TaskAction("settle", frozenset({COMPLETED}), SETTLED, PRIVILEGED_ROLES | {SYSTEM}),
        TaskAction("review", frozenset({SETTLED}), REVIEWED, _ANY_ACTOR),
    )
}


def is_privileged(role: str) -> bool:
    """Return True for ops and admin actors."""
    return role in PRIVILEGED_ROLES


def resolve_task_transition(state: str, action: str, role: str) -> str:
    """
    Return the task state reached by applying action from state.

    Raises:
        ServiceError: FORBIDDEN if the role may not perform the action,
                      INVALID_STATE if the action has no edge from state.
    """
    entry = TASK_ACTIONS.get(action)
    if entry is None:
        msg = f"Unknown task action: {action}"
        raise ValueError(msg)

    if role not in entry.roles:
        raise ServiceError(
            "FORBIDDEN",
            f"Role '{role}' cannot perform '{action}' on a task",
            403,
            {"action": action, "role": role},
        )

    if state not in entry.sources:
        raise ServiceError(
            "INVALID_STATE",
            f"Cannot {action.replace('_', ' ')} a task in '{state}' state",
            400,
            {"action": action, "state": state, "allowed_from": sorted(entry.sources)},
        )

    return entry.target


def ensure_task_state(state: str, allowed: frozenset[str], operation: str) -> None:
    """Reject an operation that does not change state but requires one of allowed."""
    if state not in allowed:
        raise ServiceError(
            "INVALID_STATE",
            f"Cannot {operation} a task in '{state}' state",
            400,
            {"state": state, "allowed_from": sorted(allowed)},
        )


def can_transition_booking(current: str, new_status: str) -> bool:
    """Return True if the booking table has an edge current -> new_status."""
    return new_status in BOOKING_TRANSITIONS.get(current, frozenset())


def validate_booking_transition(current: str, new_status: str) -> str:
    """
    Validate a booking status change against the transition table.

    Raises:
        ServiceError: INVALID_TRANSITION if the edge is not in the table.
    """
    if not can_transition_booking(current, new_status):
        raise ServiceError(
            "INVALID_TRANSITION",
            f"Cannot transition from {current} to {new_status}",
            400,
            {
                "from": current,
                "to": new_status,
                "allowed": sorted(BOOKING_TRANSITIONS.get(current, frozenset())),
            },
        )
    return new_status


def task_cancel_action_for(role: str) -> str:
    """Pick the task cancel action matching the canceling party."""
    return "cancel_by_tasker" if role == TASKER else "cancel_by_client"
