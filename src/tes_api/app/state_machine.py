"""Legal task state transitions.

Every mutation of `Task.state` goes through `validate_transition`. Terminal
states have no outgoing edges; CANCELED is reachable from every non-terminal
state.
"""

from __future__ import annotations

from .errors import InvalidTransitionError
from .models import State

TERMINAL_STATES: frozenset[State] = frozenset(
    {State.COMPLETE, State.ERROR, State.SYSTEM_ERROR, State.CANCELED}
)

_TRANSITIONS: dict[State, frozenset[State]] = {
    # Placeholder for unreported records; only cancellation leaves it.
    State.UNKNOWN: frozenset({State.CANCELED}),
    State.QUEUED: frozenset({State.INITIALIZING, State.CANCELED}),
    State.INITIALIZING: frozenset({State.RUNNING, State.SYSTEM_ERROR, State.CANCELED}),
    State.RUNNING: frozenset(
        {State.PAUSED, State.COMPLETE, State.ERROR, State.SYSTEM_ERROR, State.CANCELED}
    ),
    State.PAUSED: frozenset({State.RUNNING, State.CANCELED}),
    State.COMPLETE: frozenset(),
    State.ERROR: frozenset(),
    State.SYSTEM_ERROR: frozenset(),
    State.CANCELED: frozenset(),
}

INITIAL_STATE = State.QUEUED


def is_terminal(state: State) -> bool:
    return state in TERMINAL_STATES


def allowed_transitions(state: State) -> frozenset[State]:
    return _TRANSITIONS[state]


def validate_transition(current: State, target: State) -> None:
    """Raise InvalidTransitionError unless `current -> target` is a legal edge."""
    if target is State.CANCELED and is_terminal(current):
        raise InvalidTransitionError(
            current.value,
            target.value,
            f"Task is already in terminal state {current.value} and cannot be canceled",
        )
    if target not in _TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)
