"""Orchestrator loop state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidLoopTransition rather than silently proceeding.

State Diagram:

    WAITING_FOR_MESSAGE ──┬──> STARTING_TURN ─────┬──> TURN_FINISHING ──> WAITING_FOR_MESSAGE
                          │                       │
                          ├──> CONTINUING_TURN ───┘
                          │
                          └──> WAITING_FOR_MESSAGE  (mode change re-queue, spurious wake)

    Any state ──> STOPPED  (exit flag or end of input)
"""
from __future__ import annotations

from .errors import InvalidLoopTransition
from .models import LoopState

VALID_TRANSITIONS: dict[LoopState, set[LoopState]] = {
    LoopState.WAITING_FOR_MESSAGE: {
        LoopState.WAITING_FOR_MESSAGE,
        LoopState.STARTING_TURN,
        LoopState.CONTINUING_TURN,
        LoopState.STOPPED,
    },
    LoopState.STARTING_TURN: {
        LoopState.TURN_FINISHING,
        LoopState.STOPPED,
    },
    LoopState.CONTINUING_TURN: {
        LoopState.TURN_FINISHING,
        LoopState.STOPPED,
    },
    LoopState.TURN_FINISHING: {
        LoopState.WAITING_FOR_MESSAGE,
        LoopState.STOPPED,
    },
    LoopState.STOPPED: set(),
}


def validate_transition(current: LoopState, target: LoopState) -> None:
    """Validate a loop transition. Raises InvalidLoopTransition if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise InvalidLoopTransition(
            f"Invalid loop transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
