"""Lifecycle of one AI judgment run.

``TRANSITIONS`` lists every valid ``(state, event) -> state`` pair; any pair
missing from it is rejected with ``InvalidTransitionError``.
"""

from __future__ import annotations

from enum import StrEnum

from mailtriage.domain.errors import InvalidTransitionError
from mailtriage.domain.types import JudgmentState


class JudgmentEvent(StrEnum):
    """Events that move a judgment run between states."""

    START = "start"
    PREPARED = "prepared"
    FINISH = "finish"
    CANCEL = "cancel"
    FAIL = "fail"


TRANSITIONS: dict[tuple[JudgmentState, str], JudgmentState] = {
    # From IDLE
    (JudgmentState.IDLE, JudgmentEvent.START): JudgmentState.PREPARING,
    # From PREPARING
    (JudgmentState.PREPARING, JudgmentEvent.PREPARED): JudgmentState.JUDGING,
    (JudgmentState.PREPARING, JudgmentEvent.CANCEL): JudgmentState.CANCELLED,
    (JudgmentState.PREPARING, JudgmentEvent.FAIL): JudgmentState.FAILED,
    # From JUDGING
    (JudgmentState.JUDGING, JudgmentEvent.FINISH): JudgmentState.COMPLETED,
    (JudgmentState.JUDGING, JudgmentEvent.CANCEL): JudgmentState.CANCELLED,
    (JudgmentState.JUDGING, JudgmentEvent.FAIL): JudgmentState.FAILED,
}

TERMINAL_STATES: frozenset[JudgmentState] = frozenset(
    {JudgmentState.COMPLETED, JudgmentState.CANCELLED, JudgmentState.FAILED}
)


class JudgmentStateMachine:
    """Finite state machine for a single judgment run.

    Usage::

        sm = JudgmentStateMachine()
        sm.trigger("start")     # -> PREPARING
        sm.trigger("prepared")  # -> JUDGING
        sm.trigger("finish")    # -> COMPLETED (terminal)
    """

    def __init__(self, initial_state: JudgmentState = JudgmentState.IDLE) -> None:
        self._state: JudgmentState = initial_state
        self._history: list[tuple[JudgmentState, str, JudgmentState]] = []

    @property
    def state(self) -> JudgmentState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        """Return True once the run has completed, been cancelled, or failed."""
        return self._state in TERMINAL_STATES

    @property
    def history(self) -> list[tuple[JudgmentState, str, JudgmentState]]:
        """Return a copy of the ``(from_state, event, to_state)`` history."""
        return list(self._history)

    def trigger(self, event: str) -> JudgmentState:
        """Apply *event* and return the new state.

        Raises:
            InvalidTransitionError: If *event* is not valid from the current
                state, including any event in a terminal state.
        """
        key = (self._state, event)
        if self.is_terminal or key not in TRANSITIONS:
            raise InvalidTransitionError(self._state, event)
        old_state = self._state
        self._state = TRANSITIONS[key]
        self._history.append((old_state, event, self._state))
        return self._state

    def get_valid_events(self) -> list[str]:
        """Sorted events valid from the current state; empty when terminal."""
        if self.is_terminal:
            return []
        return sorted(event for state, event in TRANSITIONS if state == self._state)
