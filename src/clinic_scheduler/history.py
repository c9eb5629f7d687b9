"""
History Store for Clinic Shift Scheduling

Generic undo/redo over an opaque state value. Every accepted change is
recorded together with a human-readable action label so callers can tell
the user what was undone or redone.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_HISTORY = 50
INITIAL_ACTION = "Initial state"
RESET_ACTION = "Reset"
DEFAULT_ACTION = "Change"


@dataclass(frozen=True)
class HistorySnapshot(Generic[T]):
    """A state value paired with the label of the action that produced it"""
    state: T
    action: str


class HistoryStore(Generic[T]):
    """Owns the current state and the past/future snapshot stacks.

    ``past`` is oldest-first and bounded to ``max_history`` entries,
    ``future`` is head-first. Any commit clears ``future``.
    """

    def __init__(self, initial_state: Union[T, Callable[[], T]], max_history: int = MAX_HISTORY):
        if callable(initial_state):
            initial_state = initial_state()
        self.max_history = max_history
        self.past: List[HistorySnapshot[T]] = []
        self.present: HistorySnapshot[T] = HistorySnapshot(initial_state, INITIAL_ACTION)
        self.future: List[HistorySnapshot[T]] = []
        self._listeners: List[Callable[[T], None]] = []

    @property
    def state(self) -> T:
        return self.present.state

    @property
    def can_undo(self) -> bool:
        return len(self.past) > 0

    @property
    def can_redo(self) -> bool:
        return len(self.future) > 0

    def subscribe(self, listener: Callable[[T], None]) -> None:
        """Register a callback invoked with the new state after every change"""
        self._listeners.append(listener)

    def commit(self, change: Union[T, Callable[[T], T]], action: str = DEFAULT_ACTION) -> bool:
        """
        Apply a change and record it.

        Args:
            change: Either the next state, or a function mapping the current
                state to the next one.
            action: Label describing the change.

        Returns:
            True if a history entry was created, False if the next state is
            the current state object (no-op).
        """
        current = self.present.state
        next_state = change(current) if callable(change) else change

        if next_state is current:
            return False

        self.past.append(self.present)
        if len(self.past) > self.max_history:
            self.past.pop(0)

        self.present = HistorySnapshot(next_state, action)
        self.future = []
        logger.debug(f"Committed '{action}' (past={len(self.past)})")
        self._notify()
        return True

    def undo(self) -> Optional[str]:
        """Step back one entry. Returns the label of the action undone."""
        if not self.past:
            return None

        action_undone = self.present.action
        self.future.insert(0, self.present)
        self.present = self.past.pop()
        logger.debug(f"Undid '{action_undone}'")
        self._notify()
        return action_undone

    def redo(self) -> Optional[str]:
        """Step forward one entry. Returns the label of the action redone."""
        if not self.future:
            return None

        self.past.append(self.present)
        self.present = self.future.pop(0)
        logger.debug(f"Redid '{self.present.action}'")
        self._notify()
        return self.present.action

    def reset(self, new_state: T) -> None:
        """Discard all history and start over from ``new_state``"""
        self.past = []
        self.present = HistorySnapshot(new_state, RESET_ACTION)
        self.future = []
        logger.info("History reset")
        self._notify()

    def _notify(self):
        for listener in self._listeners:
            listener(self.present.state)
