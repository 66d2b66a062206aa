"""Per-session conversational state: history, recent commands, and the state machine."""

import logging
from collections.abc import Callable
from dataclasses import fields

from stockcount.errors import InvalidTransitionError
from stockcount.models import (
    ConversationTurn,
    PendingConfirmation,
    RecentCommand,
    Role,
    SessionState,
    SessionStateType,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY_TURNS = 8
DEFAULT_MAX_RECENT_COMMANDS = 5

StateListener = Callable[[SessionState], None]

# current state -> states it may move to
ALLOWED_TRANSITIONS: dict[SessionStateType, set[SessionStateType]] = {
    SessionStateType.NORMAL: {
        SessionStateType.PROCESSING_COMMAND,
        SessionStateType.WAITING_FOR_CLARIFICATION,
        SessionStateType.ERROR,
    },
    SessionStateType.PROCESSING_COMMAND: {
        SessionStateType.NORMAL,
        SessionStateType.WAITING_FOR_CLARIFICATION,
        SessionStateType.ERROR,
    },
    SessionStateType.WAITING_FOR_CLARIFICATION: {
        SessionStateType.NORMAL,
        SessionStateType.PROCESSING_COMMAND,
        SessionStateType.ERROR,
    },
    SessionStateType.ERROR: {SessionStateType.NORMAL},
}

_STATE_FIELDS = {f.name for f in fields(SessionState)}


class SessionContext:
    """Conversation history, recent commands and state for one session.

    All reads return copies, so callers can never mutate the stored state.
    Every write notifies subscribers with a fresh copy of the state.
    """

    def __init__(
        self,
        session_id: str,
        max_history_turns: int = DEFAULT_MAX_HISTORY_TURNS,
        max_recent_commands: int = DEFAULT_MAX_RECENT_COMMANDS,
    ) -> None:
        """Initialize the session context.

        Args:
            session_id: Session identifier
            max_history_turns: Conversation turns kept, oldest evicted first
            max_recent_commands: Recent commands kept, oldest evicted first
        """
        self.session_id = session_id
        self.max_history_turns = max_history_turns
        self.max_recent_commands = max_recent_commands
        self._state = SessionState()
        self._listeners: list[StateListener] = []

    def get_conversation_history(self) -> list[ConversationTurn]:
        return list(self._state.conversation_history)

    def get_recent_commands(self) -> list[RecentCommand]:
        return list(self._state.recent_commands)

    def get_state(self) -> SessionState:
        return self._state.copy()

    @property
    def current_state(self) -> SessionStateType:
        return self._state.current_state

    @property
    def pending_confirmation(self) -> PendingConfirmation | None:
        return self._state.pending_confirmation

    def add_turn(self, role: Role, text: str) -> None:
        """Append a conversation turn, evicting the oldest beyond the limit."""
        history = self._state.conversation_history
        history.append(ConversationTurn(role=Role(role), text=text))
        if len(history) > self.max_history_turns:
            del history[: len(history) - self.max_history_turns]
        self._notify()

    def add_recent_command(self, command: RecentCommand) -> None:
        """Record an applied command, evicting the oldest beyond the limit."""
        recent = self._state.recent_commands
        recent.append(command)
        if len(recent) > self.max_recent_commands:
            del recent[: len(recent) - self.max_recent_commands]
        self._notify()

    def pop_recent_command(self) -> RecentCommand | None:
        """Remove and return the newest recent command (used by undo)."""
        if not self._state.recent_commands:
            return None
        command = self._state.recent_commands.pop()
        self._notify()
        return command

    def set_state(self, state: SessionState) -> None:
        """Replace the whole state with a copy of ``state``."""
        self._state = state.copy()
        self._notify()

    def update_state(self, **changes) -> SessionState:
        """Shallow-merge fields into the state.

        Args:
            **changes: SessionState field values to replace

        Returns:
            A copy of the updated state

        Raises:
            TypeError: If a name is not a SessionState field
        """
        unknown = set(changes) - _STATE_FIELDS
        if unknown:
            raise TypeError(f"Unknown session state field(s): {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            if name in ("conversation_history", "recent_commands"):
                value = list(value)
            setattr(self._state, name, value)
        self._notify()
        return self._state.copy()

    def reset_state(self) -> None:
        """Return to a fresh state, keeping subscribers."""
        self._state = SessionState()
        self._notify()

    def can_transition(self, target: SessionStateType) -> bool:
        current = self._state.current_state
        return target == current or target in ALLOWED_TRANSITIONS[current]

    def transition(self, target: SessionStateType) -> None:
        """Move the state machine to ``target``.

        Raises:
            InvalidTransitionError: If the move is not allowed from the current state
        """
        current = self._state.current_state
        if target == current:
            return
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        logger.debug("Session %s: %s -> %s", self.session_id[:8], current.value, target.value)
        self._state.current_state = target
        self._notify()

    def set_processing(self, is_processing: bool) -> None:
        if self._state.is_processing != is_processing:
            self._state.is_processing = is_processing
            self._notify()

    def set_pending_confirmation(self, pending: PendingConfirmation | None) -> None:
        self._state.pending_confirmation = pending
        self._notify()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change listener.

        Args:
            listener: Called with a copy of the state after every change

        Returns:
            A function that removes the listener when called
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self._state.copy()
        for listener in list(self._listeners):
            try:
                listener(snapshot.copy())
            except Exception as e:
                logger.error("Session state listener failed: %s", e, exc_info=True)
