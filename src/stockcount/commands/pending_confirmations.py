"""Tracking of the single outstanding confirmation for a session."""

import asyncio
import logging
import secrets
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum

from stockcount.errors import PendingConfirmationBusyError
from stockcount.models import Command, ConfirmationDecision, PendingConfirmation

logger = logging.getLogger(__name__)


class PendingPolicy(str, Enum):
    """What happens to a new confirmation while one is already outstanding."""

    QUEUE = "queue"
    REPLACE = "replace"
    REJECT = "reject"


class PendingConfirmationManager:
    """Hold at most one pending confirmation and its timeout.

    A confirmation whose decision carries ``timeout_seconds`` arms an asyncio
    timer. The timeout is advisory: the pending entry is dropped and
    ``on_timeout`` is called, but the command is never applied.
    """

    def __init__(
        self,
        policy: PendingPolicy = PendingPolicy.REPLACE,
        on_timeout: Callable[[PendingConfirmation], None] | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            policy: Behaviour when a confirmation arrives while one is pending
            on_timeout: Called with the expired confirmation when its timer fires
        """
        self.policy = PendingPolicy(policy)
        self.on_timeout = on_timeout
        self._current: PendingConfirmation | None = None
        self._queue: deque[PendingConfirmation] = deque()
        self._timer: asyncio.TimerHandle | None = None
        self._holds = 0

    @property
    def current(self) -> PendingConfirmation | None:
        return self._current

    @property
    def queued(self) -> list[PendingConfirmation]:
        return list(self._queue)

    def offer(
        self,
        command: Command,
        decision: ConfirmationDecision,
        feedback: str | None = None,
    ) -> PendingConfirmation:
        """Create a pending confirmation for a command.

        Args:
            command: Command awaiting confirmation
            decision: The confirmation decision for it
            feedback: Prompt text shown or spoken to the user

        Returns:
            The new PendingConfirmation (current, or queued under QUEUE policy)

        Raises:
            PendingConfirmationBusyError: If one is outstanding and policy is REJECT
        """
        pending = self._create(command, decision, feedback)

        if self._current is None:
            self._activate(pending)
            return pending

        if self.policy == PendingPolicy.REJECT:
            raise PendingConfirmationBusyError(
                "A confirmation is already pending for this session"
            )

        if self.policy == PendingPolicy.QUEUE:
            logger.debug("Queueing confirmation behind %s", self._current.token[:8])
            self._queue.append(pending)
            return pending

        logger.debug("Replacing pending confirmation %s", self._current.token[:8])
        self._activate(pending)
        return pending

    def get(self, token: str | None = None) -> PendingConfirmation | None:
        """Return the current confirmation, optionally only if ``token`` matches."""
        if self._current is None:
            return None
        if token is not None and not secrets.compare_digest(token, self._current.token):
            return None
        return self._current

    def hold(self, token: str | None = None) -> PendingConfirmation | None:
        """Stop the timeout clock while a reply to the current confirmation is in flight.

        Every successful ``hold`` must be paired with ``release``.

        Returns:
            The held PendingConfirmation, or None if there is no match
        """
        pending = self.get(token)
        if pending is None:
            return None
        self._holds += 1
        self._cancel_timer()
        return pending

    def release(self) -> None:
        """Undo one ``hold``; the last release restarts the clock for the time left."""
        self._holds = max(self._holds - 1, 0)
        pending = self._current
        if self._holds or pending is None or pending.expires_at is None or self._timer:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        remaining = (pending.expires_at - datetime.now(UTC)).total_seconds()
        self._timer = loop.call_later(max(remaining, 0), self._on_timer, pending.token)

    def confirm(self, token: str | None = None) -> PendingConfirmation | None:
        """Consume the current confirmation as accepted.

        Args:
            token: Token to match; None accepts whatever is current

        Returns:
            The confirmed PendingConfirmation, or None if there is no match
        """
        return self._resolve(token)

    def reject(self, token: str | None = None) -> PendingConfirmation | None:
        """Consume the current confirmation as rejected."""
        return self._resolve(token)

    def close(self) -> None:
        """Cancel the timer and drop all pending and queued confirmations."""
        self._cancel_timer()
        self._holds = 0
        self._current = None
        self._queue.clear()

    def _create(
        self, command: Command, decision: ConfirmationDecision, feedback: str | None
    ) -> PendingConfirmation:
        created_at = datetime.now(UTC)
        expires_at = None
        if decision.timeout_seconds is not None:
            expires_at = created_at + timedelta(seconds=decision.timeout_seconds)
        return PendingConfirmation(
            token=secrets.token_urlsafe(32),
            command=command,
            decision=decision,
            feedback=feedback,
            created_at=created_at,
            expires_at=expires_at,
        )

    def _activate(self, pending: PendingConfirmation) -> None:
        self._cancel_timer()
        self._current = pending
        timeout = pending.decision.timeout_seconds
        if timeout is None:
            return
        # A queued confirmation's clock starts when it becomes current
        pending.expires_at = datetime.now(UTC) + timedelta(seconds=timeout)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Without a running loop callers check PendingConfirmation.is_expired()
            return
        self._timer = loop.call_later(timeout, self._on_timer, pending.token)

    def _resolve(self, token: str | None) -> PendingConfirmation | None:
        pending = self.get(token)
        if pending is None:
            return None
        self._cancel_timer()
        self._current = None
        self._promote_next()
        return pending

    def _promote_next(self) -> None:
        if self._queue:
            self._activate(self._queue.popleft())

    def _on_timer(self, token: str) -> None:
        self._timer = None
        if self._current is None or self._current.token != token:
            return
        expired = self._current
        self._current = None
        logger.info("Confirmation %s timed out without a reply", token[:8])
        self._promote_next()
        if self.on_timeout is not None:
            self.on_timeout(expired)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
