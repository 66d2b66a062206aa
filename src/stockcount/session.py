"""Per-session voice command pipeline.

Ties the segmenter, extractor, accumulator, confirmation policy and pending
confirmation tracking together for one user session. Utterances are
processed strictly one at a time; every timer and the worker task belong to
the session and are cancelled by ``close()``.
"""

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from stockcount.accuracy import CallerAccuracyStore, get_caller_accuracy_store
from stockcount.commands.accumulator import DEFAULT_CONTEXT_WINDOW_SECONDS, CommandAccumulator
from stockcount.commands.extractor import CommandExtractor, get_command_extractor
from stockcount.commands.pending_confirmations import PendingConfirmationManager, PendingPolicy
from stockcount.commands.segmenter import DEFAULT_FLUSH_DELAY_SECONDS, UtteranceSegmenter
from stockcount.commands.session_context import SessionContext
from stockcount.confirmation import ConfirmationContext, ConfirmationPolicy
from stockcount.corrections import (
    ReplyKind,
    is_affirmative,
    is_negative,
    parse_voice_correction,
)
from stockcount.errors import ClarificationNeededError, PendingConfirmationBusyError
from stockcount.feedback import FeedbackGenerator
from stockcount.logging_utils import bound_session_id, log_error, log_info
from stockcount.metrics import get_metrics_collector, is_metrics_enabled
from stockcount.models import (
    Action,
    Command,
    ConfirmationDecision,
    ConfirmationTier,
    PendingConfirmation,
    RecentCommand,
    Role,
    SessionStateType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockLevel:
    """Current stock of one item as reported by the inventory."""

    quantity: float
    threshold: float | None = None
    unit: str | None = None


class InventoryLookup(Protocol):
    """Read-only view of the inventory used as confirmation context."""

    def get_stock(self, item: str) -> StockLevel | None:
        """Return the item's stock level, or None if the item is unknown."""
        ...

    def find_similar(self, item: str) -> list[str]:
        """Return inventory item names that resemble ``item``."""
        ...


class CommandApplier(Protocol):
    """Applies confirmed commands to the inventory.

    ``apply`` may be a plain method or a coroutine. It raises
    ClarificationNeededError when the command cannot be applied without a
    human decision (unknown item, several equally good matches).
    """

    def apply(self, command: Command) -> Any:
        ...


class OutcomeStatus(str, Enum):
    """What happened to one command."""

    OK = "ok"
    NEEDS_CONFIRMATION = "needs_confirmation"
    INCOMPLETE = "incomplete"
    NEEDS_CLARIFICATION = "needs_clarification"
    QUEUED = "queued"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass
class CommandOutcome:
    """Result of handling one command (or one failed utterance)."""

    status: OutcomeStatus
    command: Command | None = None
    decision: ConfirmationDecision | None = None
    feedback: str | None = None
    token: str | None = None
    candidates: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "command": self.command.model_dump(mode="json") if self.command else None,
            "decision": self.decision.model_dump(mode="json") if self.decision else None,
            "feedback": self.feedback,
            "token": self.token,
            "candidates": list(self.candidates),
        }


SessionListener = Callable[[CommandOutcome], None]


class VoiceSession:
    """One user's voice command session."""

    def __init__(
        self,
        session_id: str | None = None,
        user_id: str | None = None,
        user_role: str | None = None,
        extractor: CommandExtractor | None = None,
        inventory: InventoryLookup | None = None,
        applier: CommandApplier | None = None,
        policy: ConfirmationPolicy | None = None,
        accuracy_store: CallerAccuracyStore | None = None,
        feedback: FeedbackGenerator | None = None,
        pending_policy: PendingPolicy = PendingPolicy.REPLACE,
        flush_delay: float = DEFAULT_FLUSH_DELAY_SECONDS,
        context_window: float = DEFAULT_CONTEXT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the session.

        Args:
            session_id: Session identifier (generated if None)
            user_id: Caller identifier for accuracy tracking
            user_role: Caller role passed to the confirmation policy
            extractor: Command extractor (defaults to get_command_extractor())
            inventory: Stock and similar-name lookups for the confirmation policy
            applier: Applies confirmed commands; None means commands are only reported
            policy: Confirmation policy (defaults to the configured thresholds)
            accuracy_store: Caller accuracy store (defaults to get_caller_accuracy_store())
            feedback: Feedback text generator
            pending_policy: Behaviour when a confirmation arrives while one is pending
            flush_delay: Segmenter silence timeout in seconds
            context_window: Seconds a partial command stays mergeable
            clock: Monotonic time source, injectable for tests
        """
        self.session_id = session_id or str(uuid.uuid4())
        self.user_id = user_id
        self.user_role = user_role
        self.extractor = extractor or get_command_extractor()
        self.inventory = inventory
        self.applier = applier
        self.policy = policy or ConfirmationPolicy()
        self.accuracy_store = accuracy_store or get_caller_accuracy_store()
        self.feedback = feedback or FeedbackGenerator()
        self.clock = clock

        self.context = SessionContext(self.session_id)
        self.segmenter = UtteranceSegmenter(self._enqueue_utterance, flush_delay=flush_delay)
        self.accumulator = CommandAccumulator(context_window=context_window, clock=clock)
        self.pending = PendingConfirmationManager(
            policy=pending_policy, on_timeout=self._on_confirmation_timeout
        )

        self._session_items: set[str] = set()
        self._listeners: list[SessionListener] = []
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._closed = False

    # Listeners

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Register a callback for every command outcome.

        Returns:
            A function that removes the listener when called
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, outcome: CommandOutcome) -> None:
        for listener in list(self._listeners):
            try:
                listener(outcome)
            except Exception as e:
                logger.error("Session listener failed: %s", e, exc_info=True)

    # Transcript ingestion

    async def handle_transcript(self, text: str, is_final: bool = True) -> None:
        """Feed one speech-to-text fragment into the session.

        Interim (non-final) fragments are ignored. Completed utterances are
        queued and processed in order by the session worker.
        """
        if self._closed:
            raise RuntimeError(f"Session {self.session_id} is closed")
        if not is_final:
            return
        self._ensure_worker()
        self.segmenter.add_fragment(text)

    async def flush(self) -> None:
        """Force out any buffered fragments as an utterance."""
        self._ensure_worker()
        self.segmenter.flush()

    async def drain(self) -> None:
        """Wait until every queued utterance has been processed."""
        await self._queue.join()

    def _enqueue_utterance(self, utterance: str) -> None:
        self._queue.put_nowait(utterance)

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._worker_loop())

    async def _worker_loop(self) -> None:
        while True:
            utterance = await self._queue.get()
            try:
                outcomes = await self.process_utterance(utterance)
                for outcome in outcomes:
                    self._notify(outcome)
            finally:
                self._queue.task_done()

    # Utterance processing

    async def process_utterance(self, text: str) -> list[CommandOutcome]:
        """Run one complete utterance through extraction, reconciliation and policy.

        Args:
            text: The utterance

        Returns:
            One CommandOutcome per emitted command. An unexpected failure
            yields a single ERROR outcome and leaves the session usable.
        """
        is_reply = is_affirmative(text) or is_negative(text)
        with self._holding_pending() if is_reply else nullcontext():
            async with self._lock:
                with bound_session_id(self.session_id):
                    started = time.perf_counter()
                    try:
                        outcomes = await self._process_locked(text)
                    except Exception as e:
                        log_error(logger, "Failed to process utterance", error=str(e))
                        logger.debug("Utterance failure details", exc_info=True)
                        outcomes = [self._fail(str(e))]
                    finally:
                        self.context.set_processing(False)

                    if is_metrics_enabled():
                        get_metrics_collector().record_utterance_latency(
                            (time.perf_counter() - started) * 1000
                        )
                    return outcomes

    async def _process_locked(self, text: str) -> list[CommandOutcome]:
        if self.pending.current is not None and (is_affirmative(text) or is_negative(text)):
            outcome = await self._reply_locked(text)
            if outcome is not None:
                return [outcome]

        history = self.context.get_conversation_history()
        recent = self.context.get_recent_commands()
        self.context.add_turn(Role.USER, text)
        self.context.transition(SessionStateType.PROCESSING_COMMAND)
        self.context.set_processing(True)

        results = await self.extractor.extract(text, history, recent)
        commands = self.accumulator.process(results)
        log_info(
            logger,
            "Processed utterance",
            results=len(results),
            commands=len(commands),
        )

        outcomes = [await self._handle_command(command) for command in commands]
        self._record_feedback_turns(outcomes)
        self._settle_state()
        return outcomes

    def _fail(self, message: str) -> CommandOutcome:
        self.context.transition(SessionStateType.ERROR)
        self.context.transition(SessionStateType.NORMAL)
        if self.pending.current is not None:
            self.context.transition(SessionStateType.WAITING_FOR_CLARIFICATION)
        return CommandOutcome(
            status=OutcomeStatus.ERROR,
            feedback=self.feedback.error_feedback(message),
        )

    async def _handle_command(self, command: Command) -> CommandOutcome:
        if not command.is_complete:
            outcome = CommandOutcome(
                status=OutcomeStatus.INCOMPLETE,
                command=command,
                feedback=self.feedback.incomplete_feedback(command),
            )
            self._record_command_metric(outcome)
            return outcome

        decision = self.policy.decide(command, self._build_context(command))
        if decision.tier == ConfirmationTier.IMPLICIT:
            outcome = await self._apply(command, decision)
        else:
            outcome = self._request_confirmation(command, decision)
        self._record_command_metric(outcome)
        return outcome

    def _build_context(self, command: Command) -> ConfirmationContext:
        context = ConfirmationContext(
            user_role=self.user_role,
            session_items=set(self._session_items),
        )
        if self.user_id:
            context.accuracy = self.accuracy_store.get(self.user_id)
        if self.inventory is None or not command.item or command.action == Action.UNDO:
            return context

        stock = self.inventory.get_stock(command.item)
        if stock is not None:
            context.current_quantity = stock.quantity
            context.threshold = stock.threshold
            context.stock_unit = stock.unit
        context.similar_items = list(self.inventory.find_similar(command.item))
        return context

    def _request_confirmation(
        self, command: Command, decision: ConfirmationDecision
    ) -> CommandOutcome:
        prompt = self.feedback.confirmation_prompt(command, decision)
        try:
            pending = self.pending.offer(command, decision, prompt)
        except PendingConfirmationBusyError as e:
            return CommandOutcome(
                status=OutcomeStatus.REJECTED,
                command=command,
                decision=decision,
                feedback=self.feedback.error_feedback(str(e)),
            )

        if pending is not self.pending.current:
            return CommandOutcome(
                status=OutcomeStatus.QUEUED,
                command=command,
                decision=decision,
                feedback=prompt,
                token=pending.token,
            )

        self.context.set_pending_confirmation(pending)
        return CommandOutcome(
            status=OutcomeStatus.NEEDS_CONFIRMATION,
            command=command,
            decision=decision,
            feedback=prompt,
            token=pending.token,
        )

    async def _apply(self, command: Command, decision: ConfirmationDecision) -> CommandOutcome:
        if self.applier is not None:
            try:
                result = self.applier.apply(command)
                if inspect.isawaitable(result):
                    await result
            except ClarificationNeededError as e:
                return CommandOutcome(
                    status=OutcomeStatus.NEEDS_CLARIFICATION,
                    command=command,
                    decision=decision,
                    feedback=self.feedback.clarification_feedback(str(e), e.candidates),
                    candidates=list(e.candidates),
                )

        self._remember(command)
        return CommandOutcome(
            status=OutcomeStatus.OK,
            command=command,
            decision=decision,
            feedback=self.feedback.success_feedback(command),
        )

    def _remember(self, command: Command) -> None:
        if command.action == Action.UNDO:
            self.context.pop_recent_command()
            return
        self.context.add_recent_command(RecentCommand.from_command(command, self.clock()))
        if command.item:
            self._session_items.add(command.item)

    def _record_feedback_turns(self, outcomes: list[CommandOutcome]) -> None:
        for outcome in outcomes:
            if outcome.feedback:
                self.context.add_turn(Role.ASSISTANT, outcome.feedback)

    def _settle_state(self) -> None:
        self.context.set_pending_confirmation(self.pending.current)
        if self.pending.current is not None:
            self.context.transition(SessionStateType.WAITING_FOR_CLARIFICATION)
        else:
            self.context.transition(SessionStateType.NORMAL)

    # Confirmation

    async def confirm(self, token: str | None = None) -> CommandOutcome | None:
        """Accept the pending confirmation and apply its command.

        Args:
            token: Token of the confirmation; None accepts whatever is pending

        Returns:
            The outcome of applying the command, or None if nothing matched
        """
        with self._holding_pending(token):
            async with self._lock:
                return await self._confirm_locked(token)

    async def reject(
        self, token: str | None = None, mistake_category: str | None = None
    ) -> CommandOutcome | None:
        """Reject the pending confirmation without applying its command.

        Args:
            token: Token of the confirmation; None rejects whatever is pending
            mistake_category: What was misheard (quantity, item, action, unit)

        Returns:
            A REJECTED outcome, or None if nothing matched
        """
        with self._holding_pending(token):
            async with self._lock:
                return self._reject_locked(token, mistake_category)

    async def handle_confirmation_reply(self, text: str) -> CommandOutcome | None:
        """Interpret a spoken yes / no / correction for the pending confirmation.

        Returns:
            The resulting outcome, or None if nothing is pending or the reply
            was not understood
        """
        with self._holding_pending():
            async with self._lock:
                return await self._reply_locked(text)

    @contextmanager
    def _holding_pending(self, token: str | None = None) -> Iterator[None]:
        """Keep the pending confirmation from timing out while a reply waits for the lock."""
        held = self.pending.hold(token)
        try:
            yield
        finally:
            if held is not None:
                self.pending.release()

    async def _confirm_locked(self, token: str | None) -> CommandOutcome | None:
        pending = self.pending.confirm(token)
        if pending is None:
            return None

        self._record_confirmation(confirmed=True)
        self.context.transition(SessionStateType.PROCESSING_COMMAND)
        outcome = await self._apply(pending.command, pending.decision)
        outcome.token = pending.token
        self._record_command_metric(outcome)
        self._settle_state()
        return outcome

    def _reject_locked(
        self, token: str | None, mistake_category: str | None
    ) -> CommandOutcome | None:
        pending = self.pending.reject(token)
        if pending is None:
            return None

        self._record_confirmation(confirmed=False, mistake_category=mistake_category)
        self._settle_state()
        return CommandOutcome(
            status=OutcomeStatus.REJECTED,
            command=pending.command,
            decision=pending.decision,
            feedback=self.feedback.rejection_feedback(pending.command),
            token=pending.token,
        )

    async def _reply_locked(self, text: str) -> CommandOutcome | None:
        pending = self.pending.current
        if pending is None:
            return None
        result = parse_voice_correction(pending.command, text)
        if result is None:
            return None

        self.context.add_turn(Role.USER, text)
        if result.kind == ReplyKind.CONFIRM:
            outcome = await self._confirm_locked(pending.token)
        elif result.kind == ReplyKind.REJECT:
            outcome = self._reject_locked(pending.token, None)
        else:
            self._reject_locked(pending.token, result.mistake_category)
            self.context.transition(SessionStateType.PROCESSING_COMMAND)
            outcome = await self._handle_command(result.command)
            if outcome.status == OutcomeStatus.OK:
                outcome.feedback = self.feedback.correction_feedback(result.command)
            self._settle_state()

        if outcome is not None and outcome.feedback:
            self.context.add_turn(Role.ASSISTANT, outcome.feedback)
        return outcome

    def _on_confirmation_timeout(self, expired: PendingConfirmation) -> None:
        if is_metrics_enabled():
            get_metrics_collector().record_confirmation("timeout")
        self.context.set_pending_confirmation(self.pending.current)
        if (
            self.pending.current is None
            and self.context.current_state == SessionStateType.WAITING_FOR_CLARIFICATION
        ):
            self.context.transition(SessionStateType.NORMAL)
        self._notify(
            CommandOutcome(
                status=OutcomeStatus.TIMED_OUT,
                command=expired.command,
                decision=expired.decision,
                feedback=self.feedback.timeout_feedback(expired.command),
                token=expired.token,
            )
        )

    def _record_confirmation(self, confirmed: bool, mistake_category: str | None = None) -> None:
        if self.user_id:
            self.policy.record_outcome(
                self.accuracy_store, self.user_id, confirmed, mistake_category
            )
        if is_metrics_enabled():
            get_metrics_collector().record_confirmation("confirmed" if confirmed else "rejected")

    def _record_command_metric(self, outcome: CommandOutcome) -> None:
        if not is_metrics_enabled() or outcome.command is None:
            return
        tier = outcome.decision.tier.value if outcome.decision else None
        get_metrics_collector().record_command(
            outcome.command.action.value, outcome.status.value, tier
        )

    # Teardown

    async def close(self) -> None:
        """Cancel the worker, flush timer and confirmation timer."""
        if self._closed:
            return
        self._closed = True
        self.segmenter.close()
        self.pending.close()
        self.context.set_pending_confirmation(None)
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        log_info(logger, "Voice session closed")
