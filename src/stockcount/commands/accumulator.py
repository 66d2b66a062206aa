"""Multi-turn completion of partial commands."""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from stockcount.models import Action, Command, PartialCommandState

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW_SECONDS = 5.0
MERGED_COMMAND_CONFIDENCE = 0.95


@dataclass
class ReconcileResult:
    """Commands emitted for one utterance plus the partial carried forward."""

    emitted: list[Command] = field(default_factory=list)
    partial: PartialCommandState | None = None


def reconcile(
    results: Iterable[Command],
    prior_partial: PartialCommandState | None,
    now: float,
    context_window: float = DEFAULT_CONTEXT_WINDOW_SECONDS,
) -> ReconcileResult:
    """Combine one utterance's parse results with the stored partial command.

    Complete results and undo results pass through unchanged. Incomplete
    results are merged into the partial; a merge that becomes complete is
    emitted with confidence 0.95. A partial older than ``context_window`` is
    discarded before anything is merged into it. A partial that is still
    incomplete at the end is emitted as an incomplete command as well as
    being returned for the next utterance.

    Args:
        results: Parse results in utterance order
        prior_partial: Partial left over from earlier utterances, if any
        now: Current time in seconds (same clock as partial timestamps)
        context_window: Maximum age in seconds of a mergeable partial

    Returns:
        ReconcileResult with emitted commands and the new partial
    """
    partial = prior_partial
    if partial is not None and partial.is_stale(now, context_window):
        logger.debug(
            "Discarding stale partial command (age=%.2fs, window=%.2fs)",
            now - partial.timestamp,
            context_window,
        )
        partial = None

    emitted: list[Command] = []
    touched = False
    for result in results:
        if result.action == Action.UNDO or result.is_complete:
            emitted.append(result)
            continue

        touched = True
        if partial is None:
            partial = PartialCommandState.from_command(result, now)
            continue

        merged = partial.merge(result, now)
        if merged.is_complete():
            command = merged.to_command(confidence=MERGED_COMMAND_CONFIDENCE)
            logger.debug("Completed partial command: %s", command.describe())
            emitted.append(command)
            partial = None
        else:
            partial = merged

    # Only a partial this utterance contributed to is surfaced again
    if partial is not None and touched:
        emitted.append(partial.to_command())

    return ReconcileResult(emitted=emitted, partial=partial)


class CommandAccumulator:
    """Holds one session's partial command between utterances."""

    def __init__(
        self,
        context_window: float = DEFAULT_CONTEXT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the accumulator.

        Args:
            context_window: Seconds a partial stays mergeable
            clock: Monotonic time source, injectable for tests
        """
        self.context_window = context_window
        self.clock = clock
        self._partial: PartialCommandState | None = None

    @property
    def partial(self) -> PartialCommandState | None:
        return self._partial

    def process(self, results: Iterable[Command]) -> list[Command]:
        """Reconcile parse results against the stored partial and update it."""
        outcome = reconcile(results, self._partial, self.clock(), self.context_window)
        self._partial = outcome.partial
        return outcome.emitted

    def clear(self) -> None:
        self._partial = None
