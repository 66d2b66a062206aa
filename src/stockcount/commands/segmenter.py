"""Utterance segmentation for streaming speech-to-text fragments."""

import asyncio
import logging
import re
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_DELAY_SECONDS = 6.0
LONG_UTTERANCE_CHARS = 30

# Heuristics that mark a buffer as a finished utterance
_COMPLETION_PATTERNS = [
    re.compile(r"[.!?]\s*$"),
    re.compile(r"\b(add|remove|set)\b.*\b(of|to)\b.*\d+", re.IGNORECASE),
    re.compile(r"\bwe have .* \d+", re.IGNORECASE),
    re.compile(r"\b(undo|revert|scratch that|take that back)\b", re.IGNORECASE),
]


def is_utterance_complete(text: str) -> bool:
    """Decide whether buffered text reads as a finished utterance.

    Args:
        text: Buffered transcript text

    Returns:
        True if the text ends in terminal punctuation, looks like a full
        command, states an inventory level, is an undo request, or is longer
        than 30 characters
    """
    stripped = text.strip()
    if not stripped:
        return False
    if len(stripped) > LONG_UTTERANCE_CHARS:
        return True
    return any(pattern.search(stripped) for pattern in _COMPLETION_PATTERNS)


class UtteranceSegmenter:
    """Turn final transcript fragments into complete utterances.

    Fragments are joined with single spaces. When the buffer looks complete
    it is emitted and cleared immediately. Otherwise a flush timer is armed
    on the running event loop and restarted by every new fragment; when it
    fires the buffer is emitted as-is.
    """

    def __init__(
        self,
        on_utterance: Callable[[str], None],
        flush_delay: float = DEFAULT_FLUSH_DELAY_SECONDS,
    ) -> None:
        """Initialize the segmenter.

        Args:
            on_utterance: Called with each emitted utterance
            flush_delay: Seconds of silence before a partial buffer is flushed
        """
        self.on_utterance = on_utterance
        self.flush_delay = flush_delay
        self._fragments: list[str] = []
        self._timer: asyncio.TimerHandle | None = None

    @property
    def buffer(self) -> str:
        return " ".join(self._fragments)

    @property
    def has_pending_flush(self) -> bool:
        return self._timer is not None

    def add_fragment(self, text: str) -> str | None:
        """Append a final transcript fragment.

        Args:
            text: Fragment text; empty or whitespace-only fragments are ignored

        Returns:
            The emitted utterance if this fragment completed one, else None
        """
        fragment = " ".join((text or "").split())
        if not fragment:
            return None

        self._fragments.append(fragment)
        buffered = self.buffer

        if is_utterance_complete(buffered):
            return self._emit()

        self._arm_timer()
        return None

    def flush(self) -> str | None:
        """Emit whatever is buffered right now.

        Returns:
            The emitted utterance, or None if the buffer was empty
        """
        if not self._fragments:
            self._cancel_timer()
            return None
        return self._emit()

    def close(self) -> None:
        """Cancel the flush timer and drop any buffered text."""
        self._cancel_timer()
        if self._fragments:
            logger.debug("Dropping buffered fragments on close: %r", self.buffer)
        self._fragments.clear()

    def _emit(self) -> str:
        self._cancel_timer()
        utterance = self.buffer
        self._fragments.clear()
        logger.debug("Emitting utterance: %r", utterance)
        self.on_utterance(utterance)
        return utterance

    def _arm_timer(self) -> None:
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the caller is expected to flush() explicitly
            return
        self._timer = loop.call_later(self.flush_delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._fragments:
            logger.debug("Flush timer fired after %.1fs of silence", self.flush_delay)
            self._emit()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
