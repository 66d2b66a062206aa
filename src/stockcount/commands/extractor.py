"""Command extraction strategies behind one interface.

Two strategies turn an utterance into commands: the deterministic rule
engine and a delegated chat-completions model. The hybrid strategy asks the
model first and falls back to the rules when the model fails.
"""

import logging
import os
from collections.abc import Sequence
from typing import Protocol

from stockcount.errors import ExtractionError
from stockcount.logging_utils import log_warning
from stockcount.metrics import get_metrics_collector, is_metrics_enabled
from stockcount.models import Command, ConversationTurn, RecentCommand

logger = logging.getLogger(__name__)


class CommandExtractor(Protocol):
    """Protocol for command extractors."""

    name: str

    async def extract(
        self,
        utterance: str,
        conversation_history: Sequence[ConversationTurn] = (),
        recent_commands: Sequence[RecentCommand] = (),
    ) -> list[Command]:
        """Extract commands from one complete utterance.

        Args:
            utterance: Complete utterance text
            conversation_history: Prior turns, oldest first
            recent_commands: Recently applied commands, oldest first

        Returns:
            Commands in utterance order, each with ``is_complete`` computed.
            Expected failures yield an empty list rather than an exception.
        """
        ...


class StrictCommandExtractor(CommandExtractor, Protocol):
    """An extractor that can report failure instead of returning nothing."""

    async def extract_strict(
        self,
        utterance: str,
        conversation_history: Sequence[ConversationTurn] = (),
        recent_commands: Sequence[RecentCommand] = (),
    ) -> list[Command]:
        """Like ``extract`` but raises ExtractionError on transport or parse failure."""
        ...


class FallbackCommandExtractor:
    """Try a strict primary extractor and fall back when it fails."""

    name = "hybrid"

    def __init__(self, primary: StrictCommandExtractor, fallback: CommandExtractor) -> None:
        """Initialize the fallback chain.

        Args:
            primary: Extractor tried first (usually the delegated model)
            fallback: Extractor used when the primary raises ExtractionError
        """
        self.primary = primary
        self.fallback = fallback

    async def extract(
        self,
        utterance: str,
        conversation_history: Sequence[ConversationTurn] = (),
        recent_commands: Sequence[RecentCommand] = (),
    ) -> list[Command]:
        try:
            return await self.primary.extract_strict(
                utterance, conversation_history, recent_commands
            )
        except ExtractionError as e:
            log_warning(
                logger,
                "Primary extractor failed, using fallback",
                primary=self.primary.name,
                fallback=self.fallback.name,
                error=e,
            )
            if is_metrics_enabled():
                get_metrics_collector().record_extraction_failure(self.primary.name)
            return await self.fallback.extract(utterance, conversation_history, recent_commands)


def get_command_extractor() -> CommandExtractor:
    """Get the configured command extractor.

    Returns the appropriate extractor based on environment configuration:
    - STOCKCOUNT_EXTRACTOR=rules: rule engine only
    - STOCKCOUNT_EXTRACTOR=llm: delegated model only (empty result on failure)
    - STOCKCOUNT_EXTRACTOR=hybrid: delegated model with rule-engine fallback

    When unset, hybrid is used if OPENAI_API_KEY is set, otherwise rules.

    Returns:
        A CommandExtractor instance
    """
    from stockcount.commands.rule_extractor import RuleBasedCommandExtractor

    default = "hybrid" if os.environ.get("OPENAI_API_KEY") else "rules"
    extractor_type = os.environ.get("STOCKCOUNT_EXTRACTOR", default).lower()

    if extractor_type == "rules":
        return RuleBasedCommandExtractor()

    if extractor_type in ("llm", "hybrid"):
        from stockcount.commands.llm_extractor import LLMCommandExtractor

        try:
            model_extractor = LLMCommandExtractor()
        except ValueError as e:
            logger.error("Failed to initialize LLM extractor: %s", e)
            logger.warning("Falling back to rule-based extractor")
            return RuleBasedCommandExtractor()

        if extractor_type == "llm":
            return model_extractor
        return FallbackCommandExtractor(model_extractor, RuleBasedCommandExtractor())

    logger.warning("Unknown extractor '%s', falling back to rule-based extractor", extractor_type)
    return RuleBasedCommandExtractor()
