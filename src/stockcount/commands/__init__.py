"""Command pipeline for spoken and typed inventory updates.

This module implements:
- Utterance segmentation of streaming transcript fragments
- Command extraction (rule engine and delegated model)
- Multi-turn completion of partial commands
- Per-session conversation state and pending confirmations
"""

from .accumulator import CommandAccumulator, ReconcileResult, reconcile
from .extractor import CommandExtractor, FallbackCommandExtractor, get_command_extractor
from .pending_confirmations import PendingConfirmationManager, PendingPolicy
from .rule_extractor import RuleBasedCommandExtractor
from .segmenter import UtteranceSegmenter, is_utterance_complete
from .session_context import SessionContext

__all__ = [
    "CommandAccumulator",
    "CommandExtractor",
    "FallbackCommandExtractor",
    "PendingConfirmationManager",
    "PendingPolicy",
    "ReconcileResult",
    "RuleBasedCommandExtractor",
    "SessionContext",
    "UtteranceSegmenter",
    "get_command_extractor",
    "is_utterance_complete",
    "reconcile",
]
