"""Risk-adaptive confirmation policy.

Decides, per command, how much human confirmation is needed before it is
applied. ``ConfirmationPolicy.decide`` is a pure function of the command and
the supplied context.
"""

import logging
from dataclasses import dataclass, field

from stockcount.accuracy import CallerAccuracy, CallerAccuracyStore
from stockcount.errors import UnitConversionError
from stockcount.models import (
    Action,
    Command,
    ConfirmationDecision,
    ConfirmationTier,
    FeedbackMode,
    RiskLevel,
    format_quantity,
)
from stockcount.policy_config import ConfirmationThresholds, get_confirmation_thresholds
from stockcount.units import convert_quantity, normalize_unit

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Routine update"


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings (insert, delete, substitute)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (char_a != char_b),
                )
            )
        previous = current
    return previous[-1]


def similarity_ratio(a: str, b: str) -> float:
    """Similarity in [0, 1]: one minus edit distance over the longer length."""
    a = a.strip().lower()
    b = b.strip().lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


@dataclass
class ConfirmationContext:
    """Everything the policy may consider besides the command itself."""

    current_quantity: float | None = None
    threshold: float | None = None
    stock_unit: str | None = None
    similar_items: list[str] = field(default_factory=list)
    user_role: str | None = None
    accuracy: CallerAccuracy | None = None
    session_items: set[str] = field(default_factory=set)
    is_ambiguous: bool = False
    is_large_quantity: bool = False


class _DecisionBuilder:
    """Accumulates a decision; every change raises and never lowers, except ``relax``."""

    def __init__(self) -> None:
        self.tier = ConfirmationTier.IMPLICIT
        self.risk = RiskLevel.LOW
        self.feedback = FeedbackMode.BRIEF
        self.timeout: float | None = None
        self.reason: str | None = None
        self.suggestion: str | None = None

    def escalate(
        self,
        reason: str,
        tier: ConfirmationTier | None = None,
        risk: RiskLevel | None = None,
        feedback: FeedbackMode | None = None,
    ) -> None:
        if tier is not None and tier.rank > self.tier.rank:
            self.tier = tier
        if risk is not None and risk.rank > self.risk.rank:
            self.risk = risk
        if feedback is not None and feedback.rank > self.feedback.rank:
            self.feedback = feedback
        if self.reason is None:
            self.reason = reason

    def suggest(self, suggestion: str) -> None:
        if self.suggestion is None:
            self.suggestion = suggestion

    def relax(self, reason: str) -> bool:
        """Downgrade Visual to Implicit, only while risk is Low."""
        if self.tier != ConfirmationTier.VISUAL or self.risk != RiskLevel.LOW:
            return False
        self.tier = ConfirmationTier.IMPLICIT
        self.timeout = None
        logger.debug("Relaxed confirmation to implicit: %s", reason)
        return True

    def build(self) -> ConfirmationDecision:
        feedback = self.feedback
        timeout = self.timeout
        if self.risk == RiskLevel.HIGH:
            feedback = FeedbackMode.DETAILED
            timeout = None
        elif self.tier == ConfirmationTier.IMPLICIT and self.risk == RiskLevel.LOW:
            feedback = FeedbackMode.SILENT
            timeout = None
        return ConfirmationDecision(
            tier=self.tier,
            risk_level=self.risk,
            feedback_mode=feedback,
            reason=self.reason or DEFAULT_REASON,
            timeout_seconds=timeout,
            suggested_correction=self.suggestion,
        )


class ConfirmationPolicy:
    """Ordered, escalating confirmation checks."""

    def __init__(self, thresholds: ConfirmationThresholds | None = None) -> None:
        """Initialize the policy.

        Args:
            thresholds: Threshold values (defaults to the cached YAML configuration)
        """
        self.thresholds = thresholds or get_confirmation_thresholds()

    def decide(
        self, command: Command, context: ConfirmationContext | None = None
    ) -> ConfirmationDecision:
        """Decide the confirmation requirement for a command.

        Args:
            command: The command to be applied
            context: Stock level, similar items, caller role, accuracy and session items

        Returns:
            ConfirmationDecision with tier, risk, feedback mode, reason and timeout
        """
        context = context or ConfirmationContext()
        t = self.thresholds
        builder = _DecisionBuilder()
        quantity = self._comparable_quantity(command, context)
        current = context.current_quantity

        # 1. Extraction confidence
        if command.confidence < t.explicit_confidence:
            builder.escalate(
                "Very low recognition confidence",
                ConfirmationTier.EXPLICIT,
                RiskLevel.HIGH,
                FeedbackMode.DETAILED,
            )
        elif command.confidence < t.visual_confidence:
            builder.escalate(
                "Low recognition confidence",
                ConfirmationTier.VISUAL,
                RiskLevel.MEDIUM,
                FeedbackMode.BRIEF,
            )
            builder.timeout = t.low_confidence_timeout

        # 2. Confusable item names
        closest = self._closest_similar_item(command.item, context.similar_items)
        if closest is not None:
            builder.escalate(
                f"Item name is similar to '{closest}'",
                ConfirmationTier.VOICE,
                RiskLevel.MEDIUM,
            )
            builder.suggest(f"Did you mean {closest}?")

        # 3. Externally flagged ambiguity
        if context.is_ambiguous:
            builder.escalate("Command is ambiguous", ConfirmationTier.VISUAL, RiskLevel.MEDIUM)
            builder.timeout = t.ambiguous_timeout

        # 4. Large quantity change
        if context.is_large_quantity or self._is_large_change(command.action, quantity, current):
            builder.escalate(
                "Large quantity change",
                ConfirmationTier.EXPLICIT,
                RiskLevel.HIGH,
                FeedbackMode.DETAILED,
            )
            builder.timeout = None

        # 5. Remove dropping stock below its alert threshold
        if (
            command.action == Action.REMOVE
            and quantity is not None
            and current is not None
            and context.threshold is not None
            and current - quantity < context.threshold
        ):
            builder.escalate(
                "Stock would fall below threshold",
                ConfirmationTier.EXPLICIT,
                RiskLevel.MEDIUM,
                FeedbackMode.DETAILED,
            )

        # 6. Set that differs noticeably from current stock
        if command.action == Action.SET and self._set_differs(quantity, current):
            if builder.tier.rank <= ConfirmationTier.VISUAL.rank:
                builder.escalate(
                    "Set differs significantly from current stock",
                    ConfirmationTier.VISUAL,
                    RiskLevel.MEDIUM,
                    FeedbackMode.BRIEF,
                )
                builder.timeout = t.set_change_timeout

        # 7. Read-only callers
        if context.user_role and context.user_role.lower() in t.readonly_roles:
            builder.escalate(
                "Caller role requires explicit confirmation",
                ConfirmationTier.EXPLICIT,
                RiskLevel.HIGH,
                FeedbackMode.DETAILED,
            )

        # 8. Caller accuracy
        accuracy = context.accuracy
        if accuracy is not None and accuracy.total >= t.min_accuracy_samples:
            if accuracy.error_rate > t.high_error_rate:
                tier = (
                    ConfirmationTier.EXPLICIT
                    if builder.tier.rank >= ConfirmationTier.VISUAL.rank
                    else ConfirmationTier.VISUAL
                )
                builder.escalate("Caller has a high correction rate", tier, RiskLevel.MEDIUM)
                suggestion = self._mistake_suggestion(accuracy.most_common_mistake(), command)
                if suggestion:
                    builder.suggest(suggestion)
            elif accuracy.error_rate < t.low_error_rate and command.action == Action.ADD:
                builder.relax("accurate caller")

        # 9. Item already handled this session
        if command.item and command.item in context.session_items:
            builder.relax("item already confirmed this session")

        # 10. Removes always get at least a voice check
        if command.action == Action.REMOVE and builder.tier == ConfirmationTier.IMPLICIT:
            builder.escalate("Removals require confirmation", ConfirmationTier.VOICE)
            builder.timeout = t.remove_voice_timeout

        decision = builder.build()
        logger.debug(
            "Confirmation for %s: tier=%s risk=%s reason=%s",
            command.describe(),
            decision.tier.value,
            decision.risk_level.value,
            decision.reason,
        )
        return decision

    def record_outcome(
        self,
        store: CallerAccuracyStore,
        user_id: str,
        confirmed: bool,
        mistake_category: str | None = None,
    ) -> CallerAccuracy:
        """Record a confirm/reject outcome in the caller accuracy store.

        Args:
            store: Caller accuracy store to update
            user_id: Caller identifier
            confirmed: True if the user confirmed the command as heard
            mistake_category: What was wrong when rejected (quantity, item, action, unit)

        Returns:
            The caller's updated accuracy
        """
        return store.record_outcome(user_id, confirmed, mistake_category)

    def _comparable_quantity(self, command: Command, context: ConfirmationContext) -> float | None:
        """Express the command quantity in the stock's unit when possible."""
        if command.quantity is None:
            return None
        stock_unit = normalize_unit(context.stock_unit)
        if not stock_unit or not command.unit or stock_unit == command.unit:
            return command.quantity
        try:
            return convert_quantity(command.quantity, command.unit, stock_unit)
        except UnitConversionError:
            logger.debug("Cannot compare %s with stock unit %s", command.unit, stock_unit)
            return command.quantity

    def _closest_similar_item(self, item: str, similar_items: list[str]) -> str | None:
        if not item:
            return None
        best: str | None = None
        best_ratio = self.thresholds.similarity_threshold
        for candidate in similar_items:
            if candidate.strip().lower() == item:
                continue
            ratio = similarity_ratio(item, candidate)
            if ratio > best_ratio:
                best, best_ratio = candidate, ratio
        return best

    def _is_large_change(
        self, action: Action, quantity: float | None, current: float | None
    ) -> bool:
        if quantity is None:
            return False
        t = self.thresholds
        if current is None:
            if action == Action.ADD:
                return quantity > t.absolute_add_limit
            if action == Action.REMOVE:
                return quantity > t.absolute_remove_limit
            if action == Action.SET:
                return quantity > t.absolute_set_limit
            return False
        if action == Action.ADD:
            return quantity > current * t.large_add_ratio
        if action == Action.REMOVE:
            return quantity > current * t.large_remove_ratio
        if action == Action.SET:
            return abs(quantity - current) > current * t.large_set_ratio
        return False

    def _set_differs(self, quantity: float | None, current: float | None) -> bool:
        if quantity is None or current is None:
            return False
        return abs(quantity - current) > current * self.thresholds.set_change_ratio

    def _mistake_suggestion(self, category: str | None, command: Command) -> str | None:
        if category == "quantity" and command.quantity is not None:
            return f"Did you mean a different quantity than {format_quantity(command.quantity)}?"
        if category == "item":
            return "Please confirm the item name is correct"
        if category:
            return f"Please confirm the {category} is correct"
        return None
