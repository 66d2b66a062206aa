"""Core data types shared by the command pipeline."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Action(str, Enum):
    """Inventory mutation verb."""

    ADD = "add"
    REMOVE = "remove"
    SET = "set"
    UNDO = "undo"
    UNKNOWN = "unknown"


class Role(str, Enum):
    """Speaker of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


class SessionStateType(str, Enum):
    """Session state machine states."""

    NORMAL = "normal"
    WAITING_FOR_CLARIFICATION = "waiting_for_clarification"
    PROCESSING_COMMAND = "processing_command"
    ERROR = "error"


class ConfirmationTier(str, Enum):
    """How much human confirmation a command needs, weakest first."""

    IMPLICIT = "implicit"
    VOICE = "voice"
    VISUAL = "visual"
    EXPLICIT = "explicit"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


class RiskLevel(str, Enum):
    """Risk attached to applying a command unconfirmed."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


class FeedbackMode(str, Enum):
    """How verbose the spoken feedback for a command should be."""

    SILENT = "silent"
    BRIEF = "brief"
    DETAILED = "detailed"

    @property
    def rank(self) -> int:
        return _FEEDBACK_RANK[self]


_TIER_RANK = {
    ConfirmationTier.IMPLICIT: 0,
    ConfirmationTier.VOICE: 1,
    ConfirmationTier.VISUAL: 2,
    ConfirmationTier.EXPLICIT: 3,
}
_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}
_FEEDBACK_RANK = {FeedbackMode.SILENT: 0, FeedbackMode.BRIEF: 1, FeedbackMode.DETAILED: 2}


def format_quantity(quantity: float | None) -> str:
    """Render a quantity without a trailing ".0" for whole numbers."""
    if quantity is None:
        return ""
    if float(quantity).is_integer():
        return str(int(quantity))
    return f"{quantity:g}"


def is_command_complete(
    action: Action,
    item: str | None,
    quantity: float | None,
    unit: str | None,
) -> bool:
    """Apply the completeness rule for a command's fields.

    Set needs item, quantity and unit. Add and remove need an item. Undo is
    always complete; unknown never is. A quantity of zero counts as present.

    Args:
        action: Command action
        item: Item name (empty or None means absent)
        quantity: Quantity (None means absent)
        unit: Unit name (empty or None means absent)

    Returns:
        True if the fields form a complete command
    """
    if action == Action.UNDO:
        return True
    if action == Action.SET:
        return bool(item) and quantity is not None and bool(unit)
    if action in (Action.ADD, Action.REMOVE):
        return bool(item)
    return False


class Command(BaseModel):
    """A structured inventory mutation.

    Commands are immutable. Use ``Command.build`` to construct one with
    ``is_complete`` derived from the fields, and ``replace`` to derive a
    modified copy.
    """

    model_config = ConfigDict(frozen=True)

    action: Action
    item: str = ""
    quantity: float | None = None
    unit: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_complete: bool = False

    @field_validator("item", "unit", mode="before")
    @classmethod
    def _normalize_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return " ".join(str(value).split()).lower()

    @model_validator(mode="after")
    def _check_completeness(self) -> "Command":
        if self.is_complete and not is_command_complete(
            self.action, self.item, self.quantity, self.unit
        ):
            raise ValueError(
                f"{self.action.value} command marked complete but is missing required fields"
            )
        return self

    @classmethod
    def build(
        cls,
        action: Action,
        item: str | None = "",
        quantity: float | None = None,
        unit: str | None = "",
        confidence: float = 0.0,
    ) -> "Command":
        """Create a command whose ``is_complete`` flag follows the completeness rule."""
        command = cls(
            action=action,
            item=item,
            quantity=quantity,
            unit=unit,
            confidence=confidence,
        )
        if is_command_complete(command.action, command.item, command.quantity, command.unit):
            return command.model_copy(update={"is_complete": True})
        return command

    def replace(self, **changes: Any) -> "Command":
        """Return a copy with the given fields changed and completeness recomputed."""
        fields = {
            "action": self.action,
            "item": self.item,
            "quantity": self.quantity,
            "unit": self.unit,
            "confidence": self.confidence,
        }
        changes.pop("is_complete", None)
        fields.update(changes)
        return Command.build(**fields)

    def describe(self) -> str:
        """Short human readable form, e.g. "add 5 gallons of milk"."""
        return describe_fields(self.action, self.item, self.quantity, self.unit)


def describe_fields(action: Action, item: str, quantity: float | None, unit: str) -> str:
    """Describe a command's fields as a phrase."""
    if action == Action.UNDO:
        return f"undo {item}".strip()
    parts = [] if action == Action.UNKNOWN else [action.value]
    if action == Action.SET and item:
        parts.append(item)
        if quantity is not None:
            parts.append("to")
            parts.append(format_quantity(quantity))
            if unit:
                parts.append(unit)
        return " ".join(parts)
    if quantity is not None:
        parts.append(format_quantity(quantity))
        if unit:
            parts.append(unit)
        if item:
            parts.append("of")
    if item:
        parts.append(item)
    return " ".join(parts)


@dataclass
class PartialCommandState:
    """An incomplete command held while waiting for the rest of it."""

    action: Action = Action.UNKNOWN
    item: str = ""
    quantity: float | None = None
    unit: str = ""
    confidence: float = 0.0
    timestamp: float = 0.0

    @classmethod
    def from_command(cls, command: Command, timestamp: float) -> "PartialCommandState":
        """Start a partial from an incomplete command."""
        return cls(
            action=command.action,
            item=command.item,
            quantity=command.quantity,
            unit=command.unit,
            confidence=command.confidence,
            timestamp=timestamp,
        )

    def merge(self, command: Command, timestamp: float) -> "PartialCommandState":
        """Merge a new incomplete command into this partial.

        Fields present in the new command win; absent fields are inherited.
        An unknown action and empty strings count as absent, as does a
        quantity of None.

        Args:
            command: The newer incomplete command
            timestamp: Time of the merge

        Returns:
            A new PartialCommandState
        """
        merged = PartialCommandState(
            action=command.action if command.action != Action.UNKNOWN else self.action,
            item=command.item or self.item,
            quantity=command.quantity if command.quantity is not None else self.quantity,
            unit=command.unit or self.unit,
            timestamp=timestamp,
        )
        merged.confidence = merged.estimate_confidence()
        return merged

    def is_complete(self) -> bool:
        return is_command_complete(self.action, self.item, self.quantity, self.unit)

    def estimate_confidence(self) -> float:
        """Confidence for a partial based on which fields are known."""
        has_action = self.action != Action.UNKNOWN
        if has_action and self.item and self.quantity is not None:
            return 0.8
        if has_action and self.item:
            return 0.6
        if has_action:
            return 0.45
        return 0.3

    def is_stale(self, now: float, window: float) -> bool:
        return now - self.timestamp > window

    def to_command(self, confidence: float | None = None) -> Command:
        """Convert into a Command, recomputing completeness."""
        return Command.build(
            action=self.action,
            item=self.item,
            quantity=self.quantity,
            unit=self.unit,
            confidence=self.confidence if confidence is None else confidence,
        )


@dataclass(frozen=True)
class RecentCommand:
    """A command that was applied recently, used for relative references and undo."""

    action: Action
    item: str
    quantity: float | None
    unit: str
    timestamp: float

    @classmethod
    def from_command(cls, command: Command, timestamp: float) -> "RecentCommand":
        return cls(
            action=command.action,
            item=command.item,
            quantity=command.quantity,
            unit=command.unit,
            timestamp=timestamp,
        )

    def describe(self) -> str:
        return describe_fields(self.action, self.item, self.quantity, self.unit)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for prompts and logs."""
        return {
            "action": self.action.value,
            "item": self.item,
            "quantity": self.quantity,
            "unit": self.unit,
        }


@dataclass(frozen=True)
class ConversationTurn:
    """One utterance in the conversation history."""

    role: Role
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "text": self.text}


class ConfirmationDecision(BaseModel):
    """The confirmation requirement attached to a command."""

    model_config = ConfigDict(frozen=True)

    tier: ConfirmationTier
    risk_level: RiskLevel
    feedback_mode: FeedbackMode
    reason: str
    timeout_seconds: float | None = None
    suggested_correction: str | None = None


@dataclass
class PendingConfirmation:
    """A command waiting for the user to confirm or reject it."""

    token: str
    command: Command
    decision: ConfirmationDecision
    feedback: str | None
    created_at: datetime
    expires_at: datetime | None = None

    def is_expired(self) -> bool:
        """Check if this confirmation has expired."""
        if self.expires_at is None:
            return False
        return datetime.now(UTC) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for client payloads."""
        return {
            "token": self.token,
            "command": self.command.model_dump(mode="json"),
            "tier": self.decision.tier.value,
            "reason": self.decision.reason,
            "feedback": self.feedback,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class SessionState:
    """Snapshot of one session's conversational state."""

    current_state: SessionStateType = SessionStateType.NORMAL
    pending_confirmation: PendingConfirmation | None = None
    is_processing: bool = False
    conversation_history: list[ConversationTurn] = field(default_factory=list)
    recent_commands: list[RecentCommand] = field(default_factory=list)

    def copy(self) -> "SessionState":
        """Copy with independent history lists (turns and commands are immutable)."""
        return SessionState(
            current_state=self.current_state,
            pending_confirmation=self.pending_confirmation,
            is_processing=self.is_processing,
            conversation_history=list(self.conversation_history),
            recent_commands=list(self.recent_commands),
        )
