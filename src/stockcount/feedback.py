"""Spoken and on-screen feedback text for commands."""

from stockcount.models import (
    Action,
    Command,
    ConfirmationDecision,
    FeedbackMode,
    format_quantity,
)

_PAST_TENSE = {
    Action.ADD: "Added",
    Action.REMOVE: "Removed",
}


def _amount_phrase(command: Command) -> str:
    """Describe the amount, e.g. "5 gallons of milk", "milk" or "5 gallons"."""
    parts = []
    if command.quantity is not None:
        parts.append(format_quantity(command.quantity))
        if command.unit:
            parts.append(command.unit)
        if command.item:
            parts.append("of")
    if command.item:
        parts.append(command.item)
    return " ".join(parts)


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]


def _action_phrase(command: Command) -> str:
    if command.action == Action.UNDO:
        return f"undo {command.item or 'the last command'}"
    if command.action == Action.SET:
        amount = format_quantity(command.quantity)
        if command.unit:
            amount = f"{amount} {command.unit}"
        return f"set {command.item} to {amount}"
    return f"{command.action.value} {_amount_phrase(command)}"


class FeedbackGenerator:
    """Builds the text the user hears or sees for each pipeline event."""

    def __init__(self, enabled: bool = True) -> None:
        """Initialize the generator.

        Args:
            enabled: When False every method returns None
        """
        self.enabled = enabled

    def command_feedback(self, command: Command, mode: FeedbackMode) -> str | None:
        """Feedback for a command awaiting or receiving confirmation.

        Args:
            command: The command
            mode: Verbosity chosen by the confirmation policy

        Returns:
            None for silent mode, a short question for brief mode, and a full
            sentence for detailed mode
        """
        if not self.enabled or mode == FeedbackMode.SILENT:
            return None
        phrase = _action_phrase(command)
        if mode == FeedbackMode.BRIEF:
            return f"{_capitalize(phrase)}?"
        return f"I'll {phrase}. Is that correct?"

    def confirmation_prompt(self, command: Command, decision: ConfirmationDecision) -> str | None:
        """Command feedback followed by any suggested correction."""
        text = self.command_feedback(command, decision.feedback_mode)
        if text is None or not decision.suggested_correction:
            return text
        return f"{text} {decision.suggested_correction}"

    def success_feedback(self, command: Command) -> str | None:
        if not self.enabled:
            return None
        if command.action == Action.UNDO:
            return f"Undid {command.item or 'the last command'}"
        if command.action == Action.SET:
            return _capitalize(_action_phrase(command))
        return f"{_PAST_TENSE.get(command.action, 'Updated')} {_amount_phrase(command)}"

    def incomplete_feedback(self, command: Command) -> str | None:
        """Ask for whatever the partial command is still missing."""
        if not self.enabled:
            return None
        if command.action == Action.UNKNOWN:
            subject = _amount_phrase(command) or "that"
            return f"Should I add, remove or set {subject}?"
        if not command.item:
            amount = _amount_phrase(command)
            suffix = f" {amount} of" if amount else ""
            return f"What item should I {command.action.value}{suffix}?"
        if command.quantity is None:
            return f"How much {command.item}?"
        return f"What unit is {format_quantity(command.quantity)} {command.item} in?"

    def clarification_feedback(self, message: str, candidates: list[str]) -> str | None:
        if not self.enabled:
            return None
        if not candidates:
            return message
        if len(candidates) == 1:
            return f"{message} Did you mean {candidates[0]}?"
        options = ", ".join(candidates[:-1]) + f" or {candidates[-1]}"
        return f"{message} Did you mean {options}?"

    def correction_feedback(self, command: Command) -> str | None:
        if not self.enabled:
            return None
        return f"Got it, {_action_phrase(command)}."

    def rejection_feedback(self, command: Command) -> str | None:
        if not self.enabled:
            return None
        return f"Okay, I won't {_action_phrase(command)}."

    def timeout_feedback(self, command: Command) -> str | None:
        if not self.enabled:
            return None
        return f"No answer, so I did not {_action_phrase(command)}."

    def error_feedback(self, message: str) -> str | None:
        if not self.enabled:
            return None
        return f"Error: {message}"
