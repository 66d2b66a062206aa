"""Exception types raised across the command pipeline."""


class StockcountError(Exception):
    """Base class for all stockcount errors."""


class ExtractionError(StockcountError):
    """The delegated extraction model failed or returned unusable output."""


class ClarificationNeededError(StockcountError):
    """A command could not be applied without asking the user which item they meant.

    Attributes:
        candidates: Item names the user may have been referring to
    """

    def __init__(self, message: str, candidates: list[str] | None = None) -> None:
        super().__init__(message)
        self.candidates = list(candidates or [])


class PendingConfirmationBusyError(StockcountError):
    """A confirmation is already outstanding and the session rejects new ones."""


class InvalidTransitionError(StockcountError):
    """A session state change that the state machine does not allow."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition session state from {current} to {target}")
        self.current = current
        self.target = target


class UnitConversionError(StockcountError):
    """Two units cannot be converted into each other."""
