"""Tests for pending confirmation tracking."""

import asyncio
from datetime import UTC, datetime

import pytest

from stockcount.commands.pending_confirmations import PendingConfirmationManager, PendingPolicy
from stockcount.errors import PendingConfirmationBusyError
from stockcount.models import (
    Action,
    Command,
    ConfirmationDecision,
    ConfirmationTier,
    FeedbackMode,
    PendingConfirmation,
    RiskLevel,
)


def _decision(timeout: float | None = None) -> ConfirmationDecision:
    return ConfirmationDecision(
        tier=ConfirmationTier.VISUAL,
        risk_level=RiskLevel.MEDIUM,
        feedback_mode=FeedbackMode.BRIEF,
        reason="Low recognition confidence",
        timeout_seconds=timeout,
    )


def _command(item: str = "milk") -> Command:
    return Command.build(Action.ADD, item, 5, "gallons", 0.6)


@pytest.fixture
def manager() -> PendingConfirmationManager:
    return PendingConfirmationManager()


class TestOffer:
    """Test creating pending confirmations."""

    def test_offer_creates_token(self, manager: PendingConfirmationManager) -> None:
        pending = manager.offer(_command(), _decision(), "Add 5 gallons of milk?")

        assert len(pending.token) > 20
        assert pending.feedback == "Add 5 gallons of milk?"
        assert pending.expires_at is None
        assert manager.current is pending

    def test_expiry_from_timeout(self, manager: PendingConfirmationManager) -> None:
        pending = manager.offer(_command(), _decision(timeout=10))

        remaining = (pending.expires_at - datetime.now(UTC)).total_seconds()
        assert 9 < remaining <= 10
        assert pending.is_expired() is False

    def test_replace_policy(self, manager: PendingConfirmationManager) -> None:
        first = manager.offer(_command("milk"), _decision())
        second = manager.offer(_command("tea"), _decision())

        assert manager.current is second
        assert manager.get(first.token) is None

    def test_queue_policy(self) -> None:
        manager = PendingConfirmationManager(policy=PendingPolicy.QUEUE)
        first = manager.offer(_command("milk"), _decision())
        second = manager.offer(_command("tea"), _decision())

        assert manager.current is first
        assert manager.queued == [second]

        manager.confirm(first.token)
        assert manager.current is second
        assert manager.queued == []

    def test_reject_policy(self) -> None:
        manager = PendingConfirmationManager(policy=PendingPolicy.REJECT)
        manager.offer(_command("milk"), _decision())

        with pytest.raises(PendingConfirmationBusyError):
            manager.offer(_command("tea"), _decision())


class TestResolve:
    """Test confirm and reject."""

    def test_confirm_with_token(self, manager: PendingConfirmationManager) -> None:
        pending = manager.offer(_command(), _decision())

        assert manager.confirm(pending.token) is pending
        assert manager.current is None

    def test_confirm_wrong_token(self, manager: PendingConfirmationManager) -> None:
        manager.offer(_command(), _decision())

        assert manager.confirm("not-the-token") is None
        assert manager.current is not None

    def test_reject_without_token(self, manager: PendingConfirmationManager) -> None:
        pending = manager.offer(_command(), _decision())

        assert manager.reject() is pending
        assert manager.current is None

    def test_resolve_when_empty(self, manager: PendingConfirmationManager) -> None:
        assert manager.confirm() is None
        assert manager.reject() is None


class TestTimeouts:
    """Test the advisory confirmation timeout."""

    @pytest.mark.asyncio
    async def test_timeout_clears_and_notifies(self) -> None:
        expired: list[PendingConfirmation] = []
        manager = PendingConfirmationManager(on_timeout=expired.append)
        pending = manager.offer(_command(), _decision(timeout=0.05))

        await asyncio.sleep(0.15)

        assert expired == [pending]
        assert manager.current is None

    @pytest.mark.asyncio
    async def test_confirm_cancels_timer(self) -> None:
        expired: list[PendingConfirmation] = []
        manager = PendingConfirmationManager(on_timeout=expired.append)
        pending = manager.offer(_command(), _decision(timeout=0.05))

        manager.confirm(pending.token)
        await asyncio.sleep(0.15)

        assert expired == []

    @pytest.mark.asyncio
    async def test_timeout_promotes_queued(self) -> None:
        expired: list[PendingConfirmation] = []
        manager = PendingConfirmationManager(policy=PendingPolicy.QUEUE, on_timeout=expired.append)
        first = manager.offer(_command("milk"), _decision(timeout=0.05))
        second = manager.offer(_command("tea"), _decision())

        await asyncio.sleep(0.15)

        assert expired == [first]
        assert manager.current is second

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self) -> None:
        expired: list[PendingConfirmation] = []
        manager = PendingConfirmationManager(policy=PendingPolicy.QUEUE, on_timeout=expired.append)
        manager.offer(_command("milk"), _decision(timeout=0.05))
        manager.offer(_command("tea"), _decision())

        manager.close()
        await asyncio.sleep(0.15)

        assert expired == []
        assert manager.current is None
        assert manager.queued == []

    @pytest.mark.asyncio
    async def test_hold_stops_the_clock(self) -> None:
        expired: list[PendingConfirmation] = []
        manager = PendingConfirmationManager(on_timeout=expired.append)
        pending = manager.offer(_command(), _decision(timeout=0.05))

        assert manager.hold(pending.token) is pending
        await asyncio.sleep(0.15)

        assert expired == []
        assert manager.current is pending
        assert manager.confirm(pending.token) is pending

    @pytest.mark.asyncio
    async def test_release_restarts_the_clock(self) -> None:
        expired: list[PendingConfirmation] = []
        manager = PendingConfirmationManager(on_timeout=expired.append)
        pending = manager.offer(_command(), _decision(timeout=0.05))

        manager.hold()
        manager.hold()
        manager.release()
        await asyncio.sleep(0.1)
        assert expired == []

        manager.release()
        await asyncio.sleep(0.1)

        assert expired == [pending]
        assert manager.current is None

    def test_hold_wrong_token(self, manager: PendingConfirmationManager) -> None:
        manager.offer(_command(), _decision(timeout=10))

        assert manager.hold("not-the-token") is None
