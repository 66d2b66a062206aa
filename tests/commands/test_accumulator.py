"""Tests for multi-turn command accumulation."""

import pytest

from stockcount.commands.accumulator import CommandAccumulator, reconcile
from stockcount.commands.rule_extractor import RuleBasedCommandExtractor
from stockcount.models import Action, Command, PartialCommandState


class FakeClock:
    """Controllable monotonic clock."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def accumulator(clock: FakeClock) -> CommandAccumulator:
    """Create an accumulator with a 5 second window and a fake clock."""
    return CommandAccumulator(context_window=5.0, clock=clock)


class TestReconcile:
    """Test the pure reconcile function."""

    def test_complete_results_pass_through(self) -> None:
        command = Command.build(Action.ADD, "milk", 5, "gallons", 0.95)

        result = reconcile([command], None, now=10.0)

        assert result.emitted == [command]
        assert result.partial is None

    def test_incomplete_result_starts_partial(self) -> None:
        command = Command.build(Action.SET, "", None, "", 0.6)

        result = reconcile([command], None, now=10.0)

        assert result.partial is not None
        assert result.partial.action == Action.SET
        assert result.partial.timestamp == 10.0
        # The still-incomplete partial is surfaced as well
        assert len(result.emitted) == 1
        assert result.emitted[0].is_complete is False

    def test_merge_completes_command(self) -> None:
        prior = PartialCommandState(action=Action.SET, confidence=0.6, timestamp=10.0)
        continuation = Command.build(Action.UNKNOWN, "whole milk", 30, "gallons", 0.5)

        result = reconcile([continuation], prior, now=12.0)

        assert len(result.emitted) == 1
        merged = result.emitted[0]
        assert merged.action == Action.SET
        assert merged.item == "whole milk"
        assert merged.quantity == 30
        assert merged.unit == "gallons"
        assert merged.is_complete is True
        assert merged.confidence == pytest.approx(0.95)
        assert result.partial is None

    def test_stale_partial_is_discarded(self) -> None:
        prior = PartialCommandState(action=Action.SET, timestamp=10.0)
        continuation = Command.build(Action.UNKNOWN, "whole milk", 30, "gallons", 0.5)

        result = reconcile([continuation], prior, now=15.5, context_window=5.0)

        # A fresh partial, not a merge with the stale set
        assert result.partial is not None
        assert result.partial.action == Action.UNKNOWN
        assert result.emitted[0].is_complete is False

    def test_partial_at_exact_window_is_merged(self) -> None:
        prior = PartialCommandState(action=Action.SET, timestamp=10.0)
        continuation = Command.build(Action.UNKNOWN, "whole milk", 30, "gallons", 0.5)

        result = reconcile([continuation], prior, now=15.0, context_window=5.0)

        assert result.emitted[0].is_complete is True

    def test_undo_leaves_partial_untouched(self) -> None:
        prior = PartialCommandState(action=Action.ADD, quantity=20, unit="gallons", timestamp=10.0)
        undo = Command.build(Action.UNDO, "add 5 gallons of milk", confidence=0.95)

        result = reconcile([undo], prior, now=11.0)

        assert result.emitted == [undo]
        assert result.partial == prior


class TestCommandAccumulator:
    """Test the stateful accumulator."""

    def test_set_then_item_scenario(self, accumulator: CommandAccumulator) -> None:
        """Set with no item, then item/quantity/unit, yields one complete set."""
        accumulator.process([Command.build(Action.SET, confidence=0.6)])

        emitted = accumulator.process(
            [Command.build(Action.UNKNOWN, "whole milk", 30, "gallons", 0.5)]
        )

        assert len(emitted) == 1
        assert emitted[0].action == Action.SET
        assert emitted[0].item == "whole milk"
        assert emitted[0].is_complete is True
        assert accumulator.partial is None

    def test_window_boundary(self, accumulator: CommandAccumulator, clock: FakeClock) -> None:
        accumulator.process([Command.build(Action.SET, confidence=0.6)])
        clock.advance(5.01)

        emitted = accumulator.process(
            [Command.build(Action.UNKNOWN, "whole milk", 30, "gallons", 0.5)]
        )

        assert emitted[0].is_complete is False
        assert accumulator.partial.action == Action.UNKNOWN

    def test_partial_confidence_recomputed(self, accumulator: CommandAccumulator) -> None:
        accumulator.process([Command.build(Action.SET, confidence=0.6)])

        accumulator.process([Command.build(Action.UNKNOWN, "milk", confidence=0.5)])

        assert accumulator.partial.item == "milk"
        assert accumulator.partial.confidence == pytest.approx(0.6)

    def test_clear(self, accumulator: CommandAccumulator) -> None:
        accumulator.process([Command.build(Action.SET, confidence=0.6)])
        accumulator.clear()

        assert accumulator.partial is None

    def test_split_utterance_round_trip(self, accumulator: CommandAccumulator) -> None:
        """Two fragments within the window equal the unsplit utterance."""
        extractor = RuleBasedCommandExtractor()

        first = accumulator.process(extractor.parse("add 20 gallons"))
        second = accumulator.process(extractor.parse("of milk"))

        assert first[0].is_complete is False
        assert second == extractor.parse("add 20 gallons of milk")

    def test_undo_does_not_disturb_partial(self, accumulator: CommandAccumulator) -> None:
        extractor = RuleBasedCommandExtractor()
        accumulator.process(extractor.parse("add 20 gallons"))
        partial_before = accumulator.partial

        emitted = accumulator.process(extractor.parse("undo that"))

        assert [c.action for c in emitted] == [Action.UNDO]
        assert emitted[0].is_complete is True
        assert accumulator.partial == partial_before
