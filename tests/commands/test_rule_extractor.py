"""Tests for the rule-based command extractor."""

import pytest

from stockcount.commands.rule_extractor import (
    RuleBasedCommandExtractor,
    clean_item,
    normalize_utterance,
    replace_number_words,
    split_clauses,
)
from stockcount.models import Action, ConversationTurn, RecentCommand, Role


@pytest.fixture
def extractor() -> RuleBasedCommandExtractor:
    """Create a rule-based extractor instance."""
    return RuleBasedCommandExtractor()


class TestNormalization:
    """Test text normalization helpers."""

    def test_number_words(self) -> None:
        assert replace_number_words("add twenty five gallons") == "add 25 gallons"
        assert replace_number_words("three hundred cups") == "300 cups"
        assert replace_number_words("seven") == "7"

    def test_articles_and_dozen(self) -> None:
        assert replace_number_words("add a gallon of milk") == "add 1 gallon of milk"
        assert replace_number_words("add a dozen bagels") == "add 12 bagels"
        assert replace_number_words("add half a gallon of cream") == "add 0.5 gallon of cream"

    def test_normalize_utterance(self) -> None:
        assert normalize_utterance("  Add FIVE Gallons of Milk. ") == "add 5 gallons of milk"
        assert normalize_utterance("") == ""

    def test_clean_item(self) -> None:
        assert clean_item("the oat milk") == "oat milk"
        assert clean_item("some sugar to the inventory") == "sugar"
        assert clean_item("") == ""

    def test_split_clauses_keeps_compound_items(self) -> None:
        clauses = split_clauses("add 2 bags of salt and pepper")
        assert clauses == ["add 2 bags of salt and pepper"]

    def test_split_clauses_on_separators(self) -> None:
        clauses = split_clauses("add 2 bags of sugar, remove 1 box of tea then add 3 cans of soup")
        assert clauses == ["add 2 bags of sugar", "remove 1 box of tea", "add 3 cans of soup"]


class TestExplicitCommands:
    """Test fully specified commands."""

    def test_add_milk(self, extractor: RuleBasedCommandExtractor) -> None:
        """A fully specified add is one complete command."""
        commands = extractor.parse("add 5 gallons of milk")

        assert len(commands) == 1
        command = commands[0]
        assert command.action == Action.ADD
        assert command.item == "milk"
        assert command.quantity == 5
        assert command.unit == "gallons"
        assert command.confidence == pytest.approx(0.95)
        assert command.is_complete is True

    def test_remove_with_courtesy_prefix(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("Can you please remove 3 bags of sugar?")

        assert len(commands) == 1
        assert commands[0].action == Action.REMOVE
        assert commands[0].item == "sugar"
        assert commands[0].quantity == 3
        assert commands[0].unit == "bags"

    def test_unit_alias_is_normalized(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("add 2 lbs of coffee")

        assert commands[0].unit == "pounds"
        assert commands[0].item == "coffee"

    def test_number_words_in_command(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("add twenty five gallons of oat milk")

        assert commands[0].quantity == 25
        assert commands[0].item == "oat milk"

    def test_set_to(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("set coffee to 40 sleeves")

        assert len(commands) == 1
        assert commands[0].action == Action.SET
        assert commands[0].item == "coffee"
        assert commands[0].quantity == 40
        assert commands[0].unit == "sleeves"
        assert commands[0].is_complete is True

    def test_attribute_qualified_item(self, extractor: RuleBasedCommandExtractor) -> None:
        """A number inside the item name does not split it."""
        commands = extractor.parse("add 3 12 ounce paper cups")

        assert len(commands) == 1
        assert commands[0].quantity == 3
        assert commands[0].item == "12 ounce paper cups"
        assert commands[0].unit == "sleeves"
        assert commands[0].confidence == pytest.approx(0.85)

    def test_unknown_word_defaults_unit(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("add a dozen bagels")

        assert commands[0].action == Action.ADD
        assert commands[0].item == "bagels"
        assert commands[0].quantity == 12
        assert commands[0].unit == "pieces"

    def test_compound_item_name(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("add 2 bags of salt and pepper")

        assert len(commands) == 1
        assert commands[0].item == "salt and pepper"

    def test_bare_noun_list_stays_one_item(self, extractor: RuleBasedCommandExtractor) -> None:
        # Without a number or verb per noun, "and" reads as part of the name
        commands = extractor.parse("add milk and eggs")

        assert len(commands) == 1
        assert commands[0].action == Action.ADD
        assert commands[0].item == "milk and eggs"

    def test_noun_list_with_quantities_splits(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("add 2 gallons of milk and 12 eggs")

        assert [c.item for c in commands] == ["milk", "eggs"]


class TestInventoryLevels:
    """Test inventory level statements, which become set commands."""

    def test_two_set_commands_in_order(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("We have 30 gallons of whole milk and 20 boxes of tea")

        assert [c.action for c in commands] == [Action.SET, Action.SET]
        assert [c.item for c in commands] == ["whole milk", "tea"]
        assert [c.quantity for c in commands] == [30, 20]
        assert [c.unit for c in commands] == ["gallons", "boxes"]
        assert all(c.is_complete for c in commands)

    def test_there_are(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("there are 4 cases of oat milk")

        assert commands[0].action == Action.SET
        assert commands[0].item == "oat milk"
        assert commands[0].unit == "cases"

    def test_bare_quantity_is_set(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("30 gallons of milk")

        assert commands[0].action == Action.SET
        assert commands[0].is_complete is True

    def test_inventory_prefix_keeps_explicit_verb(
        self, extractor: RuleBasedCommandExtractor
    ) -> None:
        commands = extractor.parse("we used 5 gallons of milk")

        assert commands[0].action == Action.REMOVE

    def test_clause_inherits_previous_action(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("add 5 gallons of milk and 3 boxes of tea")

        assert [c.action for c in commands] == [Action.ADD, Action.ADD]
        assert commands[1].item == "tea"


class TestIncompleteCommands:
    """Test fragments that need a later utterance."""

    def test_set_without_quantity(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("set the inventory of whole milk to")

        assert len(commands) == 1
        assert commands[0].action == Action.SET
        assert commands[0].item == "whole milk"
        assert commands[0].quantity is None
        assert commands[0].is_complete is False
        assert commands[0].confidence == pytest.approx(0.6)

    def test_quantity_continuation(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("30 gallons")

        assert commands[0].action == Action.UNKNOWN
        assert commands[0].quantity == 30
        assert commands[0].unit == "gallons"
        assert commands[0].is_complete is False

    def test_add_quantity_without_item(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("add 20 gallons")

        assert commands[0].action == Action.ADD
        assert commands[0].item == ""
        assert commands[0].quantity == 20
        assert commands[0].is_complete is False

    def test_item_continuation(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("of milk")

        assert commands[0].action == Action.UNKNOWN
        assert commands[0].item == "milk"
        assert commands[0].confidence == pytest.approx(0.5)

    def test_verb_and_item_only(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("add milk")

        assert commands[0].action == Action.ADD
        assert commands[0].item == "milk"
        assert commands[0].quantity is None
        assert commands[0].confidence == pytest.approx(0.8)
        # Add needs only an item to be complete
        assert commands[0].is_complete is True


class TestUndo:
    """Test undo handling."""

    def test_undo_references_recent_command(self, extractor: RuleBasedCommandExtractor) -> None:
        recent = [RecentCommand(Action.ADD, "milk", 5, "gallons", timestamp=1.0)]

        commands = extractor.parse("undo that", recent_commands=recent)

        assert len(commands) == 1
        assert commands[0].action == Action.UNDO
        assert commands[0].item == "add 5 gallons of milk"
        assert commands[0].confidence == pytest.approx(0.95)
        assert commands[0].is_complete is True

    def test_undo_explicit_reference(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("undo the coffee command")

        assert commands[0].action == Action.UNDO
        assert commands[0].item == "coffee"

    def test_undo_without_context(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("revert the last one")

        assert len(commands) == 1
        assert commands[0].action == Action.UNDO
        assert commands[0].item == ""
        assert commands[0].is_complete is True

    def test_only_one_undo_per_utterance(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("undo that, undo, scratch that")

        assert [c.action for c in commands] == [Action.UNDO]

    def test_undo_alongside_command(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("undo that and add 2 bags of sugar")

        assert [c.action for c in commands] == [Action.UNDO, Action.ADD]

    def test_undo_targets_command_from_same_utterance(
        self, extractor: RuleBasedCommandExtractor
    ) -> None:
        recent = [RecentCommand(Action.ADD, "oat milk", 2, "cartons", timestamp=1.0)]

        commands = extractor.parse("add 5 gallons of milk, undo that", recent_commands=recent)

        assert [c.action for c in commands] == [Action.ADD, Action.UNDO]
        assert commands[1].item == "add 5 gallons of milk"


class TestRelativeReferences:
    """Test "more", "another" and "the same" resolution."""

    def test_more_from_recent_command(self, extractor: RuleBasedCommandExtractor) -> None:
        recent = [RecentCommand(Action.ADD, "milk", 5, "gallons", timestamp=1.0)]

        commands = extractor.parse("add 5 more", recent_commands=recent)

        assert len(commands) == 1
        assert commands[0].action == Action.ADD
        assert commands[0].item == "milk"
        assert commands[0].quantity == 5
        assert commands[0].unit == "gallons"
        assert commands[0].confidence == pytest.approx(0.9)

    def test_spoken_unit_overrides_reference(self, extractor: RuleBasedCommandExtractor) -> None:
        recent = [RecentCommand(Action.ADD, "tea", 2, "cases", timestamp=1.0)]

        commands = extractor.parse("add 10 more boxes", recent_commands=recent)

        assert commands[0].item == "tea"
        assert commands[0].unit == "boxes"
        assert commands[0].quantity == 10

    def test_more_of_the_same_without_verb(self, extractor: RuleBasedCommandExtractor) -> None:
        recent = [RecentCommand(Action.REMOVE, "sugar", 1, "bags", timestamp=1.0)]

        commands = extractor.parse("3 more of the same", recent_commands=recent)

        assert commands[0].action == Action.REMOVE
        assert commands[0].item == "sugar"
        assert commands[0].quantity == 3

    def test_more_from_conversation_history(self, extractor: RuleBasedCommandExtractor) -> None:
        history = [ConversationTurn(Role.USER, "Add 5 gallons of milk")]

        commands = extractor.parse("add 5 more", conversation_history=history)

        assert commands[0].item == "milk"
        assert commands[0].unit == "gallons"
        assert commands[0].confidence == pytest.approx(0.9)

    def test_extra_as_item_adjective_is_not_relative(
        self, extractor: RuleBasedCommandExtractor
    ) -> None:
        recent = [RecentCommand(Action.ADD, "oat milk", 2, "cartons", timestamp=1.0)]

        commands = extractor.parse("add 5 extra large cups", recent_commands=recent)

        assert len(commands) == 1
        assert commands[0].action == Action.ADD
        assert commands[0].item == "extra large cups"
        assert commands[0].quantity == 5

    def test_same_with_named_item_uses_that_item(
        self, extractor: RuleBasedCommandExtractor
    ) -> None:
        recent = [RecentCommand(Action.ADD, "oat milk", 2, "cartons", timestamp=1.0)]

        commands = extractor.parse("add 3 cans of the same soup", recent_commands=recent)

        assert len(commands) == 1
        assert commands[0].action == Action.ADD
        assert commands[0].item == "soup"
        assert commands[0].quantity == 3
        assert commands[0].unit == "cans"

    def test_more_with_unit_of_named_item(self, extractor: RuleBasedCommandExtractor) -> None:
        recent = [RecentCommand(Action.ADD, "oat milk", 2, "cartons", timestamp=1.0)]

        commands = extractor.parse("add 4 more gallons of whole milk", recent_commands=recent)

        assert commands[0].item == "whole milk"
        assert commands[0].quantity == 4
        assert commands[0].unit == "gallons"

    def test_more_without_context_is_partial(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("add 5 more")

        assert commands[0].action == Action.ADD
        assert commands[0].item == ""
        assert commands[0].quantity == 5
        assert commands[0].is_complete is False


class TestChatter:
    """Test utterances that are not commands."""

    def test_long_chatter_is_dropped(self, extractor: RuleBasedCommandExtractor) -> None:
        assert extractor.parse("the weather is really nice today") == []

    def test_short_fragment_is_unknown(self, extractor: RuleBasedCommandExtractor) -> None:
        commands = extractor.parse("hello there")

        assert len(commands) == 1
        assert commands[0].action == Action.UNKNOWN
        assert commands[0].confidence == pytest.approx(0.3)
        assert commands[0].is_complete is False

    def test_empty_utterance(self, extractor: RuleBasedCommandExtractor) -> None:
        assert extractor.parse("   ") == []


class TestDeterminism:
    """Test that parsing is repeatable."""

    def test_same_utterance_twice(self, extractor: RuleBasedCommandExtractor) -> None:
        utterance = "we have 30 gallons of whole milk, add 2 bags of sugar and undo that"

        assert extractor.parse(utterance) == extractor.parse(utterance)

    @pytest.mark.asyncio
    async def test_extract_matches_parse(self, extractor: RuleBasedCommandExtractor) -> None:
        assert await extractor.extract("add 5 gallons of milk") == extractor.parse(
            "add 5 gallons of milk"
        )
