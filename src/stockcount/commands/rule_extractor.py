"""Deterministic, pattern-based command extraction."""

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from stockcount.models import Action, Command, ConversationTurn, RecentCommand, Role
from stockcount.units import UNIT_ALIASES, default_unit_for_item, is_known_unit, normalize_unit

logger = logging.getLogger(__name__)

CONFIDENCE_EXPLICIT = 0.95
CONFIDENCE_DEFAULT_UNIT = 0.85
CONFIDENCE_RELATIVE = 0.9
CONFIDENCE_ACTION_ITEM = 0.8
CONFIDENCE_PARTIAL = 0.6
CONFIDENCE_UNKNOWN_CONTENT = 0.5
CONFIDENCE_UNRECOGNIZED = 0.3

MAX_FALLBACK_WORDS = 3

_SMALL_NUMBERS = {
    "zero": 0,
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
    "thirteen": 13,
    "fourteen": 14,
    "fifteen": 15,
    "sixteen": 16,
    "seventeen": 17,
    "eighteen": 18,
    "nineteen": 19,
}
_TENS = {
    "twenty": 20,
    "thirty": 30,
    "forty": 40,
    "fifty": 50,
    "sixty": 60,
    "seventy": 70,
    "eighty": 80,
    "ninety": 90,
}
_NUMBER_WORDS = {**_SMALL_NUMBERS, **_TENS, "hundred": 100, "thousand": 1000}

_NUMBER_WORD_ALT = "|".join(sorted(_NUMBER_WORDS, key=len, reverse=True))
_NUMBER_WORD_RUN = re.compile(
    rf"\b(?:{_NUMBER_WORD_ALT})(?:(?:\s+|-)(?:{_NUMBER_WORD_ALT}))*\b"
)
_UNIT_ALT = "|".join(sorted(UNIT_ALIASES, key=len, reverse=True))
_ARTICLE_BEFORE_UNIT = re.compile(rf"\b(?:a|an|one single)\s+(?=(?:{_UNIT_ALT})\b)")
_A_DOZEN = re.compile(r"\ba\s+dozen\b")
_HALF_A = re.compile(rf"\bhalf\s+(?:a\s+|an\s+)?(?=(?:{_UNIT_ALT})\b)")

NUM = r"\d+(?:\.\d+)?"

VERBS: dict[Action, list[str]] = {
    Action.ADD: [
        "add",
        "added",
        "adding",
        "put in",
        "put",
        "plus",
        "restock",
        "restocked",
        "receive",
        "received",
        "increase",
    ],
    Action.REMOVE: [
        "remove",
        "removed",
        "removing",
        "take out",
        "took out",
        "take away",
        "take",
        "took",
        "subtract",
        "minus",
        "use",
        "used",
        "sold",
        "sell",
        "waste",
        "wasted",
        "toss",
        "tossed",
        "deduct",
        "decrease",
    ],
    Action.SET: ["set", "update", "change", "make", "count"],
}

_VERB_TO_ACTION = {verb: action for action, verbs in VERBS.items() for verb in verbs}
_VERB_ALT = "|".join(sorted(_VERB_TO_ACTION, key=len, reverse=True))
_SET_VERB_ALT = "|".join(VERBS[Action.SET])

_LEADING_FILLER = re.compile(
    r"^(?:(?:ok(?:ay)?|so|um+|uh+|hey|well|alright|please|and|also|then|now)\b[,\s]*)+"
)
_COURTESY_PREFIX = re.compile(
    r"^(?:can you|could you|would you|will you|i need to|i want to|we need to|"
    r"i'd like to|i would like to|let's|lets|go ahead and|you can|just)\s+"
)
_TRAILING_FILLER = re.compile(r"(?:[,\s]+(?:please|thanks|thank you|too|as well|now))+$")
_TRAILING_DESTINATION = re.compile(
    r"\s+(?:to|from|in|into|on)\s+(?:the\s+)?(?:inventory|stock|list|count|system)$"
)
_INVENTORY_LEVEL_PREFIX = re.compile(
    r"^(?:we(?:'ve| have)\s+(?:got\s+)?|we got\s+|there(?:'s| is| are)\s+|"
    r"i (?:have|count|counted)\s+|(?:we're|we are) at\s+)"
)
_LEADING_ARTICLE = re.compile(r"^(?:the|some|a|an|of|our|my)\s+")
_TRAILING_CONNECTOR = re.compile(r"(?:^|\s+)(?:of|the|to|for)$")

_UNDO_PHRASE = re.compile(
    r"\b(?:undo|revert|scratch that|take that back|never mind that|cancel that)\b"
)
_UNDO_REFERENCE = re.compile(r"\b(?:undo|revert)\s+(?P<ref>.+)$")
_UNDO_FILLER_WORDS = {
    "the",
    "that",
    "it",
    "this",
    "last",
    "previous",
    "command",
    "entry",
    "one",
    "1",
    "my",
    "please",
    "change",
    "update",
}

# Relative references to a previous command
_RELATIVE_QTY_MORE = re.compile(
    rf"\b(?P<qty>{NUM})\s+(?:more|additional|extra)\b(?P<tail>.*)$"
)
_RELATIVE_ANOTHER = re.compile(rf"\banother(?:\s+(?P<qty>{NUM}))?\b")
_RELATIVE_SAME = re.compile(r"\bthe\s+same\b")
_RELATIVE_OF_REFERENCE = re.compile(r"\bof\s+(?:the\s+)?(?:same|that|those|it|them)$")
_RELATIVE_EXPLICIT_ITEM = re.compile(
    r"\bof\s+(?:the\s+)?(?:same\s+)?(?P<item>[a-z][a-z0-9 '\-]*)$"
)
_HISTORY_COMMAND = re.compile(rf"\b(add|remove|set)\s+({NUM})\s+(\w+)\s+of\s+([^,.;!?]+)")

_CLAUSE_SEPARATOR = re.compile(r"(\s*(?:[,;]|\band then\b|\bthen\b|\band\b)\s*)")
_HAS_NUMBER = re.compile(r"\d")
_HAS_VERB = re.compile(rf"^(?:{_VERB_ALT})\b")
_HAS_RELATIVE = re.compile(r"\b(?:more|another|additional|extra|same)\b")
_SUBJECT_BEFORE_VERB = re.compile(rf"^(?:we|i|you)\s+(?:just\s+)?(?=(?:{_VERB_ALT})\b)")


def _relative_quantity(clause: str) -> re.Match[str] | None:
    """Match "N more" only when the words after it still point back at a previous command.

    "5 more", "3 more of the same" and "10 more boxes" qualify. In "5 extra
    large cups" the word is part of the item name.
    """
    match = _RELATIVE_QTY_MORE.search(clause)
    if match is None:
        return None
    tail = match.group("tail").split()
    if not tail or tail[0] == "of":
        return match
    if is_known_unit(tail[0]) and (len(tail) == 1 or tail[1] == "of"):
        return match
    return None


def replace_number_words(text: str) -> str:
    """Rewrite spoken numbers as digits ("twenty five gallons" -> "25 gallons").

    Also maps "a"/"an" directly before a unit to 1, "a dozen" to 12 and
    "half a" before a unit to 0.5.
    """
    text = _A_DOZEN.sub("12", text)
    text = _HALF_A.sub("0.5 ", text)
    text = _ARTICLE_BEFORE_UNIT.sub("1 ", text)
    return _NUMBER_WORD_RUN.sub(lambda m: str(_words_to_number(m.group(0))), text)


def _words_to_number(phrase: str) -> int:
    total = 0
    current = 0
    for word in re.split(r"[\s-]+", phrase):
        if word in _SMALL_NUMBERS:
            current += _SMALL_NUMBERS[word]
        elif word in _TENS:
            current += _TENS[word]
        elif word == "hundred":
            current = max(current, 1) * 100
        elif word == "thousand":
            total += max(current, 1) * 1000
            current = 0
    return total + current


def normalize_utterance(text: str) -> str:
    """Lower-case, collapse whitespace, strip filler, and convert spoken numbers."""
    normalized = " ".join((text or "").lower().split())
    normalized = normalized.replace("’", "'")
    normalized = re.sub(r"[.!?]+$", "", normalized).strip()
    return replace_number_words(normalized)


def split_clauses(text: str) -> list[str]:
    """Split an utterance into command clauses.

    Splits on commas, semicolons, "and" and "then". A piece carrying no
    number, verb, undo phrase or relative term is joined back onto the
    previous clause so compound item names ("salt and pepper") survive. A
    bare list such as "milk and eggs" therefore stays one item.
    """
    parts = _CLAUSE_SEPARATOR.split(text)
    clauses: list[str] = []
    separator = ""
    for index, part in enumerate(parts):
        if index % 2 == 1:
            separator = part
            continue
        piece = part.strip()
        if not piece:
            continue
        if clauses and not _is_command_signal(piece):
            joiner = " and " if "and" in separator else ", "
            clauses[-1] = f"{clauses[-1]}{joiner}{piece}"
        else:
            clauses.append(piece)
    return clauses


def _is_command_signal(piece: str) -> bool:
    stripped = _strip_filler(piece)
    return bool(
        _HAS_NUMBER.search(stripped)
        or _HAS_VERB.search(stripped)
        or _INVENTORY_LEVEL_PREFIX.search(stripped)
        or _UNDO_PHRASE.search(stripped)
        or _HAS_RELATIVE.search(stripped)
    )


def _strip_filler(clause: str) -> str:
    previous = None
    while previous != clause:
        previous = clause
        clause = _LEADING_FILLER.sub("", clause).strip(" ,")
        clause = _COURTESY_PREFIX.sub("", clause).strip(" ,")
        clause = _SUBJECT_BEFORE_VERB.sub("", clause)
    clause = _TRAILING_FILLER.sub("", clause)
    return clause.strip(" ,")


def clean_item(item: str | None) -> str:
    """Normalize an item phrase: drop articles, destinations and stray punctuation."""
    if not item:
        return ""
    cleaned = item.strip(" ,.;:!?\"'")
    cleaned = _TRAILING_DESTINATION.sub("", cleaned)
    cleaned = _TRAILING_FILLER.sub("", cleaned)
    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = _LEADING_ARTICLE.sub("", cleaned)
        cleaned = _TRAILING_CONNECTOR.sub("", cleaned)
    return " ".join(cleaned.split())


@dataclass
class _ClauseState:
    """Per-utterance state carried from one clause to the next."""

    inherited_action: Action | None = None
    inventory_level: bool = False
    history: Sequence[ConversationTurn] = ()
    recent_commands: Sequence[RecentCommand] = ()


class RuleBasedCommandExtractor:
    """Parse utterances into commands using pattern matching.

    Each clause is tried against an ordered list of patterns; the first
    pattern whose builder returns a command wins.
    """

    name = "rules"

    def __init__(self) -> None:
        """Initialize the extractor with pattern rules."""
        # Pattern rules: (regex, pattern_name, builder)
        self.patterns: list[
            tuple[re.Pattern[str], str, Callable[[re.Match[str], _ClauseState], Command | None]]
        ] = [
            # "set coffee to 40 sleeves", "set the inventory of whole milk to"
            (
                re.compile(
                    rf"^(?:{_SET_VERB_ALT})\s+(?:the\s+)?"
                    r"(?:(?:inventory|count|stock|amount|level)\s+(?:of|for)\s+)?"
                    rf"(?P<item>.*?)\s*\bto\b(?:\s+(?P<qty>{NUM})(?:\s+(?P<unit>[a-z]+))?)?$"
                ),
                "set_to",
                self._build_set_to,
            ),
            # "add 5 gallons of milk", "30 gallons of whole milk", "5 of the oat milk"
            (
                re.compile(
                    rf"^(?:(?P<verb>{_VERB_ALT})\s+)?(?P<qty>{NUM})\s+"
                    r"(?:(?P<unit>[a-z]+)\s+)?of\s+(?P<item>.+)$"
                ),
                "quantity_unit_of_item",
                self._build_quantity_of_item,
            ),
            # "add 5 milk", "add 3 12 ounce paper cups", "remove 20 gallons", "30 bagels"
            (
                re.compile(rf"^(?:(?P<verb>{_VERB_ALT})\s+)?(?P<qty>{NUM})\s+(?P<rest>.+)$"),
                "verb_quantity_item",
                self._build_verb_quantity_item,
            ),
            # "to 30 gallons", "30 gallons", "add 20"
            (
                re.compile(
                    rf"^(?:(?P<verb>{_VERB_ALT})\s+)?(?:to\s+)?(?P<qty>{NUM})"
                    r"(?:\s+(?P<unit>[a-z]+))?$"
                ),
                "quantity_continuation",
                self._build_quantity_continuation,
            ),
            # "of whole milk", "for the oat milk"
            (
                re.compile(r"^(?:of|for)\s+(?P<item>.+)$"),
                "item_continuation",
                self._build_item_continuation,
            ),
            # "add milk", "remove", "set"
            (
                re.compile(rf"^(?P<verb>{_VERB_ALT})\b(?:\s+(?P<item>.+))?$"),
                "verb_item",
                self._build_verb_item,
            ),
        ]

    async def extract(
        self,
        utterance: str,
        conversation_history: Sequence[ConversationTurn] = (),
        recent_commands: Sequence[RecentCommand] = (),
    ) -> list[Command]:
        """Extract commands from one utterance.

        Args:
            utterance: Complete utterance text
            conversation_history: Prior turns, oldest first
            recent_commands: Recently applied commands, oldest first

        Returns:
            Commands in utterance order; at most one undo
        """
        return self.parse(utterance, conversation_history, recent_commands)

    def parse(
        self,
        utterance: str,
        conversation_history: Sequence[ConversationTurn] = (),
        recent_commands: Sequence[RecentCommand] = (),
    ) -> list[Command]:
        """Synchronous form of ``extract``."""
        text = normalize_utterance(utterance)
        if not text:
            return []

        state = _ClauseState(history=conversation_history, recent_commands=recent_commands)
        commands: list[Command] = []
        undo_emitted = False

        for raw_clause in split_clauses(text):
            clause = _strip_filler(raw_clause)
            if not clause:
                continue

            if _UNDO_PHRASE.search(clause):
                if not undo_emitted:
                    commands.append(self._build_undo(clause, recent_commands, commands))
                    undo_emitted = True
                continue

            command = self._parse_clause(clause, state)
            if command is None:
                logger.debug("Dropping non-command clause: %r", clause)
                continue

            if command.action in (Action.ADD, Action.REMOVE):
                state.inherited_action = command.action
            commands.append(command)

        logger.debug("Extracted %d command(s) from %r", len(commands), utterance)
        return commands

    def _parse_clause(self, clause: str, state: _ClauseState) -> Command | None:
        state.inventory_level = False
        level_match = _INVENTORY_LEVEL_PREFIX.match(clause)
        if level_match:
            clause = clause[level_match.end() :].strip()
            if not clause:
                return None
            # "we have used 5 gallons" keeps its verb
            state.inventory_level = not _HAS_VERB.match(clause)

        if self._is_relative(clause):
            command = self._build_relative(clause, state)
            if command is not None:
                return command

        for pattern, name, builder in self.patterns:
            match = pattern.match(clause)
            if match is None:
                continue
            command = builder(match, state)
            if command is not None:
                logger.debug("Clause %r matched pattern %s", clause, name)
                return command

        words = clause.split()
        if len(words) <= MAX_FALLBACK_WORDS:
            return Command.build(
                action=Action.UNKNOWN,
                item=clean_item(clause),
                confidence=CONFIDENCE_UNRECOGNIZED,
            )
        return None

    def _resolve_action(self, verb: str | None, state: _ClauseState) -> Action:
        """Map a verb to an action; a clause without one inherits or states a level."""
        if verb:
            return _VERB_TO_ACTION.get(verb, Action.UNKNOWN)
        if state.inventory_level:
            return Action.SET
        if state.inherited_action is not None:
            return state.inherited_action
        return Action.SET

    def _continuation_action(self, verb: str | None, state: _ClauseState) -> Action:
        """Action for a clause that carries no item, e.g. "30 gallons"."""
        if verb:
            return _VERB_TO_ACTION.get(verb, Action.UNKNOWN)
        if state.inventory_level:
            return Action.SET
        return Action.UNKNOWN

    def _pick_unit(self, raw_unit: str | None, item: str) -> tuple[str, bool]:
        """Return the spoken unit, or the item's default unit, and whether it was spoken."""
        if raw_unit:
            return normalize_unit(raw_unit), True
        return default_unit_for_item(item), False

    def _build_set_to(self, match: re.Match[str], state: _ClauseState) -> Command | None:
        item = clean_item(match.group("item"))
        qty = match.group("qty")
        if qty is None:
            return Command.build(
                action=Action.SET,
                item=item,
                confidence=CONFIDENCE_PARTIAL,
            )
        unit, explicit = self._pick_unit(match.group("unit"), item)
        if not item:
            return Command.build(
                action=Action.SET,
                quantity=float(qty),
                unit=unit,
                confidence=CONFIDENCE_PARTIAL,
            )
        return Command.build(
            action=Action.SET,
            item=item,
            quantity=float(qty),
            unit=unit,
            confidence=CONFIDENCE_EXPLICIT if explicit else CONFIDENCE_DEFAULT_UNIT,
        )

    def _build_quantity_of_item(self, match: re.Match[str], state: _ClauseState) -> Command:
        action = self._resolve_action(match.group("verb"), state)
        item = clean_item(match.group("item"))
        unit, explicit = self._pick_unit(match.group("unit"), item)
        return Command.build(
            action=action,
            item=item,
            quantity=float(match.group("qty")),
            unit=unit,
            confidence=CONFIDENCE_EXPLICIT if explicit else CONFIDENCE_DEFAULT_UNIT,
        )

    def _build_verb_quantity_item(
        self, match: re.Match[str], state: _ClauseState
    ) -> Command | None:
        verb = match.group("verb")
        action = self._resolve_action(verb, state)
        quantity = float(match.group("qty"))
        words = match.group("rest").split()

        if len(words) == 1 and is_known_unit(words[0]):
            # "add 20 gallons": the item is still to come
            action = self._continuation_action(verb, state)
            return Command.build(
                action=action,
                quantity=quantity,
                unit=normalize_unit(words[0]),
                confidence=(
                    CONFIDENCE_PARTIAL if action != Action.UNKNOWN else CONFIDENCE_UNKNOWN_CONTENT
                ),
            )

        if is_known_unit(words[0]) and not _HAS_NUMBER.match(words[0]):
            unit = normalize_unit(words[0])
            item = clean_item(" ".join(words[1:]))
            return Command.build(
                action=action,
                item=item,
                quantity=quantity,
                unit=unit,
                confidence=CONFIDENCE_EXPLICIT,
            )

        # Attribute-qualified names ("12 ounce paper cups") stay whole
        item = clean_item(" ".join(words))
        return Command.build(
            action=action,
            item=item,
            quantity=quantity,
            unit=default_unit_for_item(item),
            confidence=CONFIDENCE_DEFAULT_UNIT,
        )

    def _build_quantity_continuation(
        self, match: re.Match[str], state: _ClauseState
    ) -> Command | None:
        verb = match.group("verb")
        action = self._continuation_action(verb, state)
        raw_unit = match.group("unit")
        quantity = float(match.group("qty"))

        if raw_unit and not is_known_unit(raw_unit):
            # "to 30 bagels": a count of a named item
            item = clean_item(raw_unit)
            return Command.build(
                action=action,
                item=item,
                quantity=quantity,
                unit=default_unit_for_item(item),
                confidence=CONFIDENCE_DEFAULT_UNIT,
            )

        return Command.build(
            action=action,
            quantity=quantity,
            unit=normalize_unit(raw_unit),
            confidence=(
                CONFIDENCE_PARTIAL if action != Action.UNKNOWN else CONFIDENCE_UNKNOWN_CONTENT
            ),
        )

    def _build_item_continuation(self, match: re.Match[str], state: _ClauseState) -> Command:
        return Command.build(
            action=Action.UNKNOWN,
            item=clean_item(match.group("item")),
            confidence=CONFIDENCE_UNKNOWN_CONTENT,
        )

    def _build_verb_item(self, match: re.Match[str], state: _ClauseState) -> Command:
        action = _VERB_TO_ACTION[match.group("verb")]
        item = clean_item(match.group("item"))
        if not item or is_known_unit(item):
            return Command.build(action=action, confidence=CONFIDENCE_PARTIAL)
        return Command.build(
            action=action,
            item=item,
            confidence=CONFIDENCE_ACTION_ITEM if action != Action.SET else CONFIDENCE_PARTIAL,
        )

    def _build_undo(
        self,
        clause: str,
        recent_commands: Sequence[RecentCommand],
        earlier: Sequence[Command] = (),
    ) -> Command:
        """Unnamed undo targets the command said just before it, else the last applied one."""
        reference = ""
        match = _UNDO_REFERENCE.search(clause)
        if match:
            words = [w for w in match.group("ref").split() if w not in _UNDO_FILLER_WORDS]
            reference = " ".join(words)
        if not reference:
            spoken = [c for c in earlier if c.is_complete and c.action != Action.UNKNOWN]
            if spoken:
                reference = spoken[-1].describe()
            elif recent_commands:
                reference = recent_commands[-1].describe()
        return Command.build(action=Action.UNDO, item=reference, confidence=CONFIDENCE_EXPLICIT)

    def _is_relative(self, clause: str) -> bool:
        return bool(
            _relative_quantity(clause)
            or _RELATIVE_ANOTHER.search(clause)
            or _RELATIVE_SAME.search(clause)
        )

    def _build_relative(self, clause: str, state: _ClauseState) -> Command | None:
        """Resolve "add 5 more", "5 more of the same", "another gallon" from context."""
        verb_match = re.match(rf"^(?P<verb>{_VERB_ALT})\b", clause)
        verb = verb_match.group("verb") if verb_match else None

        quantity: float | None = None
        more = _relative_quantity(clause)
        another = _RELATIVE_ANOTHER.search(clause)
        if more:
            quantity = float(more.group("qty"))
        elif another:
            quantity = float(another.group("qty")) if another.group("qty") else 1.0
        else:
            number = re.search(NUM, clause)
            if number:
                quantity = float(number.group(0))

        spoken_unit = next(
            (word for word in clause.split() if is_known_unit(word) and word != "dozen"), None
        )

        explicit_item = ""
        if not _RELATIVE_OF_REFERENCE.search(clause):
            item_match = _RELATIVE_EXPLICIT_ITEM.search(clause)
            if item_match:
                explicit_item = clean_item(item_match.group("item"))

        reference = self._resolve_reference(state)
        if reference is None and not explicit_item:
            if quantity is None:
                return None
            action = _VERB_TO_ACTION[verb] if verb else Action.ADD
            return Command.build(
                action=action,
                quantity=quantity,
                unit=normalize_unit(spoken_unit),
                confidence=CONFIDENCE_PARTIAL,
            )

        ref_action, ref_item, ref_quantity, ref_unit = reference or (Action.ADD, "", None, "")
        if verb:
            action = _VERB_TO_ACTION[verb]
        elif ref_action in (Action.ADD, Action.REMOVE):
            action = ref_action
        else:
            action = Action.ADD

        item = explicit_item or ref_item
        unit = normalize_unit(spoken_unit) or ref_unit or default_unit_for_item(item)
        if quantity is None:
            quantity = ref_quantity

        command = Command.build(
            action=action,
            item=item,
            quantity=quantity,
            unit=unit,
            confidence=CONFIDENCE_RELATIVE,
        )
        logger.debug("Resolved relative reference %r to %s", clause, command.describe())
        return command

    def _resolve_reference(
        self, state: _ClauseState
    ) -> tuple[Action, str, float | None, str] | None:
        """Find the command a relative phrase refers to.

        The most recent applied command wins; otherwise the newest user turn
        that reads like "add 5 gallons of milk".
        """
        for recent in reversed(state.recent_commands):
            if recent.item and recent.action != Action.UNDO:
                return recent.action, recent.item, recent.quantity, recent.unit

        for turn in reversed(state.history):
            if turn.role != Role.USER:
                continue
            matches = _HISTORY_COMMAND.findall(normalize_utterance(turn.text))
            if matches:
                verb, quantity, unit, item = matches[-1]
                return (
                    _VERB_TO_ACTION[verb],
                    clean_item(item),
                    float(quantity),
                    normalize_unit(unit),
                )
        return None
