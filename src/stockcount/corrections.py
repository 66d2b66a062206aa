"""Interpretation of spoken replies to a confirmation prompt.

Handles plain yes/no as well as corrections such as "no, seven gallons",
"not coffee but tea", "don't add, remove" and "liters not gallons".
"""

import re
from dataclasses import dataclass
from enum import Enum

from stockcount.commands.rule_extractor import clean_item, normalize_utterance
from stockcount.models import Action, Command
from stockcount.units import is_known_unit, normalize_unit

CORRECTED_CONFIDENCE = 0.95

MISTAKE_QUANTITY = "quantity"
MISTAKE_ITEM = "item"
MISTAKE_ACTION = "action"
MISTAKE_UNIT = "unit"

_AFFIRMATIVE = re.compile(
    r"^(?:yes|yeah|yep|yup|ya|correct|right|that's right|that is right|confirm|confirmed|"
    r"sure|ok|okay|do it|go ahead|sounds good|affirmative)\b"
)
_NEGATIVE = re.compile(
    r"^(?:no|nope|nah|wrong|incorrect|negative|cancel|cancel that|that's wrong|"
    r"that is wrong)\b[,\s]*"
)
_CORRECTION_MARKERS = re.compile(r"\d|\bnot\b|\bbut\b|\bmeant\b|\binstead\b|\bdon't\b|\bdo not\b")

_NUMBER = re.compile(r"(?P<qty>\d+(?:\.\d+)?)(?:\s+(?P<unit>[a-z]+))?")
_NEGATED_VERB = re.compile(r"\b(?:not|don't|dont|do not)\s+(?P<verb>add|remove|set)\b")
_VERB = re.compile(r"\b(?P<verb>add|remove|set)\b")
_NOT_BUT = re.compile(r"\bnot\s+(?P<old>.+?)\s*,?\s*but\s+(?P<new>.+)$")
_NEW_NOT_OLD = re.compile(r"^(?P<new>.+?)\s*,?\s+not\s+(?P<old>.+)$")
_INSTEAD_OF = re.compile(r"^(?P<new>.+?)\s+instead of\s+(?P<old>.+)$")
_ITEM_PHRASE = re.compile(
    r"^(?:i meant|i said|meant|it's|it is|it was|make it|should be|actually|i mean)\s+(?P<new>.+)$"
)
_LEADING_REPLY_FILLER = re.compile(r"^(?:it's|it is|it was|make it|should be|i said|i meant)\s+")


class ReplyKind(str, Enum):
    """How the user answered a confirmation prompt."""

    CONFIRM = "confirm"
    REJECT = "reject"
    CORRECT = "correct"


@dataclass(frozen=True)
class CorrectionResult:
    """The interpreted reply.

    ``command`` is the original command for CONFIRM, the corrected command
    for CORRECT and None for REJECT. ``mistake_category`` is set only for
    CORRECT.
    """

    kind: ReplyKind
    command: Command | None = None
    mistake_category: str | None = None


def is_affirmative(text: str) -> bool:
    normalized = normalize_utterance(text)
    return bool(_AFFIRMATIVE.match(normalized)) and not _CORRECTION_MARKERS.search(normalized)


def is_negative(text: str) -> bool:
    return bool(_NEGATIVE.match(normalize_utterance(text)))


def parse_voice_correction(original: Command, text: str) -> CorrectionResult | None:
    """Interpret a reply to a confirmation prompt for ``original``.

    Args:
        original: The command the user was asked to confirm
        text: The user's reply

    Returns:
        CorrectionResult, or None if the reply is neither a yes, a no nor a
        recognizable correction
    """
    normalized = normalize_utterance(text)
    if not normalized:
        return None

    if is_affirmative(normalized):
        return CorrectionResult(kind=ReplyKind.CONFIRM, command=original)

    negative = _NEGATIVE.match(normalized)
    remainder = normalized[negative.end() :].strip(" ,") if negative else normalized
    if not remainder:
        return CorrectionResult(kind=ReplyKind.REJECT)

    corrected = (
        _correct_action(original, remainder)
        or _correct_pair(original, remainder)
        or _correct_unit(original, remainder)
        or _correct_quantity(original, remainder)
        or _correct_item(original, remainder)
    )
    if corrected is not None:
        return corrected
    if negative:
        return CorrectionResult(kind=ReplyKind.REJECT)
    return None


def _corrected(original: Command, category: str, **changes) -> CorrectionResult:
    command = original.replace(confidence=CORRECTED_CONFIDENCE, **changes)
    return CorrectionResult(kind=ReplyKind.CORRECT, command=command, mistake_category=category)


def _correct_action(original: Command, text: str) -> CorrectionResult | None:
    negated = _NEGATED_VERB.search(text)
    verbs = [Action(m.group("verb")) for m in _VERB.finditer(text)]
    if negated:
        old = Action(negated.group("verb"))
        replacements = [verb for verb in verbs if verb != old]
        if replacements:
            new_action = replacements[0]
        elif old == Action.ADD:
            new_action = Action.REMOVE
        elif old == Action.REMOVE:
            new_action = Action.ADD
        else:
            return None
    elif verbs and verbs[0] != original.action and original.action != Action.UNDO:
        new_action = verbs[0]
    else:
        return None

    changes: dict = {"action": new_action}
    number = _NUMBER.search(text)
    if number:
        changes["quantity"] = float(number.group("qty"))
    return _corrected(original, MISTAKE_ACTION, **changes)


def _correct_pair(original: Command, text: str) -> CorrectionResult | None:
    """Handle "not X but Y", "Y not X" and "Y instead of X"."""
    match = _NOT_BUT.search(text) or _INSTEAD_OF.match(text) or _NEW_NOT_OLD.match(text)
    if match is None:
        return None
    new = _LEADING_REPLY_FILLER.sub("", match.group("new").strip(" ,"))
    return _classify_replacement(original, new)


def _classify_replacement(original: Command, new: str) -> CorrectionResult | None:
    if not new:
        return None
    number = _NUMBER.fullmatch(new)
    if number:
        changes: dict = {"quantity": float(number.group("qty"))}
        if number.group("unit") and is_known_unit(number.group("unit")):
            changes["unit"] = normalize_unit(number.group("unit"))
        return _corrected(original, MISTAKE_QUANTITY, **changes)
    if is_known_unit(new):
        return _corrected(original, MISTAKE_UNIT, unit=normalize_unit(new))
    item = clean_item(new)
    if not item:
        return None
    return _corrected(original, MISTAKE_ITEM, item=item)


def _correct_unit(original: Command, text: str) -> CorrectionResult | None:
    """Handle "in liters" or "it's liters" with no number."""
    if _NUMBER.search(text):
        return None
    match = re.match(r"^(?:in|it's in|it is in|it's|it is|use)\s+(?P<unit>[a-z]+)$", text)
    if match and is_known_unit(match.group("unit")):
        unit = normalize_unit(match.group("unit"))
        if unit != original.unit:
            return _corrected(original, MISTAKE_UNIT, unit=unit)
    return None


def _correct_quantity(original: Command, text: str) -> CorrectionResult | None:
    number = _NUMBER.search(text)
    if number is None:
        return None
    changes: dict = {"quantity": float(number.group("qty"))}
    unit = number.group("unit")
    if unit and is_known_unit(unit):
        changes["unit"] = normalize_unit(unit)
    return _corrected(original, MISTAKE_QUANTITY, **changes)


def _correct_item(original: Command, text: str) -> CorrectionResult | None:
    match = _ITEM_PHRASE.match(text)
    if match is None:
        return None
    return _classify_replacement(original, match.group("new").strip(" ,"))
