"""Unit normalization, default units per item, and unit conversion."""

import re

from stockcount.errors import UnitConversionError

# Spoken or abbreviated unit -> canonical plural unit
UNIT_ALIASES: dict[str, str] = {
    "gallon": "gallons",
    "gallons": "gallons",
    "gal": "gallons",
    "gals": "gallons",
    "quart": "quarts",
    "quarts": "quarts",
    "qt": "quarts",
    "pint": "pints",
    "pints": "pints",
    "pt": "pints",
    "liter": "liters",
    "liters": "liters",
    "litre": "liters",
    "litres": "liters",
    "l": "liters",
    "milliliter": "milliliters",
    "milliliters": "milliliters",
    "ml": "milliliters",
    "cup": "cups",
    "cups": "cups",
    "tablespoon": "tablespoons",
    "tablespoons": "tablespoons",
    "tbsp": "tablespoons",
    "teaspoon": "teaspoons",
    "teaspoons": "teaspoons",
    "tsp": "teaspoons",
    "ounce": "ounces",
    "ounces": "ounces",
    "oz": "ounces",
    "pound": "pounds",
    "pounds": "pounds",
    "lb": "pounds",
    "lbs": "pounds",
    "kilogram": "kilograms",
    "kilograms": "kilograms",
    "kilo": "kilograms",
    "kilos": "kilograms",
    "kg": "kilograms",
    "gram": "grams",
    "grams": "grams",
    "g": "grams",
    "box": "boxes",
    "boxes": "boxes",
    "bag": "bags",
    "bags": "bags",
    "bottle": "bottles",
    "bottles": "bottles",
    "case": "cases",
    "cases": "cases",
    "can": "cans",
    "cans": "cans",
    "jar": "jars",
    "jars": "jars",
    "carton": "cartons",
    "cartons": "cartons",
    "piece": "pieces",
    "pieces": "pieces",
    "pcs": "pieces",
    "pack": "packs",
    "packs": "packs",
    "package": "packs",
    "packages": "packs",
    "sleeve": "sleeves",
    "sleeves": "sleeves",
    "roll": "rolls",
    "rolls": "rolls",
    "dozen": "dozen",
    "unit": "units",
    "units": "units",
    "item": "units",
    "items": "units",
}

VOLUME = "volume"
WEIGHT = "weight"
COUNT = "count"

# Liters per unit
_VOLUME_FACTORS = {
    "liters": 1.0,
    "milliliters": 0.001,
    "gallons": 3.78541,
    "quarts": 0.946353,
    "pints": 0.473176,
    "cups": 0.236588,
    "tablespoons": 0.0147868,
    "teaspoons": 0.00492892,
    "ounces": 0.0295735,
}

# Grams per unit
_WEIGHT_FACTORS = {
    "grams": 1.0,
    "kilograms": 1000.0,
    "pounds": 453.592,
}

# Item keyword -> unit used when the speaker gives none
_DEFAULT_UNITS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(milk|cream|half and half|water|juice)\b"), "gallons"),
    (re.compile(r"\bsyrups?\b"), "bottles"),
    (re.compile(r"\b(coffee|beans|sugar|flour)\b"), "pounds"),
    (re.compile(r"\btea\b"), "boxes"),
    (re.compile(r"\bnapkins?\b"), "packs"),
    (re.compile(r"\b(cups?|lids?)\b"), "sleeves"),
    (re.compile(r"\b(straws?|stirrers?)\b"), "boxes"),
    (re.compile(r"\bfilters?\b"), "packs"),
    (re.compile(r"\b(pastry|pastries|muffins?|cookies?|croissants?|bagels?)\b"), "pieces"),
]


def normalize_unit(unit: str | None) -> str:
    """Map a spoken unit to its canonical plural form.

    Unknown units are returned lower-cased and stripped.
    """
    if not unit:
        return ""
    key = unit.strip().lower().rstrip(".")
    return UNIT_ALIASES.get(key, key)


def is_known_unit(word: str | None) -> bool:
    """Check whether a word is a recognized unit."""
    if not word:
        return False
    return word.strip().lower().rstrip(".") in UNIT_ALIASES


def default_unit_for_item(item: str | None) -> str:
    """Pick the usual counting unit for an item, falling back to "units"."""
    name = (item or "").lower()
    for pattern, unit in _DEFAULT_UNITS:
        if pattern.search(name):
            return unit
    return "units"


def unit_type(unit: str | None) -> str | None:
    """Classify a unit as volume, weight or count.

    Returns:
        One of VOLUME, WEIGHT, COUNT, or None for an empty unit
    """
    canonical = normalize_unit(unit)
    if not canonical:
        return None
    if canonical in _VOLUME_FACTORS:
        return VOLUME
    if canonical in _WEIGHT_FACTORS:
        return WEIGHT
    return COUNT


def can_convert(from_unit: str | None, to_unit: str | None) -> bool:
    """Check whether a quantity can be converted between two units."""
    source = normalize_unit(from_unit)
    target = normalize_unit(to_unit)
    if not source or not target:
        return False
    if source == target:
        return True
    source_type = unit_type(source)
    if source_type == COUNT:
        return False
    return source_type == unit_type(target)


def _to_base(quantity: float, unit: str) -> float:
    if unit in _VOLUME_FACTORS:
        return quantity * _VOLUME_FACTORS[unit]
    return quantity * _WEIGHT_FACTORS[unit]


def convert_quantity(quantity: float, from_unit: str, to_unit: str) -> float:
    """Convert a quantity between two compatible units.

    Args:
        quantity: Amount in ``from_unit``
        from_unit: Source unit (any alias)
        to_unit: Target unit (any alias)

    Returns:
        The amount expressed in ``to_unit``

    Raises:
        UnitConversionError: If the units are of different kinds, or are
            count units that differ
    """
    source = normalize_unit(from_unit)
    target = normalize_unit(to_unit)
    if source == target:
        return quantity
    if not can_convert(source, target):
        raise UnitConversionError(f"Cannot convert {from_unit} to {to_unit}")

    base = _to_base(quantity, source)
    return base / _to_base(1.0, target)
