"""Confirmation policy configuration loader.

Loads confirmation thresholds from a YAML file with safe defaults.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def _default_readonly_roles() -> tuple[str, ...]:
    return ("readonly", "read_only", "viewer")


@dataclass(frozen=True)
class ConfirmationThresholds:
    """Numeric thresholds used by the confirmation policy."""

    # Confidence below which a command needs visual / explicit confirmation
    visual_confidence: float = 0.7
    explicit_confidence: float = 0.5

    # Similarity ratio above which another item name counts as confusable
    similarity_threshold: float = 0.7

    # Large changes relative to current stock
    large_add_ratio: float = 0.5
    large_remove_ratio: float = 0.3
    large_set_ratio: float = 0.5

    # Large changes when current stock is unknown
    absolute_add_limit: float = 100
    absolute_remove_limit: float = 50
    absolute_set_limit: float = 200

    # Set changes that deserve a visual check
    set_change_ratio: float = 0.5

    # Caller accuracy tuning
    min_accuracy_samples: int = 5
    high_error_rate: float = 0.3
    low_error_rate: float = 0.1

    # Confirmation timeouts in seconds
    low_confidence_timeout: float = 10
    ambiguous_timeout: float = 15
    set_change_timeout: float = 8
    remove_voice_timeout: float = 5

    readonly_roles: tuple[str, ...] = field(default_factory=_default_readonly_roles)


_RATIO_FIELDS = {
    "visual_confidence",
    "explicit_confidence",
    "similarity_threshold",
    "high_error_rate",
    "low_error_rate",
}


def _parse_thresholds(data: dict[str, Any]) -> ConfirmationThresholds:
    """Parse a thresholds dictionary, filling unspecified values from defaults.

    Args:
        data: Dictionary of threshold overrides.

    Returns:
        ConfirmationThresholds with parsed values.

    Raises:
        ValueError: If a field is unknown or has an invalid value.
    """
    known = {f.name for f in fields(ConfirmationThresholds)}
    values: dict[str, Any] = {}

    for name, value in data.items():
        if name not in known:
            raise ValueError(f"Unknown threshold field: {name}")

        if name == "readonly_roles":
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValueError("Field 'readonly_roles' must be a list of strings")
            values[name] = tuple(v.lower() for v in value)
            continue

        if name == "min_accuracy_samples":
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError("Field 'min_accuracy_samples' must be a non-negative integer")
            values[name] = value
            continue

        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"Field '{name}' must be a number")
        if value < 0:
            raise ValueError(f"Field '{name}' must be non-negative")
        if name in _RATIO_FIELDS and value > 1:
            raise ValueError(f"Field '{name}' must be between 0 and 1")
        values[name] = float(value)

    thresholds = ConfirmationThresholds(**values)
    if thresholds.explicit_confidence > thresholds.visual_confidence:
        raise ValueError("'explicit_confidence' must not exceed 'visual_confidence'")
    return thresholds


def load_confirmation_thresholds(config_path: str | None = None) -> ConfirmationThresholds:
    """Load confirmation thresholds from a YAML file.

    Args:
        config_path: Path to the YAML file. If None, uses
                    STOCKCOUNT_POLICY_CONFIG or config/confirmation_policy.yaml

    Returns:
        ConfirmationThresholds. If the file is missing or invalid, returns defaults.
    """
    if config_path is None:
        config_path = os.environ.get("STOCKCOUNT_POLICY_CONFIG")
    if config_path is None:
        project_root = Path(__file__).parent.parent.parent
        config_path = os.path.join(project_root, "config", "confirmation_policy.yaml")

    if not os.path.exists(config_path):
        return ConfirmationThresholds()

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a YAML dictionary")
        if "thresholds" not in data:
            raise ValueError("Config file must contain 'thresholds' section")
        if not isinstance(data["thresholds"], dict):
            raise ValueError("'thresholds' section must be a dictionary")

        return _parse_thresholds(data["thresholds"])

    except (yaml.YAMLError, ValueError, OSError) as e:
        logger.warning("Failed to load confirmation policy config from %s: %s", config_path, e)
        logger.warning("Using default confirmation thresholds")
        return ConfirmationThresholds()


def thresholds_to_dict(thresholds: ConfirmationThresholds) -> dict[str, Any]:
    """Serialize thresholds back into the YAML ``thresholds`` shape."""
    data = asdict(thresholds)
    data["readonly_roles"] = list(thresholds.readonly_roles)
    return data


_cached_thresholds: ConfirmationThresholds | None = None


def get_confirmation_thresholds(config_path: str | None = None) -> ConfirmationThresholds:
    """Get the confirmation thresholds (cached)."""
    global _cached_thresholds
    if _cached_thresholds is None:
        _cached_thresholds = load_confirmation_thresholds(config_path)
    return _cached_thresholds


def reload_confirmation_thresholds(config_path: str | None = None) -> ConfirmationThresholds:
    """Reload confirmation thresholds from file."""
    global _cached_thresholds
    _cached_thresholds = load_confirmation_thresholds(config_path)
    return _cached_thresholds


def clear_confirmation_thresholds_cache() -> None:
    """Clear the cached thresholds.

    Used primarily for testing to ensure clean state between tests.
    """
    global _cached_thresholds
    _cached_thresholds = None
