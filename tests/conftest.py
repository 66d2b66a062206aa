"""pytest configuration for stockcount tests."""

import os
import sys
import uuid
from pathlib import Path

import pytest

# Add src directory to path so tests can import stockcount
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Keep tests off the network: in-memory stores and the rule-based extractor
os.environ["REDIS_ENABLED"] = "false"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("STOCKCOUNT_EXTRACTOR", None)
os.environ.pop("STOCKCOUNT_POLICY_CONFIG", None)
os.environ.pop("STOCKCOUNT_ENABLE_METRICS", None)

from stockcount.policy_config import clear_confirmation_thresholds_cache  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_thresholds_cache():
    """Each test starts from the default confirmation thresholds."""
    clear_confirmation_thresholds_cache()
    yield
    clear_confirmation_thresholds_cache()


@pytest.fixture
def test_user_id():
    """Generate a consistent test user ID."""
    return str(uuid.UUID("12345678-1234-1234-1234-123456789012"))


@pytest.fixture
def test_user_id_2():
    """Generate a second test user ID."""
    return str(uuid.UUID("87654321-4321-4321-4321-210987654321"))
