"""
Root conftest.py - Global fixtures and configuration for all test layers.

Test Layers:
    - unit/       : Unit tests (pure functions, no I/O)
    - component/  : Component tests (services with mocked dependencies)
"""
import os
import sys
from datetime import datetime, timezone

import pytest

# Set testing environment BEFORE any project imports
os.environ.setdefault("ENV", "testing")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("NATS_ENABLED", "false")

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)


# =============================================================================
# Test Configuration
# =============================================================================

# Fixed reference time; every time-dependent assertion is relative to it
REFERENCE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def reference_time() -> datetime:
    """Fixed reference time for clock-driven tests"""
    return REFERENCE_TIME
