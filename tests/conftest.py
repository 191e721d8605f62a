"""
Pytest configuration for call_analyzer tests.

Test Tier System:
- fast (default): Pure unit tests, all I/O mocked or faked in memory
- medium: Heavier multi-component tests
- slow: Real PostgreSQL / analysis endpoint

Run tiers:
- pytest                          # Fast only (default, quick feedback)
- pytest -m medium                # Medium only
- pytest -m "not slow"            # Fast + Medium
- pytest --override-ini="addopts=" -v   # Full suite (all tiers)

Note: Unmarked tests are auto-assigned to 'fast' tier. Tests marked
@pytest.mark.integration (without tier) default to 'medium'.

Endpoint Safety:
- Unless slow tests are selected, ANSWERAI_* variables are forced to a
  non-routable test endpoint so a mocking mistake can never reach a real
  analysis service.
"""

import os
import sys
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).parent))

from call_analyzer.config import PipelineConfig  # noqa: E402

TEST_ENDPOINT = "http://analysis.invalid/api/v1"


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Automatically assign tier markers to unmarked tests.

    Tests are fast by default unless explicitly marked as medium or slow.
    Tests marked with @pytest.mark.integration (but no tier) are assigned to
    'medium'.
    """
    for item in items:
        has_tier = (
            list(item.iter_markers(name='fast')) or
            list(item.iter_markers(name='medium')) or
            list(item.iter_markers(name='slow'))
        )
        if has_tier:
            continue

        if list(item.iter_markers(name='skip')):
            continue

        if list(item.iter_markers(name='integration')):
            item.add_marker(pytest.mark.medium)
            continue

        item.add_marker(pytest.mark.fast)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Point the analysis endpoint at a dead host unless slow tests run."""
    markexpr = getattr(config.option, 'markexpr', '') or ''

    includes_slow_tests = (
        not markexpr or
        (
            'slow' in markexpr and
            'not slow' not in markexpr
        )
    )

    if includes_slow_tests:
        os.environ.setdefault("ANSWERAI_ENDPOINT", TEST_ENDPOINT)
        os.environ.setdefault("ANSWERAI_ANALYSIS_CHATFLOW", "test-chatflow")
    else:
        os.environ["ANSWERAI_ENDPOINT"] = TEST_ENDPOINT
        os.environ["ANSWERAI_ANALYSIS_CHATFLOW"] = "test-chatflow"
        os.environ["ANSWERAI_TOKEN"] = "test-token"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def project_root():
    """Return project root path (session-scoped for efficiency)."""
    return PROJECT_ROOT


@pytest.fixture
def config():
    """Explicit pipeline config; never read from the environment."""
    return PipelineConfig(
        analysis_endpoint=TEST_ENDPOINT,
        chatflow_id="test-chatflow",
        api_token="test-token",
        request_timeout=5.0,
        batch_size=4,
        max_concurrency=2,
        page_size=3,
    )
