"""
Pytest configuration and shared fixtures for the test suite.
"""

import logging
import sys
import uuid
from pathlib import Path

import pytest

# Repository root on the path so ``src.intent_healer`` and ``tests.utils`` import
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from tests.utils.healing_fakes import (  # noqa: E402
    FakeClock,
    make_config,
    make_failure,
    make_intent,
    make_snapshot
)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def healer_config():
    return make_config()


@pytest.fixture
def failure():
    return make_failure()


@pytest.fixture
def intent():
    return make_intent()


@pytest.fixture
def snapshot():
    return make_snapshot()


@pytest.fixture
def sample_run_id():
    """Generate a unique test run ID."""
    return f"run-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def robot_file(tmp_path):
    """A Robot Framework suite using a locator that needs healing."""
    path = tmp_path / "login.robot"
    path.write_text(
        "*** Settings ***\n"
        "Library    SeleniumLibrary\n"
        "\n"
        "*** Test Cases ***\n"
        "User Signs In\n"
        "    Open Browser    https://shop.example.com/login    chrome\n"
        "    Input Text    id=user    alice\n"
        "    Click Button    id=login-btn\n"
        "    Close Browser\n",
        encoding="utf-8"
    )
    return path


@pytest.fixture(autouse=True)
def setup_test_logging():
    """Set up logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
