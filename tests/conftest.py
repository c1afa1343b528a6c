"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for compute_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from compute_mock import MockComputeState  # noqa: E402
from factories import TransitionRecorder, make_reconciler  # noqa: E402


@pytest.fixture
def state() -> MockComputeState:
    return MockComputeState()


@pytest.fixture
def recorder() -> TransitionRecorder:
    return TransitionRecorder()


@pytest.fixture
def reconciler(state, recorder):
    return make_reconciler(state, observer=recorder)
