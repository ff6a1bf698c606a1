"""
Shared fixtures for temporary databases and the test clock.
"""

import os
import tempfile

import pytest

from ai_content_guard.storage.db import initialize_schema
from fakes import FakeClock


@pytest.fixture
def db_path():
    """Path to a freshly initialized database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def empty_db_path():
    """Path to a database file without any tables."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "empty.db")


@pytest.fixture
def clock():
    return FakeClock()
