"""Test configuration for the shared package."""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

SHARED_DIR = Path(__file__).resolve().parents[1]
SERVICES_DIR = SHARED_DIR.parent

# services/ holds the ``shared`` package
services_path = str(SERVICES_DIR)
if services_path not in sys.path:
    sys.path.insert(0, services_path)

# no test may reach a real Redis
os.environ["REDIS_URL"] = ""


@pytest.fixture
def now():
    return datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)
