"""Pytest configuration for integration tests.

Integration tests interact with a real Redis server and are skipped unless
REDIS_URL_TEST is set.
"""

import sys
import warnings
from pathlib import Path

# Ignore warnings from ingestor.shared
warnings.filterwarnings("ignore", category=DeprecationWarning, module="ingestor.shared.*")

# Ensure the project root is on sys.path so `ingestor` and `tests` packages resolve
PROJECT_ROOT = Path(__file__).resolve().parents[1]
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from tests.fixtures.redis_fixtures import *  # noqa: E402, F403
