import sys
import warnings
from pathlib import Path

import pytest

# Ignore warnings from ingestor.shared
warnings.filterwarnings("ignore", category=DeprecationWarning, module="ingestor.shared.*")

# Ensure the project root is on sys.path so `ingestor` and `tests` packages resolve
PROJECT_ROOT = Path(__file__).resolve().parents[1]
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from ingestor.app_config import SchedulerConfig  # noqa: E402

# Import fixtures so they are available to all tests
from tests.fixtures.redis_fixtures import *  # noqa: E402, F403


@pytest.fixture
def settings(tmp_path: Path) -> SchedulerConfig:
    """Small, fast settings; override with `settings.model_copy(update={...})`."""
    return SchedulerConfig(
        SERVICE_CODE="ingestor-test",
        WORKER_OWNER_ID="worker-a",
        LEASE_TTL_SECONDS=30,
        SCHEDULER_TICK_SECONDS=0.05,
        MAX_CHANNELS_PER_WORKER=20,
        GLOBAL_LOAD_CAP=10000,
        RECORDINGS_DIR=tmp_path / "recordings",
        PROCESS_STOP_TIMEOUT_SECONDS=2,
        SEGMENT_POLL_SECONDS=0.05,
        SEGMENT_STABILITY_SECONDS=10,
        CHAT_POLL_SECONDS=0.01,
    )
