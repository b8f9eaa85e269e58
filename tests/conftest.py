"""Shared test fixtures and configuration."""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# The "now" used wherever tests freeze time
REFERENCE_NOW = datetime(2023, 4, 23, 9, 30, 0)

# One singular job with its steps, one two-element array job with its steps
SACCT_OUTPUT = """\
            56938942          SingularJob          2   00:01:00 2023-04-22T16:15:05 2023-04-22T16:16:05  COMPLETED
      56938942.batch                batch          2   00:01:00 2023-04-22T16:15:05 2023-04-22T16:16:05  COMPLETED
     56938942.extern               extern          2   00:01:00 2023-04-22T16:15:05 2023-04-22T16:16:05  COMPLETED
          56938944_1             ArrayJob          2   00:01:00 2023-04-22T16:15:05 2023-04-22T16:16:05  COMPLETED
    56938944_1.batch                batch          2   00:01:00 2023-04-22T16:15:05 2023-04-22T16:16:05  COMPLETED
   56938944_1.extern               extern          2   00:01:00 2023-04-22T16:15:05 2023-04-22T16:16:05  COMPLETED
          56938944_2             ArrayJob          2   00:01:00 2023-04-22T16:15:05 2023-04-22T16:16:05  COMPLETED
    56938944_2.batch                batch          2   00:01:00 2023-04-22T16:15:05 2023-04-22T16:16:05  COMPLETED
   56938944_2.extern               extern          2   00:01:00 2023-04-22T16:15:05 2023-04-22T16:16:05  COMPLETED
"""

# Every state the filters care about
MIXED_SACCT_OUTPUT = """\
            50280159 MultiprocessDistan+          4   20:27:32 2025-03-19T19:32:54             Unknown     FAILED
            50280160              Running         16   01:00:00 2025-03-20T08:00:00             Unknown    RUNNING
            50280161               Queued          1   00:00:00             Unknown             Unknown    PENDING
            50280162            Cancelled          1   00:00:00                None 2025-03-20T09:00:00 CANCELLED+
    50280163_[1-4%2]         PendingArray          1   00:00:00             Unknown             Unknown    PENDING
          50280164_0           MixedArray          1   00:02:00 2025-03-20T08:00:00 2025-03-20T08:02:00  COMPLETED
          50280164_1           MixedArray          1   00:00:00             Unknown             Unknown    PENDING
"""


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the config lookup at an empty directory."""
    config_home = tmp_path / "xdg_config"
    config_home.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.delenv("JOBS_DONE_MOCK_SACCT", raising=False)
    return config_home


@pytest.fixture
def sacct_output() -> str:
    """Raw sacct output with steps and an array job."""
    return SACCT_OUTPUT


@pytest.fixture
def mixed_sacct_output() -> str:
    """Raw sacct output covering running, pending and cancelled jobs."""
    return MIXED_SACCT_OUTPUT


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Create a temporary state directory."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def reference_now() -> datetime:
    """A fixed "now"."""
    return REFERENCE_NOW
