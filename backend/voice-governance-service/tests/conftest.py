import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
os.environ["VG_STORE_BACKEND"] = "memory"
os.environ["VG_VOICE_DIAGNOSIS_MODE"] = "off"
os.environ["VG_ADJUSTMENT_THRESHOLD"] = "0.15"
os.environ["VG_ADJUSTMENT_COOLDOWN_HOURS"] = "24"
os.environ["VG_MAX_ACCUMULATED_EDITS"] = "5"
os.environ["VG_MAX_VERSION_HISTORY"] = "10"
os.environ.pop("VG_ENV_FILE", None)
os.environ.pop("VG_VOICE_DIAGNOSIS_BASE_URL", None)

_TEST_DATA_DIR = Path(tempfile.gettempdir()) / "voice-governance-service-tests"
_TEST_DATA_DIR.mkdir(parents=True, exist_ok=True)
os.environ["VG_LOCAL_DATA_DIR"] = str(_TEST_DATA_DIR)
os.environ["VG_SQLITE_DB_PATH"] = str(_TEST_DATA_DIR / "voice_governance.sqlite3")


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()
