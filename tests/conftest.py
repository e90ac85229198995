import os
import sys
import tempfile
from pathlib import Path

# Set up the environment before any imports that might initialize the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="classportal_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("EMAIL_DEV_MODE", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from classportal.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh store directory per test so persisted state never leaks across tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "fs"))
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    monkeypatch.setenv("EMAIL_DEV_MODE", "true")
    for name in ("EMAIL_API_KEY", "BACKEND_PUBLIC_KEY", "SERVICE_ROLE_KEY"):
        monkeypatch.delenv(name, raising=False)
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()
