import os
import sys
import tempfile
from pathlib import Path

import pytest

# Ensure `backend/` is on sys.path so `import fixtral` resolves to backend/fixtral
ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = ROOT / "backend"
sys.path.insert(0, str(BACKEND_DIR))

# Test-safe environment for pydantic Settings; must run before fixtral is imported
_SCRATCH = Path(tempfile.mkdtemp(prefix="fixtral-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SCRATCH / 'fixtral.db'}")
os.environ.setdefault("LOCAL_STORE_DIR", str(_SCRATCH / "storage"))
os.environ.setdefault("DOWNLOAD_DIR", str(_SCRATCH / "downloads"))
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-secret")
# Never talk to a real project from tests.
os.environ["SUPABASE_URL"] = ""
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = ""
os.environ["ADMIN_ID"] = ""
os.environ["ADMIN_UID"] = ""


@pytest.fixture()
def anyio_backend():
    return "asyncio"
