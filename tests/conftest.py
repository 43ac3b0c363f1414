import os, sys, tempfile
import pytest

# Ensure the packages are importable from a source checkout
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Configure the service before it is imported
os.environ.setdefault("CUSTODY_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="custody-test-"), "custody.db"))
os.environ.setdefault("ANCHOR_GATEWAY", "simulated")
os.environ.setdefault("ANCHOR_BACKOFF_SECONDS", "0")
os.environ.setdefault("LOG_JSON", "false")

# Initialize app at module load time
from custody_service import main
from custody_service.main import _startup

_startup()

# Reset database before each test for isolation
@pytest.fixture(autouse=True)
def _reset_db():
    main.STORE.reset_db()
    yield
    main.ENGINE.wait_for_anchors(5)
