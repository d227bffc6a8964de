import os
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Module-level stores read these on first import; keep test runs off backend/data.
os.environ.setdefault("SLOTWISE_DATA_DIR", tempfile.mkdtemp(prefix="slotwise-tests-"))
os.environ.setdefault("NOTIFICATION_DISPATCH", "inline")
os.environ.setdefault("CACHE_BACKEND", "memory")
