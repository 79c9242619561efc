import os
import tempfile

# Point the default data directory somewhere disposable before app modules
# read it, and keep app.main from launching a browser on import.
os.environ.setdefault("FIRCRAWL_DATA_DIR", tempfile.mkdtemp(prefix="fircrawl-tests-"))
os.environ.setdefault("FIRCRAWL_START_SESSION_ON_BOOT", "0")
