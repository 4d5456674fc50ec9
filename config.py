import os
import random
from pathlib import Path

# Read from environment, default to "data" for local databases
DATA_DIR = Path(os.environ.get("DATA_DIR", "data"))

DEFAULT_COUCH_HOST = "http://localhost:5984"

# Port the throttling reverse proxy listens on
PROXY_PORT = int(os.environ.get("THROTTLE_PROXY_PORT", "3001"))


def couch_host() -> str:
    """Get the CouchDB server to benchmark against."""
    return os.environ.get("COUCH_HOST", DEFAULT_COUCH_HOST).rstrip("/")


def get_data_dir() -> Path:
    """Get the configured data directory path."""
    return Path(os.environ.get("DATA_DIR", str(DATA_DIR)))


def safe_random_db_name() -> str:
    """Random database name that is valid for both CouchDB and the local store."""
    return "test" + repr(random.random()).replace(".", "_")


def get_random_int(min_value: int, max_value: int) -> int:
    """Random integer in [min_value, max_value)."""
    return random.randrange(min_value, max_value)
