import os
import shutil
from pathlib import Path

import httpx
import pytest

from database import LocalDatabase


def pytest_configure(config):
    """
    Hook that runs before test collection.
    Set DATA_DIR environment variable for all tests.
    """
    temp_dir = Path("pytest-data-tmp")

    # Clean up if it exists from a previous run
    if temp_dir.exists():
        shutil.rmtree(temp_dir)

    temp_dir.mkdir(parents=True, exist_ok=True)

    # Local databases created without an explicit directory land here
    os.environ["DATA_DIR"] = str(temp_dir)


def pytest_unconfigure(config):
    """
    Hook that runs after all tests complete.
    Clean up temporary data directory.
    """
    temp_dir = Path("pytest-data-tmp")
    if temp_dir.exists():
        shutil.rmtree(temp_dir)


@pytest.fixture
def local_db(tmp_path):
    return LocalDatabase("local", data_dir=tmp_path)


@pytest.fixture
def other_db(tmp_path):
    return LocalDatabase("other", data_dir=tmp_path)


@pytest.fixture(scope="session")
def couch_url():
    """
    Base URL of a reachable CouchDB server taken from COUCH_HOST.

    Tests using it are skipped when no server answers.
    """
    host = os.environ.get("COUCH_HOST", "http://localhost:5984").rstrip("/")
    try:
        response = httpx.get(host + "/", timeout=2.0)
    except httpx.HTTPError:
        pytest.skip(f"CouchDB not reachable at {host}")
    if response.status_code != 200 or "couchdb" not in response.json():
        pytest.skip(f"{host} is not a CouchDB server")
    return host
