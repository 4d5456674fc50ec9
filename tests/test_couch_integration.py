"""
End-to-end checks against a live CouchDB server.

Skipped unless COUCH_HOST (default http://localhost:5984) answers. An httpx
client belongs to the event loop it first ran on, so every test does its
CouchDB work inside a single asyncio.run().
"""

import asyncio
import socket
from contextlib import asynccontextmanager

import httpx
import pytest

from config import safe_random_db_name
from couch import BulkWriteError, CouchDatabase, NotFound
from database import LocalDatabase
from replicator import replicate
from benchmark.cases import PullReplicationCase
from benchmark.fixtures import build_fixture


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@asynccontextmanager
async def scratch_database(couch_url: str):
    """A new remote database, destroyed and closed on exit."""
    async with CouchDatabase(f"{couch_url}/{safe_random_db_name()}") as db:
        await db.create()
        try:
            yield db
        finally:
            await db.destroy()


@pytest.mark.parametrize("generations", [1, 3])
def test_fixture_generations_on_couch(couch_url, generations):
    async def scenario():
        async with scratch_database(couch_url) as db:
            doc_ids = await build_fixture(db, 25, generations)
            doc = await db.get(doc_ids[7], revs=True)
            info = await db.info()
        return doc, info

    doc, info = asyncio.run(scenario())

    assert doc["_rev"].startswith(f"{generations}-")
    assert len(doc["_revisions"]["ids"]) == generations
    assert info["doc_count"] == 25


def test_pull_from_couch_keeps_revisions(couch_url, local_db):
    async def scenario():
        async with scratch_database(couch_url) as db:
            await build_fixture(db, 30, generations=2)
            result = await replicate(db, local_db, batch_size=7)
            remote_doc = await db.get("doc_0000000011", revs=True)
        return result, remote_doc

    result, remote_doc = asyncio.run(scenario())

    assert result.docs_written == 30
    local_doc = asyncio.run(local_db.get("doc_0000000011", revs=True))
    assert local_doc == remote_doc


def test_client_is_reusable_within_one_loop(couch_url):
    async def scenario():
        async with scratch_database(couch_url) as db:
            return [(await db.info())["doc_count"] for _ in range(3)]

    assert asyncio.run(scenario()) == [0, 0, 0]


@pytest.mark.parametrize("added_latency_ms", [None, 10])
def test_pull_replication_case_end_to_end(couch_url, tmp_path, added_latency_ms):
    case = PullReplicationCase(
        "pull-e2e",
        iterations=2,
        generations=2,
        number_docs=20,
        batch_size=5,
        added_latency_ms=added_latency_ms,
        host=couch_url,
        proxy_port=_free_port(),
    )
    runner_db = LocalDatabase("runner", data_dir=tmp_path)

    async def scenario():
        await case.setup(runner_db)
        remote_url = case.remote_db.url
        local_paths = [db.path for db in case.local_dbs]
        try:
            for itr in range(case.iterations):
                await case.test(runner_db, itr)
            counts = [(await db.info())["doc_count"] for db in case.local_dbs]
        finally:
            await case.teardown(runner_db)
        return remote_url, local_paths, counts

    remote_url, local_paths, counts = asyncio.run(scenario())

    assert counts == [20, 20]
    assert not any(path.exists() for path in local_paths)

    async def remote_info():
        async with CouchDatabase(remote_url) as db:
            return await db.info()

    with pytest.raises(NotFound):
        asyncio.run(remote_info())
    assert case.remote_db is None
    assert case.proxy_server is None


def test_teardown_after_failed_fixture_releases_proxy(couch_url, tmp_path):
    port = _free_port()
    case = PullReplicationCase("bad-fixture", number_docs=5, host=couch_url, proxy_port=port, rewrite="fetch")
    runner_db = LocalDatabase("runner", data_dir=tmp_path)

    async def scenario():
        try:
            await case.setup(runner_db)
            # a second fixture on the same docs conflicts
            with pytest.raises(BulkWriteError):
                await build_fixture(case.remote_db, 5)
        finally:
            await case.teardown(runner_db)
        async with httpx.AsyncClient() as client:
            with pytest.raises(httpx.ConnectError):
                await client.get(f"http://127.0.0.1:{port}/")

    asyncio.run(scenario())
