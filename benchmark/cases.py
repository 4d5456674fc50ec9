"""
Benchmark cases.

Every case has a name, an iteration count and three coroutines. The runner
hands each of them a fresh local database created for the case:

    await case.setup(db)
    for itr in range(case.iterations):
        await case.test(db, itr)      # timed
    await case.teardown(db)           # always awaited, even after a failure
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from typing import Any, Awaitable, Iterable

from config import PROXY_PORT, couch_host, safe_random_db_name
from couch import CouchDatabase
from database import LocalDatabase
from proxy import ThrottleProxy
from replicator import ChangeInfo, Replication
from benchmark.fixtures import RewriteMode, build_fixture, create_doc_id

logger = logging.getLogger(__name__)


class BenchmarkCase:
    """Base class; subclasses override setup/test/teardown as needed."""

    def __init__(self, name: str, iterations: int):
        if iterations < 0:
            raise ValueError("iterations must be >= 0")
        self.name = name
        self.iterations = iterations

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, iterations={self.iterations})"

    def parameters(self) -> dict[str, Any]:
        return {"iterations": self.iterations}

    async def setup(self, db: LocalDatabase) -> None:
        pass

    async def test(self, db: LocalDatabase, itr: int) -> None:
        raise NotImplementedError

    async def teardown(self, db: LocalDatabase) -> None:
        pass


async def _run_teardown_steps(name: str, steps: Iterable[Awaitable[Any]]) -> None:
    """Await every step even if some fail, then raise the first failure."""
    errors = []
    for step in steps:
        try:
            await step
        except Exception as e:
            logger.error(f"Teardown step of {name} failed: {e}")
            errors.append(e)
    if errors:
        raise errors[0]


class BasicInsertsCase(BenchmarkCase):
    def __init__(self, name: str = "basic-inserts", iterations: int = 1000):
        super().__init__(name, iterations)

    async def test(self, db: LocalDatabase, itr: int) -> None:
        await db.post({"yo": "dawg"})


class BulkInsertsCase(BenchmarkCase):
    def __init__(self, name: str = "bulk-inserts", iterations: int = 100, docs_per_write: int = 100):
        super().__init__(name, iterations)
        self.docs_per_write = docs_per_write

    def parameters(self) -> dict[str, Any]:
        return {**super().parameters(), "docs_per_write": self.docs_per_write}

    async def test(self, db: LocalDatabase, itr: int) -> None:
        await db.bulk_docs([{"much": "docs", "very": "bulk"} for _ in range(self.docs_per_write)])


class _PopulatedCase(BenchmarkCase):
    """Case whose setup writes `number_docs` docs with sequential ids."""

    def __init__(self, name: str, iterations: int, number_docs: int):
        super().__init__(name, iterations)
        self.number_docs = number_docs

    def parameters(self) -> dict[str, Any]:
        return {**super().parameters(), "number_docs": self.number_docs}

    async def setup(self, db: LocalDatabase) -> None:
        await db.bulk_docs([
            {"_id": create_doc_id(i), "foo": "bar", "baz": "quux"}
            for i in range(self.number_docs)
        ])


class BasicGetsCase(_PopulatedCase):
    def __init__(self, name: str = "basic-gets", iterations: int = 10000):
        super().__init__(name, iterations, number_docs=iterations)

    async def test(self, db: LocalDatabase, itr: int) -> None:
        await db.get(create_doc_id(itr))


class AllDocsSkipLimitCase(_PopulatedCase):
    def __init__(self, name: str = "all-docs-skip-limit", iterations: int = 50, number_docs: int = 1000):
        super().__init__(name, iterations, number_docs)

    async def test(self, db: LocalDatabase, itr: int) -> None:
        await asyncio.gather(*(db.all_docs(skip=i * 100, limit=10) for i in range(10)))


class AllDocsStartkeyEndkeyCase(_PopulatedCase):
    def __init__(self, name: str = "all-docs-startkey-endkey", iterations: int = 50, number_docs: int = 1000):
        super().__init__(name, iterations, number_docs)

    async def test(self, db: LocalDatabase, itr: int) -> None:
        await asyncio.gather(*(
            db.all_docs(startkey=create_doc_id(i * 100), endkey=create_doc_id(i * 100 + 10))
            for i in range(10)
        ))


class PullReplicationCase(BenchmarkCase):
    """Time one-shot pull replications from a throttled remote into local dbs.

    Setup creates a remote database on the CouchDB host, starts the throttle
    proxy in front of it, creates one local database per iteration and writes
    the fixture. Each iteration replicates the proxied remote into its own
    local database. Teardown closes the proxy and destroys every database.

    Args:
        generations: Revisions per fixture document, at least 1
        number_docs: Fixture size
        batch_size: Docs per replication batch
        added_latency_ms: Delay the proxy adds to each request; None replicates
            straight from the remote without a proxy
        max_sockets: Connection pool size of the remote clients
        rewrite: How fixture generations are written, see build_fixture
        host: CouchDB server, COUCH_HOST when not given
        proxy_port: Port the throttle proxy listens on
    """

    def __init__(
        self,
        name: str,
        iterations: int = 1,
        generations: int = 1,
        number_docs: int = 10,
        batch_size: int = 100,
        added_latency_ms: float | None = 10,
        max_sockets: int = 15,
        rewrite: RewriteMode = "bulk",
        host: str | None = None,
        proxy_port: int = PROXY_PORT,
    ):
        if generations <= 0:
            raise ValueError("generations must be > 0")
        super().__init__(name, iterations)
        self.generations = generations
        self.number_docs = number_docs
        self.batch_size = batch_size
        self.added_latency_ms = added_latency_ms
        self.max_sockets = max_sockets
        self.rewrite = rewrite
        self.host = host
        self.proxy_port = proxy_port

        self.remote_db: CouchDatabase | None = None
        self.proxied_remote_db: CouchDatabase | None = None
        self.proxy_server: ThrottleProxy | None = None
        self.local_dbs: list[LocalDatabase] = []

    def parameters(self) -> dict[str, Any]:
        return {
            **super().parameters(),
            "generations": self.generations,
            "number_docs": self.number_docs,
            "batch_size": self.batch_size,
            "added_latency_ms": self.added_latency_ms,
            "max_sockets": self.max_sockets,
            "rewrite": self.rewrite,
        }

    async def setup(self, db: LocalDatabase) -> None:
        remote_url = f"{self.host or couch_host()}/{safe_random_db_name()}"
        self.remote_db = CouchDatabase(remote_url, max_sockets=self.max_sockets)
        await self.remote_db.create()

        if self.added_latency_ms is not None:
            self.proxy_server = ThrottleProxy(remote_url, self.added_latency_ms, port=self.proxy_port)
            await self.proxy_server.start()
            self.proxied_remote_db = CouchDatabase(
                self.proxy_server.proxied_url(remote_url), max_sockets=self.max_sockets
            )
        else:
            self.proxied_remote_db = self.remote_db

        self.local_dbs = [LocalDatabase(safe_random_db_name()) for _ in range(self.iterations)]

        await build_fixture(self.remote_db, self.number_docs, self.generations, self.rewrite)
        logger.info(
            f"{self.name}: {self.number_docs} docs x {self.generations} generation(s) ready in {self.remote_db!r}"
        )

    async def test(self, db: LocalDatabase, itr: int) -> None:
        replication = Replication(self.proxied_remote_db, self.local_dbs[itr], batch_size=self.batch_size)
        replication.on_change(lambda info: logger.debug(f"{self.name}[{itr}] change: {info}"))
        result = await replication.run()
        if result.docs_written != self.number_docs:
            raise RuntimeError(
                f"{self.name}: replicated {result.docs_written} of {self.number_docs} docs"
            )

    def _teardown_steps(self):
        if self.proxy_server is not None:
            yield self.proxy_server.close()
        if self.proxied_remote_db is not None and self.proxied_remote_db is not self.remote_db:
            yield self.proxied_remote_db.close()
        if self.remote_db is not None:
            yield self.remote_db.destroy()
            yield self.remote_db.close()
        for local_db in self.local_dbs:
            yield local_db.destroy()

    async def teardown(self, db: LocalDatabase) -> None:
        try:
            await _run_teardown_steps(self.name, self._teardown_steps())
        finally:
            self.remote_db = None
            self.proxied_remote_db = None
            self.proxy_server = None
            self.local_dbs = []


class RemoteReplicationCase(BenchmarkCase):
    """Pull from an existing remote database, stopping after `stop_after` docs.

    The remote is only read from and is never destroyed.
    """

    def __init__(
        self,
        name: str,
        remote_url: str,
        iterations: int = 1,
        batch_size: int = 100,
        stop_after: int = 200,
        max_sockets: int = 15,
    ):
        super().__init__(name, iterations)
        self.remote_url = remote_url
        self.batch_size = batch_size
        self.stop_after = stop_after
        self.max_sockets = max_sockets
        self.remote_db: CouchDatabase | None = None
        self.local_dbs: list[LocalDatabase] = []

    def parameters(self) -> dict[str, Any]:
        return {
            **super().parameters(),
            "batch_size": self.batch_size,
            "stop_after": self.stop_after,
            "max_sockets": self.max_sockets,
        }

    async def setup(self, db: LocalDatabase) -> None:
        self.remote_db = CouchDatabase(self.remote_url, max_sockets=self.max_sockets)
        self.local_dbs = [LocalDatabase(safe_random_db_name()) for _ in range(self.iterations)]

    async def test(self, db: LocalDatabase, itr: int) -> None:
        replication = Replication(self.remote_db, self.local_dbs[itr], batch_size=self.batch_size)

        def stop_when_enough(info: ChangeInfo) -> None:
            if info.docs_written >= self.stop_after:
                replication.cancel()

        replication.on_change(stop_when_enough)
        await replication.run()

    def _teardown_steps(self):
        if self.remote_db is not None:
            yield self.remote_db.close()
        for local_db in self.local_dbs:
            yield local_db.destroy()

    async def teardown(self, db: LocalDatabase) -> None:
        try:
            await _run_teardown_steps(self.name, self._teardown_steps())
        finally:
            self.remote_db = None
            self.local_dbs = []


def duplicate_case_names(names: Iterable[str]) -> list[str]:
    """Names used by more than one case. Results are keyed by case name."""
    return sorted(name for name, count in Counter(names).items() if count > 1)


def default_cases() -> list[BenchmarkCase]:
    """The suite run when no plan file is given."""
    return [
        BasicInsertsCase(),
        BulkInsertsCase(),
        BasicGetsCase(),
        AllDocsSkipLimitCase(),
        AllDocsStartkeyEndkeyCase(),
        PullReplicationCase(
            name="pull-replicationperf-one-generation",
            iterations=1,
            generations=1,
            number_docs=10,
            batch_size=100,
            added_latency_ms=10,
            max_sockets=15,
        ),
        PullReplicationCase(
            name="pull-replicationperf-two-generations",
            iterations=1,
            generations=2,
            number_docs=10,
            batch_size=100,
            added_latency_ms=10,
            max_sockets=15,
        ),
    ]
