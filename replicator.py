"""
One-shot pull replication between two document databases.

Follows the CouchDB replication protocol: read the source changes feed in
batches, ask the target which revisions it is missing, fetch exactly those
revisions with their history and write them with new_edits=false. Progress is
checkpointed in a _local document on the target so a later run resumes from
the last replicated sequence.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Callable, Protocol

from couch import NotFound

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


class DocumentStore(Protocol):
    """What the replicator needs from a source or target database."""

    url: str

    async def changes(self, since: Any = 0, limit: int | None = None) -> dict[str, Any]: ...

    async def revs_diff(self, revs: dict[str, list[str]]) -> dict[str, dict[str, Any]]: ...

    async def bulk_get(self, docs: list[dict[str, str]]) -> list[dict[str, Any]]: ...

    async def bulk_docs(self, docs: list[dict[str, Any]], new_edits: bool = True) -> list[dict[str, Any]]: ...

    async def get_local(self, local_id: str) -> dict[str, Any]: ...

    async def put_local(self, doc: dict[str, Any]) -> dict[str, Any]: ...


class ReplicationError(Exception):
    """Replication stopped on an error. `info` holds progress up to that point."""

    def __init__(self, message: str, info: ChangeInfo):
        super().__init__(message)
        self.info = info


@dataclass
class ChangeInfo:
    """Progress snapshot passed to change callbacks."""

    docs_read: int = 0
    docs_written: int = 0
    doc_write_failures: int = 0
    last_seq: Any = 0


@dataclass
class ReplicationResult:
    """Final outcome of a replication run."""

    ok: bool
    status: str  # "complete" or "cancelled"
    docs_read: int
    docs_written: int
    doc_write_failures: int
    last_seq: Any
    start_time: datetime
    end_time: datetime

    @property
    def duration_s(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["start_time"] = self.start_time.isoformat()
        data["end_time"] = self.end_time.isoformat()
        return data


def build_replication_id(source_url: str, target_url: str) -> str:
    if source_url == target_url:
        raise ValueError(f"cannot replicate to self: {source_url!r}")
    data = json.dumps({"source": source_url, "target": target_url, "mode": "pull"}, sort_keys=True)
    return hashlib.md5(data.encode()).hexdigest()


def changes_for_revs_diff(results: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Turn changes feed rows into the body of a _revs_diff request."""
    return {row["id"]: [change["rev"] for change in row["changes"]] for row in results}


def missing_refs(diff: dict[str, dict[str, Any]]) -> list[dict[str, str]]:
    return [{"id": doc_id, "rev": rev} for doc_id, entry in diff.items() for rev in entry["missing"]]


class Replication:
    """A single non-live replication from `source` into `target`.

    Register change callbacks with on_change(), then await run(). run()
    resolves exactly once, with a ReplicationResult on completion or
    cancellation, or raises ReplicationError.
    """

    def __init__(
        self,
        source: DocumentStore,
        target: DocumentStore,
        batch_size: int = BATCH_SIZE,
        live: bool = False,
    ):
        if live:
            raise ValueError("live replication is not supported")
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.source = source
        self.target = target
        self.batch_size = batch_size
        self.replication_id = build_replication_id(source.url, target.url)
        self.info = ChangeInfo()
        self._change_callbacks: list[Callable[[ChangeInfo], None]] = []
        self._cancelled = False
        self._started = False
        self._checkpoint_rev: str | None = None

    def on_change(self, callback: Callable[[ChangeInfo], None]) -> Replication:
        self._change_callbacks.append(callback)
        return self

    def cancel(self) -> None:
        """Stop after the batch in flight has been written."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def _read_checkpoint(self) -> Any:
        try:
            doc = await self.target.get_local(self.replication_id)
        except NotFound:
            return 0
        self._checkpoint_rev = doc["_rev"]
        return doc.get("last_seq", 0)

    async def _write_checkpoint(self, last_seq: Any) -> None:
        doc = {"_id": f"_local/{self.replication_id}", "last_seq": last_seq}
        if self._checkpoint_rev:
            doc["_rev"] = self._checkpoint_rev
        response = await self.target.put_local(doc)
        self._checkpoint_rev = response["rev"]

    def _emit_change(self) -> None:
        snapshot = ChangeInfo(**asdict(self.info))
        for callback in self._change_callbacks:
            callback(snapshot)

    async def _replicate_batch(self, results: list[dict[str, Any]]) -> None:
        diff = await self.target.revs_diff(changes_for_revs_diff(results))
        docs = await self.source.bulk_get(missing_refs(diff))
        self.info.docs_read += len(docs)
        if docs:
            failures = await self.target.bulk_docs(docs, new_edits=False)
            failed = [f for f in failures if "error" in f]
            self.info.doc_write_failures += len(failed)
            self.info.docs_written += len(docs) - len(failed)

    async def run(self) -> ReplicationResult:
        if self._started:
            raise RuntimeError("replication already started")
        self._started = True
        start_time = datetime.now()
        logger.debug(f"Replicating {self.source!r} -> {self.target!r} (batch_size={self.batch_size})")

        try:
            since = await self._read_checkpoint()
            self.info.last_seq = since
            while not self._cancelled:
                changes = await self.source.changes(since=since, limit=self.batch_size)
                results = changes["results"]
                if not results:
                    break

                await self._replicate_batch(results)
                since = changes["last_seq"]
                self.info.last_seq = since
                await self._write_checkpoint(since)

                logger.debug(f"Replication change: {self.info}")
                self._emit_change()

                if len(results) < self.batch_size:
                    break
        except Exception as e:
            logger.error(f"Replication {self.replication_id} failed: {e}")
            raise ReplicationError(str(e), self.info) from e

        return ReplicationResult(
            ok=self.info.doc_write_failures == 0,
            status="cancelled" if self._cancelled else "complete",
            docs_read=self.info.docs_read,
            docs_written=self.info.docs_written,
            doc_write_failures=self.info.doc_write_failures,
            last_seq=self.info.last_seq,
            start_time=start_time,
            end_time=datetime.now(),
        )


async def replicate(
    source: DocumentStore,
    target: DocumentStore,
    batch_size: int = BATCH_SIZE,
    on_change: Callable[[ChangeInfo], None] | None = None,
) -> ReplicationResult:
    """Run one non-live replication to completion."""
    replication = Replication(source, target, batch_size=batch_size)
    if on_change is not None:
        replication.on_change(on_change)
    return await replication.run()
