"""
Local document database stored in sqlite.

Exposes the same async document API as couch.CouchDatabase so either can be
the source or target of a replication.
"""
from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from config import get_data_dir
from couch import Conflict, NotFound

logger = logging.getLogger(__name__)

_RESERVED = ("_id", "_rev", "_revisions", "_deleted")


def parse_rev(rev: str) -> tuple[int, str]:
    """Split "3-abc" into (3, "abc")."""
    gen, _, digest = rev.partition("-")
    return int(gen), digest


def _new_rev_hash(prev_rev: str | None, body: dict[str, Any], deleted: bool) -> str:
    payload = json.dumps([prev_rev, deleted, body], sort_keys=True).encode()
    return hashlib.md5(payload).hexdigest()


def _split_doc(doc: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in _RESERVED}


class LocalDatabase:
    """A document database living in a single sqlite file under DATA_DIR."""

    def __init__(self, name: str, data_dir: Path | None = None):
        self.name = name
        self.path = (data_dir or get_data_dir()) / f"{name}.sqlite"
        self.url = str(self.path)
        self._init_schema()

    def __repr__(self) -> str:
        return f"LocalDatabase({self.name!r})"

    async def __aenter__(self) -> LocalDatabase:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        conn = sqlite3.connect(self.path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    rev TEXT NOT NULL,
                    revs TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    body TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS known_revs (
                    doc_id TEXT NOT NULL,
                    rev TEXT NOT NULL,
                    PRIMARY KEY (doc_id, rev)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS local_docs (
                    id TEXT PRIMARY KEY,
                    rev TEXT NOT NULL,
                    body TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_seq ON documents(seq)")
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions with IMMEDIATE locking."""
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _next_seq(conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM documents").fetchone()
        return row[0]

    @staticmethod
    def _load_row(conn: sqlite3.Connection, doc_id: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT id, rev, revs, seq, deleted, body FROM documents WHERE id = ?",
            (doc_id,),
        ).fetchone()

    def _write_edit(self, conn: sqlite3.Connection, doc: dict[str, Any]) -> dict[str, Any]:
        """Apply one edit with conflict checking, return {ok, id, rev}."""
        doc_id = doc.get("_id") or uuid.uuid4().hex
        deleted = bool(doc.get("_deleted", False))
        body = _split_doc(doc)
        row = self._load_row(conn, doc_id)

        if row is None:
            if "_rev" in doc:
                raise Conflict()
            prev_rev = None
            history = []
        elif row["deleted"] and "_rev" not in doc:
            # recreating a deleted document extends its history
            prev_rev = row["rev"]
            history = json.loads(row["revs"])
        else:
            if doc.get("_rev") != row["rev"]:
                raise Conflict()
            prev_rev = row["rev"]
            history = json.loads(row["revs"])

        gen = parse_rev(prev_rev)[0] + 1 if prev_rev else 1
        new_rev = f"{gen}-{_new_rev_hash(prev_rev, body, deleted)}"
        history = [new_rev.split("-", 1)[1]] + history
        self._store(conn, doc_id, new_rev, history, deleted, body)
        return {"ok": True, "id": doc_id, "rev": new_rev}

    def _write_replicated(self, conn: sqlite3.Connection, doc: dict[str, Any]) -> None:
        """Store a revision as-is; the higher revision wins the document."""
        doc_id = doc["_id"]
        new_rev = doc["_rev"]
        revisions = doc.get("_revisions")
        history = revisions["ids"] if revisions else [parse_rev(new_rev)[1]]

        conn.execute(
            "INSERT OR IGNORE INTO known_revs (doc_id, rev) VALUES (?, ?)",
            (doc_id, new_rev),
        )
        if revisions:
            start = revisions["start"]
            for offset, digest in enumerate(revisions["ids"][1:], start=1):
                conn.execute(
                    "INSERT OR IGNORE INTO known_revs (doc_id, rev) VALUES (?, ?)",
                    (doc_id, f"{start - offset}-{digest}"),
                )

        row = self._load_row(conn, doc_id)
        if row is not None and parse_rev(row["rev"]) >= parse_rev(new_rev):
            return
        self._store(conn, doc_id, new_rev, history, bool(doc.get("_deleted", False)), _split_doc(doc))

    def _store(
        self,
        conn: sqlite3.Connection,
        doc_id: str,
        rev: str,
        history: list[str],
        deleted: bool,
        body: dict[str, Any],
    ) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO documents (id, rev, revs, seq, deleted, body) VALUES (?, ?, ?, ?, ?, ?)",
            (doc_id, rev, json.dumps(history), self._next_seq(conn), int(deleted), json.dumps(body)),
        )
        conn.execute(
            "INSERT OR IGNORE INTO known_revs (doc_id, rev) VALUES (?, ?)",
            (doc_id, rev),
        )

    @staticmethod
    def _row_to_doc(row: sqlite3.Row, revs: bool = False) -> dict[str, Any]:
        doc = {"_id": row["id"], "_rev": row["rev"]}
        doc.update(json.loads(row["body"]))
        if row["deleted"]:
            doc["_deleted"] = True
        if revs:
            doc["_revisions"] = {"start": parse_rev(row["rev"])[0], "ids": json.loads(row["revs"])}
        return doc

    async def close(self) -> None:
        """Connections are opened per call, nothing to release."""

    async def info(self) -> dict[str, Any]:
        conn = self._get_connection()
        try:
            doc_count = conn.execute("SELECT COUNT(*) FROM documents WHERE deleted = 0").fetchone()[0]
            update_seq = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM documents").fetchone()[0]
        finally:
            conn.close()
        return {"db_name": self.name, "doc_count": doc_count, "update_seq": update_seq}

    async def destroy(self) -> None:
        self.path.unlink(missing_ok=True)
        logger.debug(f"Destroyed local database {self.name}")

    async def get(self, doc_id: str, rev: str | None = None, revs: bool = False) -> dict[str, Any]:
        conn = self._get_connection()
        try:
            row = self._load_row(conn, doc_id)
        finally:
            conn.close()
        if row is None or (rev is None and row["deleted"]):
            raise NotFound("deleted" if row is not None else "missing")
        if rev is not None and rev != row["rev"]:
            raise NotFound("missing")
        return self._row_to_doc(row, revs=revs)

    async def put(self, doc: dict[str, Any]) -> dict[str, Any]:
        with self._transaction() as conn:
            return self._write_edit(conn, doc)

    async def post(self, doc: dict[str, Any]) -> dict[str, Any]:
        doc = dict(doc)
        doc.setdefault("_id", uuid.uuid4().hex)
        return await self.put(doc)

    async def bulk_docs(self, docs: list[dict[str, Any]], new_edits: bool = True) -> list[dict[str, Any]]:
        """Write many documents in one transaction.

        With new_edits the result holds one entry per document, either
        {ok, id, rev} or {id, error, reason}. Without it the revisions are
        stored as given and, like CouchDB, an empty list is returned.
        """
        results = []
        with self._transaction() as conn:
            for doc in docs:
                if not new_edits:
                    self._write_replicated(conn, doc)
                    continue
                try:
                    results.append(self._write_edit(conn, doc))
                except Conflict as e:
                    results.append({"id": doc.get("_id"), "error": e.error, "reason": e.reason})
        return results

    async def all_docs(
        self,
        skip: int | None = None,
        limit: int | None = None,
        startkey: str | None = None,
        endkey: str | None = None,
        include_docs: bool = False,
    ) -> dict[str, Any]:
        clauses = ["deleted = 0"]
        params: list[Any] = []
        if startkey is not None:
            clauses.append("id >= ?")
            params.append(startkey)
        if endkey is not None:
            clauses.append("id <= ?")
            params.append(endkey)
        query = f"SELECT id, rev, revs, seq, deleted, body FROM documents WHERE {' AND '.join(clauses)} ORDER BY id"
        query += " LIMIT ? OFFSET ?"
        params.extend([limit if limit is not None else -1, skip or 0])

        conn = self._get_connection()
        try:
            total_rows = conn.execute("SELECT COUNT(*) FROM documents WHERE deleted = 0").fetchone()[0]
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        result_rows = []
        for row in rows:
            item: dict[str, Any] = {"id": row["id"], "key": row["id"], "value": {"rev": row["rev"]}}
            if include_docs:
                item["doc"] = self._row_to_doc(row)
            result_rows.append(item)
        return {"total_rows": total_rows, "offset": skip or 0, "rows": result_rows}

    async def changes(self, since: Any = 0, limit: int | None = None) -> dict[str, Any]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT id, rev, seq, deleted FROM documents WHERE seq > ? ORDER BY seq LIMIT ?",
                (int(since or 0), limit if limit is not None else -1),
            ).fetchall()
        finally:
            conn.close()

        results = []
        for row in rows:
            change: dict[str, Any] = {"seq": row["seq"], "id": row["id"], "changes": [{"rev": row["rev"]}]}
            if row["deleted"]:
                change["deleted"] = True
            results.append(change)
        last_seq = results[-1]["seq"] if results else int(since or 0)
        return {"results": results, "last_seq": last_seq}

    async def revs_diff(self, revs: dict[str, list[str]]) -> dict[str, dict[str, Any]]:
        diff = {}
        conn = self._get_connection()
        try:
            for doc_id, rev_list in revs.items():
                known = {
                    row["rev"]
                    for row in conn.execute("SELECT rev FROM known_revs WHERE doc_id = ?", (doc_id,))
                }
                missing = [rev for rev in rev_list if rev not in known]
                if missing:
                    diff[doc_id] = {"missing": missing}
        finally:
            conn.close()
        return diff

    async def bulk_get(self, docs: list[dict[str, str]]) -> list[dict[str, Any]]:
        """Fetch exact revisions with history. Only winning revisions are kept."""
        found = []
        for ref in docs:
            found.append(await self.get(ref["id"], rev=ref.get("rev"), revs=True))
        return found

    async def get_local(self, local_id: str) -> dict[str, Any]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT rev, body FROM local_docs WHERE id = ?", (local_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFound("missing")
        doc = json.loads(row["body"])
        doc.update({"_id": f"_local/{local_id}", "_rev": row["rev"]})
        return doc

    async def put_local(self, doc: dict[str, Any]) -> dict[str, Any]:
        local_id = doc["_id"].removeprefix("_local/")
        with self._transaction() as conn:
            row = conn.execute("SELECT rev FROM local_docs WHERE id = ?", (local_id,)).fetchone()
            current = row["rev"] if row is not None else None
            if doc.get("_rev") != current:
                raise Conflict()
            counter = int(parse_rev(current)[1]) + 1 if current else 1
            new_rev = f"0-{counter}"
            conn.execute(
                "INSERT OR REPLACE INTO local_docs (id, rev, body) VALUES (?, ?, ?)",
                (local_id, new_rev, json.dumps(_split_doc(doc))),
            )
        return {"ok": True, "id": f"_local/{local_id}", "rev": new_rev}
