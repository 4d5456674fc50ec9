"""
Synthetic document sets for replication benchmarks.

A fixture is written in "generations": the first generation creates every
document, each further generation rewrites every document with new random
values so each one ends up with a revision history `generations` deep.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Literal

from couch import BulkWriteError

logger = logging.getLogger(__name__)

DOC_ID_WIDTH = 10

RewriteMode = Literal["bulk", "fetch"]


def create_doc_id(i: int) -> str:
    """Zero-padded id so ids sort in creation order: 7 -> doc_0000000007."""
    return f"doc_{i:0{DOC_ID_WIDTH}d}"


def random_fields() -> dict[str, float]:
    return {"foo": random.random(), "bar": random.random()}


def generate_docs(number_docs: int) -> list[dict[str, Any]]:
    return [{"_id": create_doc_id(i), **random_fields()} for i in range(number_docs)]


def _check_bulk_response(response: list[dict[str, Any]]) -> None:
    failures = [r for r in response if "error" in r]
    if failures:
        raise BulkWriteError(failures)


async def _bulk_generation(db, docs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Write one generation; return the next one built from the written revs."""
    response = await db.bulk_docs(docs)
    _check_bulk_response(response)
    return [{"_id": r["id"], "_rev": r["rev"], **random_fields()} for r in response]


async def _rewrite_doc(db, doc_id: str) -> dict[str, Any]:
    doc = await db.get(doc_id)
    doc.update(random_fields())
    return await db.put(doc)


async def _fetch_generation(db, doc_ids: list[str]) -> None:
    """Fetch and rewrite every document. The writes are unordered."""
    await asyncio.gather(*(_rewrite_doc(db, doc_id) for doc_id in doc_ids))


async def build_fixture(
    db,
    number_docs: int,
    generations: int = 1,
    rewrite: RewriteMode = "bulk",
) -> list[str]:
    """Populate `db` with `number_docs` documents, each `generations` revisions deep.

    Args:
        db: Database to write to (couch.CouchDatabase or database.LocalDatabase)
        number_docs: How many documents to create
        generations: Revisions per document, must be at least 1
        rewrite: "bulk" rewrites each generation with one bulk write using the
            revs returned by the previous one; "fetch" gets and puts every
            document individually, concurrently within a generation

    Returns:
        The ids of the created documents.
    """
    if generations <= 0:
        raise ValueError("generations must be > 0")
    if rewrite not in ("bulk", "fetch"):
        raise ValueError(f"rewrite must be 'bulk' or 'fetch'; got {rewrite!r}")

    docs = generate_docs(number_docs)
    doc_ids = [doc["_id"] for doc in docs]
    logger.debug(f"Building fixture of {number_docs} docs x {generations} generation(s) ({rewrite})")

    if rewrite == "bulk":
        for _ in range(generations):
            docs = await _bulk_generation(db, docs)
    else:
        _check_bulk_response(await db.bulk_docs(docs))
        for _ in range(generations - 1):
            await _fetch_generation(db, doc_ids)

    return doc_ids
