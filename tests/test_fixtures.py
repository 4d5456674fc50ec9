import asyncio

import pytest

from couch import BulkWriteError
from database import parse_rev
from benchmark.fixtures import build_fixture, create_doc_id, generate_docs


def test_create_doc_id_is_zero_padded():
    assert create_doc_id(0) == "doc_0000000000"
    assert create_doc_id(42) == "doc_0000000042"
    assert create_doc_id(1234567890) == "doc_1234567890"


def test_generate_docs_unique_ids():
    docs = generate_docs(500)
    ids = [doc["_id"] for doc in docs]

    assert len(ids) == 500
    assert len(set(ids)) == 500
    assert all(len(doc_id) == len("doc_") + 10 for doc_id in ids)
    assert ids == sorted(ids)
    assert all(set(doc) == {"_id", "foo", "bar"} for doc in docs)


@pytest.mark.parametrize("rewrite", ["bulk", "fetch"])
@pytest.mark.parametrize("generations", [1, 2, 4])
def test_each_generation_adds_a_revision(local_db, rewrite, generations):
    doc_ids = asyncio.run(build_fixture(local_db, 20, generations, rewrite=rewrite))

    assert len(doc_ids) == 20
    for doc_id in doc_ids:
        doc = asyncio.run(local_db.get(doc_id, revs=True))
        assert parse_rev(doc["_rev"])[0] == generations
        assert len(doc["_revisions"]["ids"]) == generations
    assert asyncio.run(local_db.info())["doc_count"] == 20


def test_last_generation_is_what_is_stored(local_db, monkeypatch):
    values = iter(range(1000))
    monkeypatch.setattr("benchmark.fixtures.random.random", lambda: next(values))

    asyncio.run(build_fixture(local_db, 3, generations=2, rewrite="bulk"))

    # first generation draws 0..5, the second 6..11
    doc = asyncio.run(local_db.get(create_doc_id(1)))
    assert (doc["foo"], doc["bar"]) == (8, 9)


def test_generations_must_be_positive(local_db):
    with pytest.raises(ValueError, match="generations must be > 0"):
        asyncio.run(build_fixture(local_db, 10, generations=0))


def test_bulk_write_failures_abort_the_fixture(local_db):
    asyncio.run(local_db.put({"_id": create_doc_id(3)}))

    with pytest.raises(BulkWriteError) as exc_info:
        asyncio.run(build_fixture(local_db, 5, generations=1))
    assert exc_info.value.failures[0]["id"] == create_doc_id(3)
