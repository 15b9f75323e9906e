"""Unit tests for project stores."""

import asyncio
import itertools

import pytest

from litingest.core import ids
from litingest.core.models import NormalizedRef
from litingest.io.store import InMemoryProjectStore, SQLiteProjectStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryProjectStore()
    return SQLiteProjectStore(tmp_path)


@pytest.mark.asyncio
async def test_upsert_skips_known_hashes(store):
    a = NormalizedRef(title="A", doi="10.1/a")
    b = NormalizedRef(title="B", doi="10.1/b")

    assert await store.upsert_candidates("p1", [a, b]) == 2
    assert await store.upsert_candidates("p1", [a.model_copy(update={"title": "A again"})]) == 0
    assert await store.upsert_candidates("p2", [a]) == 1

    titles = [r.title for r in await store.existing_candidates("p1")]
    assert titles == ["A", "B"]
    await store.close()


@pytest.mark.asyncio
async def test_counters_accumulate(store):
    await store.increment_counters("p1", {"identified": 3, "duplicates": 1})
    await asyncio.gather(
        store.increment_counters("p1", {"identified": 2}),
        store.increment_counters("p1", {"identified": 5, "duplicates": 4}),
    )
    assert await store.counters("p1") == {"identified": 10, "duplicates": 5}
    assert await store.counters("other") == {}
    await store.close()


@pytest.mark.asyncio
async def test_audit_log_order(store):
    await store.append_audit("p1", "import_completed", {"added": 2})
    await store.append_audit("p2", "import_failed", {"error": "x"})
    await store.append_audit("p1", "search_run_completed", {"imported": 1})

    entries = await store.audit_log("p1")

    assert [e.action for e in entries] == ["import_completed", "search_run_completed"]
    assert entries[0].details == {"added": 2}
    await store.close()


@pytest.mark.asyncio
async def test_sqlite_persists_across_reopen(tmp_path):
    store = SQLiteProjectStore(tmp_path)
    await store.upsert_candidates("p1", [NormalizedRef(title="Kept", year=2020)])
    await store.increment_counters("p1", {"identified": 1})
    await store.close()

    reopened = SQLiteProjectStore(tmp_path)
    assert [r.title for r in await reopened.existing_candidates("p1")] == ["Kept"]
    assert await reopened.counters("p1") == {"identified": 1}
    await reopened.close()


@pytest.mark.asyncio
async def test_sqlite_titleless_records_survive_restart(tmp_path, monkeypatch):
    first = NormalizedRef(authors=["Smith J", "Doe A"], journal="J Med Res", year=2019,
                          raw_text="1. Smith J, Doe A. J Med Res 2019;12:1-9", partial=True)
    second = NormalizedRef(authors=["Brown K"], journal="Lancet Rev", year=2021,
                           raw_text="1. Brown K. Lancet Rev 2021;3:44-50", partial=True)

    store = SQLiteProjectStore(tmp_path)
    assert await store.upsert_candidates("p1", [first]) == 1
    await store.close()

    # A fresh process restarts the in-memory anonymous key sequence.
    monkeypatch.setattr(ids, "_anonymous_keys", itertools.count(1))
    reopened = SQLiteProjectStore(tmp_path)
    assert await reopened.upsert_candidates("p1", [second]) == 1
    assert await reopened.upsert_candidates("p1", [first]) == 0
    assert len(await reopened.existing_candidates("p1")) == 2
    await reopened.close()


@pytest.mark.asyncio
async def test_concurrent_upserts_insert_each_record_once(store):
    refs = [NormalizedRef(title=f"Paper {i}", doi=f"10.1/{i}") for i in range(20)]

    counts = await asyncio.gather(
        store.upsert_candidates("p1", refs[:15]),
        store.upsert_candidates("p1", refs[5:]),
        store.upsert_candidates("p1", refs[::2]),
    )

    assert sum(counts) == 20
    assert len(await store.existing_candidates("p1")) == 20
    await store.close()
