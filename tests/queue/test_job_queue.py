import asyncio
import json
from datetime import timedelta

import pytest

from litingest.core.errors import ErrorKind, JobStateError
from litingest.jobs.models import (
    FileImportRequest,
    IngestionJob,
    JobKind,
    JobState,
    SearchRequest,
    utcnow,
)
from litingest.jobs.queue import JobQueue
from litingest.search.base import SearchFilters


def search_job(query: str = "asthma") -> IngestionJob:
    return IngestionJob(
        kind=JobKind.SEARCH,
        request=SearchRequest(project_id="p1", query=query, limit=5),
    )


@pytest.mark.asyncio
async def test_fifo_dequeue():
    queue = JobQueue()
    first, second = search_job("first"), search_job("second")
    await queue.enqueue(first)
    await queue.enqueue(second)

    job = await queue.dequeue()

    assert job.request.query == "first"
    assert job.state is JobState.RUNNING
    assert job.progress_step == "starting"
    assert await queue.size() == 1


@pytest.mark.asyncio
async def test_dequeue_timeout_returns_none():
    queue = JobQueue()
    assert await queue.dequeue(timeout=0.01) is None


@pytest.mark.asyncio
async def test_dequeue_wakes_on_enqueue():
    queue = JobQueue()
    waiter = asyncio.create_task(queue.dequeue(timeout=1.0))
    await asyncio.sleep(0)
    job = search_job()
    await queue.enqueue(job)
    assert (await waiter).job_id == job.job_id


@pytest.mark.asyncio
async def test_each_job_handed_out_once():
    queue = JobQueue()
    for i in range(5):
        await queue.enqueue(search_job(f"q{i}"))

    taken = await asyncio.gather(*(queue.dequeue(timeout=0.05) for _ in range(8)))

    ids = [j.job_id for j in taken if j is not None]
    assert len(ids) == 5
    assert len(set(ids)) == 5


@pytest.mark.asyncio
async def test_duplicate_enqueue_rejected():
    queue = JobQueue()
    job = search_job()
    await queue.enqueue(job)
    with pytest.raises(JobStateError):
        await queue.enqueue(job)


@pytest.mark.asyncio
async def test_status_transitions():
    queue = JobQueue()
    jid = await queue.enqueue(search_job())
    await queue.dequeue()
    await queue.checkpoint(jid, "searching", 10)
    await queue.complete(jid, {"imported": 3})

    snapshot = queue.snapshot(jid)
    assert snapshot.state == "completed"
    assert snapshot.progress_pct == 100
    assert snapshot.result == {"imported": 3}


@pytest.mark.asyncio
async def test_checkpoint_never_moves_backwards():
    queue = JobQueue()
    jid = await queue.enqueue(search_job())
    await queue.dequeue()
    await queue.checkpoint(jid, "fetching", 40)

    with pytest.raises(JobStateError):
        await queue.checkpoint(jid, "searching", 10)
    assert queue.get(jid).progress_pct == 40


@pytest.mark.asyncio
async def test_transitions_require_running():
    queue = JobQueue()
    jid = await queue.enqueue(search_job())
    with pytest.raises(JobStateError):
        await queue.complete(jid, {})
    with pytest.raises(JobStateError):
        await queue.checkpoint("missing", "x", 1)


@pytest.mark.asyncio
async def test_record_attempt_resets_progress():
    queue = JobQueue()
    jid = await queue.enqueue(search_job())
    await queue.dequeue()
    assert await queue.record_attempt(jid) == 1
    await queue.checkpoint(jid, "fetching", 40)
    assert await queue.record_attempt(jid) == 2

    job = queue.get(jid)
    assert job.progress_pct == 0
    assert job.progress_step == "starting"


@pytest.mark.asyncio
async def test_resubmit_only_failed_jobs():
    queue = JobQueue()
    jid = await queue.enqueue(search_job())
    await queue.dequeue()
    await queue.record_attempt(jid)
    await queue.checkpoint(jid, "fetching", 40)
    await queue.fail(jid, "timeout: provider took too long", ErrorKind.TIMEOUT)

    failed = queue.snapshot(jid)
    assert failed.state == "failed"
    assert failed.error_kind == "timeout"

    await queue.resubmit(jid)

    job = queue.get(jid)
    assert job.state is JobState.PENDING
    assert job.error is None
    assert job.error_kind is None
    assert job.progress_pct == 0
    assert job.attempts == 0
    assert await queue.size() == 1

    running = await queue.dequeue()
    await queue.complete(running.job_id, {})
    with pytest.raises(JobStateError):
        await queue.resubmit(jid)


@pytest.mark.asyncio
async def test_fail_never_stores_empty_error():
    queue = JobQueue()
    jid = await queue.enqueue(search_job())
    await queue.dequeue()
    await queue.fail(jid, "")
    assert queue.get(jid).error


@pytest.mark.asyncio
async def test_snapshot_is_a_copy():
    queue = JobQueue()
    jid = await queue.enqueue(search_job())
    await queue.dequeue()
    await queue.complete(jid, {"provider_stats": {"pubmed": {"count": 1}}})

    snapshot = queue.snapshot(jid)
    snapshot.result["provider_stats"]["pubmed"]["count"] = 99

    assert queue.get(jid).result["provider_stats"]["pubmed"]["count"] == 1


@pytest.mark.asyncio
async def test_persistence(tmp_path):
    state_file = tmp_path / "jobs.json"
    queue = JobQueue(state_file=state_file)
    search = IngestionJob(
        kind=JobKind.SEARCH,
        request=SearchRequest(
            project_id="p1", query="persist", filters=SearchFilters(mindate="2020"), providers=["pubmed"]
        ),
    )
    upload = IngestionJob(
        kind=JobKind.FILE_IMPORT,
        request=FileImportRequest(project_id="p1", filename="refs.ris", content=b"\x00TY  - JOUR"),
    )
    running_id = await queue.enqueue(search)
    pending_id = await queue.enqueue(upload)
    await queue.dequeue()
    await queue.checkpoint(running_id, "searching", 10)

    restored = JobQueue(state_file=state_file)

    assert restored.get(running_id).state is JobState.RUNNING
    assert restored.get(running_id).progress_step == "searching"
    assert restored.get(running_id).request.filters.mindate == "2020"
    assert restored.get(pending_id).request.content == b"\x00TY  - JOUR"
    assert await restored.size() == 1
    assert (await restored.dequeue()).job_id == pending_id


@pytest.mark.asyncio
async def test_upload_bytes_kept_out_of_checkpoint_state(tmp_path):
    state_file = tmp_path / "jobs.json"
    queue = JobQueue(state_file=state_file)
    content = b"%PDF-1.4 " + bytes(range(256)) * 800
    job = IngestionJob(
        kind=JobKind.FILE_IMPORT,
        request=FileImportRequest(project_id="p1", filename="paper.pdf", content=content),
    )
    jid = await queue.enqueue(job)
    await queue.dequeue()
    for step, pct in [("parsing", 10), ("extracting", 40), ("deduplicating", 50)]:
        await queue.checkpoint(jid, step, pct)

    saved = json.loads(state_file.read_text())
    request = saved["jobs"][jid]["request"]
    assert "content_b64" not in request
    assert (queue.uploads_dir / request["upload_ref"]).read_bytes() == content
    assert state_file.stat().st_size < len(content)

    restored = JobQueue(state_file=state_file)
    assert restored.get(jid).request.content == content


@pytest.mark.asyncio
async def test_inline_upload_state_is_migrated(tmp_path):
    state_file = tmp_path / "jobs.json"
    job = IngestionJob(
        kind=JobKind.FILE_IMPORT,
        request=FileImportRequest(project_id="p1", filename="refs.ris", content=b"TY  - JOUR"),
    )
    state_file.write_text(
        json.dumps({"jobs": {job.job_id: job.to_dict()}, "pending_queue": [job.job_id]})
    )

    queue = JobQueue(state_file=state_file)
    assert (await queue.dequeue()).request.content == b"TY  - JOUR"

    restored = JobQueue(state_file=state_file)
    assert restored.get(job.job_id).request.content == b"TY  - JOUR"

@pytest.mark.asyncio
async def test_find_stale():
    queue = JobQueue(stale_after_seconds=60)
    jid = await queue.enqueue(search_job())
    await queue.dequeue()

    assert queue.find_stale() == []
    stale = queue.find_stale(now=utcnow() + timedelta(seconds=120))
    assert [j.job_id for j in stale] == [jid]
    assert queue.jobs_by_state(JobState.RUNNING)[0].job_id == jid
