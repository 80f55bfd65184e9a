"""Tests for JobStore."""

from app.jobs import JobStatus, JobStore
from app.schemas.tasks import TaskAction, TaskActionResult


def test_create_and_get_job():
    store = JobStore()
    job = store.create_job("process_call", subject="call-1")
    assert job.status == JobStatus.pending
    assert store.get_job(job.job_id) is job


def test_active_job_found_while_pending_or_running():
    store = JobStore()
    job = store.create_job("process_call", subject="call-1")
    assert store.has_active_job("process_call", "call-1") is job

    store.mark_running(job.job_id)
    assert store.has_active_job("process_call", "call-1") is job
    assert job.started_at is not None


def test_active_job_scoped_by_type_and_subject():
    store = JobStore()
    store.create_job("process_call", subject="call-1")
    assert store.has_active_job("process_call", "call-2") is None
    assert store.has_active_job("retry_sweep", "call-1") is None


def test_completed_job_not_active():
    store = JobStore()
    job = store.create_job("process_call", subject="call-1")
    result = TaskActionResult(task_id=1, call_id="call-1", action=TaskAction.completed, message="ok")
    store.mark_completed(job.job_id, result)

    assert store.has_active_job("process_call", "call-1") is None
    assert job.status == JobStatus.completed
    assert job.result == result
    assert job.finished_at is not None


def test_failed_job():
    store = JobStore()
    job = store.create_job("retry_sweep")
    store.mark_failed(job.job_id, "boom")
    assert job.status == JobStatus.failed
    assert job.error == "boom"


def test_unknown_job_ids_ignored():
    store = JobStore()
    store.mark_running("nope")
    store.mark_completed("nope", None)
    store.mark_failed("nope", "x")
    assert store.get_job("nope") is None


def test_evicts_oldest_finished_jobs():
    store = JobStore(max_jobs=2)
    first = store.create_job("retry_sweep")
    store.mark_completed(first.job_id, None)
    second = store.create_job("retry_sweep")
    third = store.create_job("retry_sweep")

    assert store.get_job(first.job_id) is None
    assert store.get_job(second.job_id) is second
    assert store.get_job(third.job_id) is third


def test_active_jobs_never_evicted():
    store = JobStore(max_jobs=1)
    first = store.create_job("process_call", subject="a")
    second = store.create_job("process_call", subject="b")
    assert store.get_job(first.job_id) is first
    assert store.get_job(second.job_id) is second
