"""Unit tests for the in-memory job store and background conversion runner.

WHY: The job store is the central state manager for the HTTP API. Race
conditions, missing cleanup, or incorrect status transitions would cause
stale jobs, leaked temp files, or broken polling. These tests verify
every public method and edge case.

HOW: Tests are organized by class, one per JobStore method or concern:
  - TestJobCreation: create_job basics, defaults and the job cap
  - TestJobRetrieval: get_job and list_jobs
  - TestJobUpdate: status transitions, progress, errors, terminal states
  - TestJobDeletion: delete, cancellation and temp dir cleanup
  - TestTTLCleanup: expiry logic and boundary conditions
  - TestBackgroundRunner: the real pipeline on stored uploads
  - TestThreadSafety: concurrent access doesn't corrupt state

RULES:
- Each test creates its own JobStore instance (no shared mutable state)
- Temp directories are cleaned up by the store or explicitly in tests
- Time-dependent tests use monkeypatch to control time.time()
"""

from __future__ import annotations

import json
import shutil
import threading
import time

import pytest

from anki_converter.core.pipeline import PipelineStage
from anki_converter.server import app as app_module
from anki_converter.server.jobs import (
    DEFAULT_TTL_SECONDS,
    TERMINAL_STATUSES,
    JobStatus,
    JobStore,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_store(**kwargs) -> JobStore:
    """Create a JobStore with optional overrides."""
    return JobStore(**kwargs)


def _stored_job(store: JobStore, filename: str, data: bytes, options=None):
    """Create a job and write its upload the way the API does."""
    job = store.create_job(filename, options=options)
    job.input_path.write_bytes(data)
    return job


# ---------------------------------------------------------------------------
# TestJobCreation
# ---------------------------------------------------------------------------


class TestJobCreation:
    """JobStore.create_job() creates a job in PENDING state."""

    def test_creates_job_with_pending_status(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        assert job.status == JobStatus.PENDING
        store.delete_job(job.id)

    def test_assigns_unique_hex_id(self):
        store = _make_store()
        job1 = store.create_job("a.apkg")
        job2 = store.create_job("b.apkg")
        assert job1.id != job2.id
        assert len(job1.id) == 32
        int(job1.id, 16)
        store.delete_job(job1.id)
        store.delete_job(job2.id)

    def test_creates_work_directory(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        assert job.work_dir.is_dir()
        assert job.input_path == job.work_dir / "deck.apkg"
        assert job.result_path is None
        store.delete_job(job.id)

    def test_sets_timestamps(self):
        store = _make_store()
        before = time.time()
        job = store.create_job("deck.apkg")
        after = time.time()
        assert before <= job.created_at <= after
        assert before <= job.updated_at <= after
        store.delete_job(job.id)

    def test_stores_options(self):
        store = _make_store()
        options = {"include_stats": True, "force_format": None}
        job = store.create_job("deck.apkg", options=options)
        assert job.options == options
        store.delete_job(job.id)

    def test_initial_fields_are_none_or_empty(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        assert job.options == {}
        assert job.completed_at is None
        assert job.error is None
        assert job.progress is None
        assert job.download_name is None
        assert not job.cancel_token.is_cancelled
        store.delete_job(job.id)

    def test_job_cap(self):
        store = _make_store(max_jobs=2)
        j1 = store.create_job("a.apkg")
        j2 = store.create_job("b.apkg")
        with pytest.raises(ValueError, match="Maximum number"):
            store.create_job("c.apkg")
        store.delete_job(j1.id)
        store.delete_job(j2.id)


# ---------------------------------------------------------------------------
# TestJobRetrieval
# ---------------------------------------------------------------------------


class TestJobRetrieval:
    """JobStore.get_job() and list_jobs() retrieve stored jobs."""

    def test_get_existing_job(self):
        store = _make_store()
        created = store.create_job("deck.apkg")
        retrieved = store.get_job(created.id)
        assert retrieved is not None
        assert retrieved.id == created.id
        store.delete_job(created.id)

    def test_get_missing_job_returns_none(self):
        store = _make_store()
        assert store.get_job("nonexistent-id") is None

    def test_list_jobs_empty_store(self):
        store = _make_store()
        assert store.list_jobs() == []

    def test_list_jobs_ordered_by_creation_time(self, monkeypatch):
        store = _make_store()
        monkeypatch.setattr(time, "time", lambda: 100.0)
        j1 = store.create_job("first.apkg")
        monkeypatch.setattr(time, "time", lambda: 200.0)
        j2 = store.create_job("second.apkg")
        jobs = store.list_jobs()
        assert [j.id for j in jobs] == [j1.id, j2.id]
        store.delete_job(j1.id)
        store.delete_job(j2.id)


# ---------------------------------------------------------------------------
# TestJobUpdate
# ---------------------------------------------------------------------------


class TestJobUpdate:
    """JobStore.update_job() modifies job fields."""

    def test_update_status(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        updated = store.update_job(job.id, status=JobStatus.RUNNING)
        assert updated is not None
        assert updated.status == JobStatus.RUNNING
        store.delete_job(job.id)

    def test_update_bumps_updated_at(self, monkeypatch):
        store = _make_store()
        job = store.create_job("deck.apkg")
        monkeypatch.setattr(time, "time", lambda: job.updated_at + 5)
        store.update_job(job.id, status=JobStatus.RUNNING)
        assert job.updated_at == job.created_at + 5
        store.delete_job(job.id)

    def test_update_progress(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        progress = {"stage": "parsing", "percent": 20, "message": "Reading apkg"}
        store.update_job(job.id, progress=progress)
        assert job.progress == progress
        store.delete_job(job.id)

    def test_update_error(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        error = {"kind": "corrupted_file", "message": "broken"}
        store.update_job(job.id, status=JobStatus.FAILED, error=error)
        assert job.error == error
        store.delete_job(job.id)

    def test_update_missing_job_returns_none(self):
        store = _make_store()
        assert store.update_job("nonexistent", status=JobStatus.FAILED) is None

    @pytest.mark.parametrize("status", TERMINAL_STATUSES)
    def test_terminal_status_sets_completed_at(self, status):
        store = _make_store()
        job = store.create_job("deck.apkg")
        store.update_job(job.id, status=status)
        assert job.completed_at is not None
        store.delete_job(job.id)

    def test_non_terminal_status_does_not_set_completed_at(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        store.update_job(job.id, status=JobStatus.RUNNING)
        assert job.completed_at is None
        store.delete_job(job.id)

    def test_terminal_status_is_final(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        store.update_job(job.id, status=JobStatus.CANCELLED)
        store.update_job(job.id, status=JobStatus.RUNNING, progress={"percent": 50})
        assert job.status == JobStatus.CANCELLED
        assert job.progress == {"percent": 50}
        store.delete_job(job.id)

    def test_only_non_none_fields_updated(self):
        store = _make_store()
        job = store.create_job("deck.apkg", options={"include_stats": True})
        store.update_job(job.id, status=JobStatus.RUNNING)
        assert job.options == {"include_stats": True}
        assert job.error is None
        store.delete_job(job.id)


# ---------------------------------------------------------------------------
# TestJobDeletion
# ---------------------------------------------------------------------------


class TestJobDeletion:
    """JobStore.delete_job() cancels, removes jobs and cleans up temp dirs."""

    def test_delete_existing_job(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        work_dir = job.work_dir
        assert store.delete_job(job.id) is True
        assert store.get_job(job.id) is None
        assert not work_dir.exists()

    def test_delete_cancels_conversion(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        store.delete_job(job.id)
        assert job.cancel_token.is_cancelled

    def test_delete_missing_job_returns_false(self):
        store = _make_store()
        assert store.delete_job("nonexistent") is False

    def test_delete_cleans_work_dir_with_files(self):
        store = _make_store()
        job = _stored_job(store, "deck.apkg", b"data")
        (job.work_dir / "result.json").write_text("{}")
        store.delete_job(job.id)
        assert not job.work_dir.exists()

    def test_delete_handles_already_removed_dir(self):
        store = _make_store()
        job = store.create_job("deck.apkg")
        shutil.rmtree(job.work_dir)
        assert store.delete_job(job.id) is True


# ---------------------------------------------------------------------------
# TestTTLCleanup
# ---------------------------------------------------------------------------


class TestTTLCleanup:
    """JobStore.cleanup_expired() removes terminal jobs past their TTL."""

    def test_cleanup_removes_expired_completed_job(self, monkeypatch):
        store = _make_store(ttl_seconds=60)
        job = store.create_job("deck.apkg")
        work_dir = job.work_dir

        monkeypatch.setattr(time, "time", lambda: 100.0)
        store.update_job(job.id, status=JobStatus.COMPLETED)

        monkeypatch.setattr(time, "time", lambda: 161.0)
        removed = store.cleanup_expired()

        assert removed == 1
        assert store.get_job(job.id) is None
        assert not work_dir.exists()

    def test_cleanup_keeps_non_expired_job(self, monkeypatch):
        store = _make_store(ttl_seconds=60)
        job = store.create_job("deck.apkg")

        monkeypatch.setattr(time, "time", lambda: 100.0)
        store.update_job(job.id, status=JobStatus.FAILED, error={"kind": "unknown"})

        monkeypatch.setattr(time, "time", lambda: 159.0)
        assert store.cleanup_expired() == 0
        assert store.get_job(job.id) is not None
        store.delete_job(job.id)

    def test_cleanup_ignores_running_jobs(self, monkeypatch):
        store = _make_store(ttl_seconds=1)
        job = store.create_job("deck.apkg")
        store.update_job(job.id, status=JobStatus.RUNNING)

        far_future = time.time() + 10000
        monkeypatch.setattr(time, "time", lambda: far_future)
        assert store.cleanup_expired() == 0
        assert store.get_job(job.id) is not None
        store.delete_job(job.id)

    def test_cleanup_handles_multiple_expired(self, monkeypatch):
        store = _make_store(ttl_seconds=60)

        monkeypatch.setattr(time, "time", lambda: 100.0)
        j1 = store.create_job("a.apkg")
        j2 = store.create_job("b.apkg")
        store.update_job(j1.id, status=JobStatus.COMPLETED)
        store.update_job(j2.id, status=JobStatus.CANCELLED)

        monkeypatch.setattr(time, "time", lambda: 161.0)
        assert store.cleanup_expired() == 2
        assert store.list_jobs() == []

    def test_default_ttl_is_one_hour(self):
        assert DEFAULT_TTL_SECONDS == 3600


# ---------------------------------------------------------------------------
# TestBackgroundRunner
# ---------------------------------------------------------------------------


class TestBackgroundRunner:
    """_run_conversion_job() drives the pipeline and records the outcome."""

    def test_successful_conversion(self, sample_apkg):
        store = _make_store()
        job = _stored_job(store, "japanese.apkg", sample_apkg.read_bytes())

        app_module._run_conversion_job(job.id, store)

        assert job.status == JobStatus.COMPLETED
        assert job.progress["stage"] == "done"
        assert job.progress["percent"] == 100
        assert job.download_name == "japanese.json"
        document = json.loads(job.result_path.read_text(encoding="utf-8"))
        assert document["metadata"]["total_cards"] == 5
        store.delete_job(job.id)

    def test_options_applied(self, sample_apkg):
        store = _make_store()
        job = _stored_job(store, "japanese.apkg", sample_apkg.read_bytes(),
                          options={"include_suspended": True, "include_stats": True})

        app_module._run_conversion_job(job.id, store)

        document = json.loads(job.result_path.read_text(encoding="utf-8"))
        assert document["metadata"]["total_cards"] == 6
        store.delete_job(job.id)

    def test_single_deck_download_name(self, sample_tsv):
        store = _make_store()
        job = _stored_job(store, "capitals.tsv", sample_tsv.read_bytes())
        app_module._run_conversion_job(job.id, store)
        assert job.download_name == "capitals.json"
        store.delete_job(job.id)

    def test_conversion_error_marks_failed(self):
        store = _make_store()
        job = _stored_job(store, "broken.apkg", b"PK\x03\x04 not really a zip")

        app_module._run_conversion_job(job.id, store)

        assert job.status == JobStatus.FAILED
        assert job.error["kind"] == "corrupted_file"
        assert job.error["stage"] == "parsing"
        assert job.error["guidance"]
        assert job.result_path is None
        store.delete_job(job.id)

    def test_cancelled_job(self, sample_apkg):
        store = _make_store()
        job = _stored_job(store, "japanese.apkg", sample_apkg.read_bytes())
        job.cancel_token.cancel()

        app_module._run_conversion_job(job.id, store)

        assert job.status == JobStatus.CANCELLED
        assert job.error["kind"] == "cancelled"
        store.delete_job(job.id)

    def test_unexpected_error_marks_failed(self, monkeypatch):
        class ExplodingPipeline:
            def __init__(self, options, on_progress=None, cancel_token=None):
                self.stage = PipelineStage.DETECTING

            def convert(self, source, filename=None):
                raise RuntimeError("disk on fire")

        monkeypatch.setattr(app_module, "ConversionPipeline", ExplodingPipeline)
        store = _make_store()
        job = _stored_job(store, "deck.apkg", b"data")

        app_module._run_conversion_job(job.id, store)

        assert job.status == JobStatus.FAILED
        assert job.error["kind"] == "unknown"
        assert "disk on fire" in job.error["message"]
        store.delete_job(job.id)

    def test_missing_job_is_a_no_op(self):
        store = _make_store()
        app_module._run_conversion_job("nonexistent", store)
        assert store.list_jobs() == []


# ---------------------------------------------------------------------------
# TestThreadSafety
# ---------------------------------------------------------------------------


class TestThreadSafety:
    """Concurrent access to JobStore doesn't corrupt state."""

    def test_concurrent_creates(self):
        store = _make_store(max_jobs=200)
        created = []
        lock = threading.Lock()

        def create_jobs(n):
            for i in range(n):
                job = store.create_job("deck_{}.apkg".format(i))
                with lock:
                    created.append(job)

        threads = [threading.Thread(target=create_jobs, args=(10,)) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.list_jobs()) == 50
        assert len({j.id for j in created}) == 50
        for job in created:
            store.delete_job(job.id)

    def test_concurrent_updates(self):
        store = _make_store()
        job = store.create_job("deck.apkg")

        def push_progress(start):
            for pct in range(start, start + 20):
                store.update_job(job.id, status=JobStatus.RUNNING, progress={"percent": pct})

        threads = [threading.Thread(target=push_progress, args=(i * 20,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert job.status == JobStatus.RUNNING
        assert job.progress is not None
        store.delete_job(job.id)
