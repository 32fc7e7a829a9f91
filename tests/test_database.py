"""
Tests for the SQLite job store.
"""

import pytest

from pdf_merge_backend.database import JobDeletionError
from pdf_merge_backend.models import GroupStatus, JobStatus

HOOK = "https://hooks.example.com/done"


def _job(store, groups=(("a", ["https://x.example.com/1.pdf"]),), metadata=None):
    return store.create_job("app-1", HOOK, list(groups), metadata=metadata)


class TestCreateAndGet:
    def test_create_job(self, store):
        job = _job(
            store,
            groups=[("first", ["https://x.example.com/1.pdf", "https://x.example.com/2.pdf"]), ("second", ["https://x.example.com/3.pdf"])],
            metadata={"author": "Ops"},
        )

        assert job["status"] == JobStatus.QUEUED
        assert job["total_groups"] == 2
        assert (job["completed"], job["failed"]) == (0, 0)
        assert job["metadata"] == {"author": "Ops"}
        assert job["created_at"].tzinfo is not None
        assert [group["name"] for group in job["groups"]] == ["first", "second"]
        assert job["groups"][0]["sources"] == ["https://x.example.com/1.pdf", "https://x.example.com/2.pdf"]
        assert all(group["status"] == GroupStatus.PENDING for group in job["groups"])

    def test_get_job_scoped_to_owner(self, store):
        job = _job(store)
        assert store.get_job(job["id"], owner_id="app-1") is not None
        assert store.get_job(job["id"], owner_id="someone-else") is None
        assert store.get_job("missing") is None

    def test_next_queued_job_is_oldest(self, store):
        first = _job(store)
        second = _job(store)
        assert store.next_queued_job_id() == first["id"]

        store.update_job(first["id"], status=JobStatus.PROCESSING)
        assert store.next_queued_job_id() == second["id"]


class TestTransitions:
    """Compare-and-set status updates."""

    def test_transition_requires_expected_status(self, store):
        job = _job(store)

        assert store.transition_job(job["id"], [JobStatus.QUEUED], JobStatus.PROCESSING)
        assert not store.transition_job(job["id"], [JobStatus.QUEUED], JobStatus.PROCESSING)
        assert store.get_job(job["id"])["status"] == JobStatus.PROCESSING

    def test_group_transition(self, store):
        group = _job(store)["groups"][0]

        assert store.transition_group(group["id"], [GroupStatus.PENDING], GroupStatus.PROCESSING)
        assert not store.transition_group(group["id"], [GroupStatus.PENDING], GroupStatus.FAILED)

    def test_unknown_field_is_rejected(self, store):
        job = _job(store)
        with pytest.raises(ValueError):
            store.update_job(job["id"], owner_id="other")

    def test_counter_is_bounded_by_total_groups(self, store):
        job = _job(store, groups=[("a", ["https://x.example.com/1.pdf"]), ("b", ["https://x.example.com/2.pdf"])])

        assert store.increment_job_counter(job["id"], "completed")
        assert store.increment_job_counter(job["id"], "failed")
        assert not store.increment_job_counter(job["id"], "completed")

        stored = store.get_job(job["id"])
        assert (stored["completed"], stored["failed"]) == (1, 1)

    def test_unknown_counter(self, store):
        with pytest.raises(ValueError):
            store.increment_job_counter(_job(store)["id"], "total_groups")


class TestDeletion:
    def test_delete_pending_job(self, store):
        job = _job(store)
        assert store.delete_job(job["id"])
        assert store.get_job(job["id"]) is None
        assert not store.delete_job(job["id"])

    def test_delete_rejected_once_a_group_left_pending(self, store):
        job = _job(store)
        store.transition_group(job["groups"][0]["id"], [GroupStatus.PENDING], GroupStatus.PROCESSING)

        with pytest.raises(JobDeletionError):
            store.delete_job(job["id"])
        assert store.job_exists(job["id"])


class TestQueries:
    def test_list_jobs_filters(self, store):
        queued = _job(store)
        done = _job(store)
        store.update_job(done["id"], status=JobStatus.COMPLETED)

        assert [job["id"] for job in store.list_jobs(statuses=[JobStatus.COMPLETED])] == [done["id"]]
        assert [job["id"] for job in store.list_jobs()] == [queued["id"], done["id"]]
        assert store.list_jobs(statuses=[]) == []

    def test_count_groups_by_status(self, store):
        job = _job(store, groups=[("a", ["https://x.example.com/1.pdf"]), ("b", ["https://x.example.com/2.pdf"])])
        store.transition_group(job["groups"][0]["id"], [GroupStatus.PENDING], GroupStatus.FAILED, error_message="x")

        assert store.count_groups_by_status() == {"pending": 1, "failed": 1}

    def test_count_jobs_for_owner(self, store):
        _job(store)
        _job(store)
        assert store.count_jobs_for_owner("app-1") == 2
        assert store.count_jobs_for_owner("app-2") == 0

    def test_download_events(self, store):
        store.record_download_event("https://x.example.com/1.pdf", 200, 15)
        store.record_download_event("https://x.example.com/2.pdf", 0, 3, "DNS resolution failed")

        events = store.list_download_events()
        assert [event["status_code"] for event in events] == [0, 200]
        assert events[0]["error_message"] == "DNS resolution failed"
