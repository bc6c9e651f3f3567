"""
Tests for queue filtering and the in-memory queue backend.
"""

from jobkeeper.config import QueueSettings
from jobkeeper.queue import InMemoryQueueBackend, QueueFilter


def test_empty_allowlist_supervises_everything_not_excluded():
    queue_filter = QueueFilter(excluded=["low"])

    assert queue_filter.should_supervise("default")
    assert queue_filter.should_supervise("reports")
    assert not queue_filter.should_supervise("low")


def test_allowlist_limits_supervision():
    queue_filter = QueueFilter(supervised=["billing", "reports"])

    assert queue_filter.should_supervise("billing")
    assert not queue_filter.should_supervise("default")


def test_exclusion_wins_over_allowlist():
    queue_filter = QueueFilter(supervised=["billing"], excluded=["billing"])

    assert not queue_filter.should_supervise("billing")


def test_from_settings_and_to_dict():
    queue_filter = QueueFilter.from_settings(QueueSettings(supervised=["billing", ""], excluded=["low"]))

    assert queue_filter.to_dict() == {
        "supervised_queues": ["billing"],
        "excluded_queues": ["low"],
        "mode": "allowlist",
    }
    assert QueueFilter().to_dict()["mode"] == "all_except_excluded"


def test_paused_queue_hands_out_nothing():
    backend = InMemoryQueueBackend()
    backend.dispatch("app.jobs.Import", {"file": "a.csv"}, "imports")

    backend.pause("imports")
    assert backend.is_paused("imports")
    assert backend.pop("imports") is None
    assert backend.size("imports") == 1

    backend.resume("imports")
    job = backend.pop("imports")
    assert job.payload == {"file": "a.csv"}
    assert backend.pop("imports") is None


def test_running_count_reads_sessions(store, make_session):
    backend = InMemoryQueueBackend()
    make_session("a", queue="imports")
    make_session("b", queue="imports", status="completed")
    make_session("c", queue="exports")

    assert backend.running_count("imports") == 1


def test_dispatch_handler_is_called():
    seen = []
    backend = InMemoryQueueBackend(handler=seen.append)

    backend.dispatch("app.jobs.Import", None)

    assert [job.queue for job in seen] == ["default"]
