"""Tests for in-process metrics."""

import threading

import pytest

from nm_file_secret_agent.metrics import (
    OUTCOME_ANSWERED,
    OUTCOME_FILE_UNAVAILABLE,
    OUTCOME_NO_MATCH,
    MetricsCollector,
    get_metrics_collector,
)


@pytest.fixture
def reset_metrics():
    """Reset metrics before and after each test."""
    collector = get_metrics_collector()
    collector.reset()
    yield
    collector.reset()


def test_metrics_collector_record_request(reset_metrics):
    """Test that MetricsCollector records request outcomes correctly."""
    collector = get_metrics_collector()

    collector.record_request(OUTCOME_ANSWERED, "wireguard")
    collector.record_request(OUTCOME_ANSWERED, "wireguard")
    collector.record_request(OUTCOME_ANSWERED, "802-11-wireless-security")
    collector.record_request(OUTCOME_NO_MATCH, "vpn")
    collector.record_request(OUTCOME_FILE_UNAVAILABLE, "wireguard")

    snapshot = collector.get_snapshot()

    assert snapshot["request_outcomes"] == {
        OUTCOME_ANSWERED: 3,
        OUTCOME_NO_MATCH: 1,
        OUTCOME_FILE_UNAVAILABLE: 1,
    }
    # Only answered requests are counted per setting
    assert snapshot["answered_settings"] == {"wireguard": 2, "802-11-wireless-security": 1}


def test_metrics_collector_record_registration(reset_metrics):
    """Test that registration attempts and failures are counted."""
    collector = get_metrics_collector()

    collector.record_registration(success=False)
    collector.record_registration(success=False)
    collector.record_registration(success=True)
    collector.record_manager_restart()

    snapshot = collector.get_snapshot()
    assert snapshot["registration_attempts"] == 3
    assert snapshot["registration_failures"] == 2
    assert snapshot["manager_restarts"] == 1


def test_metrics_collector_reset(reset_metrics):
    """Test that reset clears all counters."""
    collector = get_metrics_collector()
    collector.record_request(OUTCOME_ANSWERED, "wireguard")
    collector.record_registration(success=True)

    collector.reset()

    assert collector.get_snapshot() == {
        "request_outcomes": {},
        "answered_settings": {},
        "registration_attempts": 0,
        "registration_failures": 0,
        "manager_restarts": 0,
    }


def test_get_metrics_collector_is_singleton():
    assert get_metrics_collector() is get_metrics_collector()


def test_snapshot_is_a_copy():
    collector = MetricsCollector()
    collector.record_request(OUTCOME_NO_MATCH)

    snapshot = collector.get_snapshot()
    snapshot["request_outcomes"][OUTCOME_NO_MATCH] = 100

    assert collector.get_snapshot()["request_outcomes"][OUTCOME_NO_MATCH] == 1


def test_concurrent_recording():
    """Test that counters stay consistent under concurrent updates."""
    collector = MetricsCollector()

    def worker():
        for _ in range(500):
            collector.record_request(OUTCOME_ANSWERED, "wireguard")

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert collector.get_snapshot()["request_outcomes"][OUTCOME_ANSWERED] == 2000
    assert collector.get_snapshot()["answered_settings"]["wireguard"] == 2000
