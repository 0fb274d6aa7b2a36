"""In-process counters for request outcomes and registration attempts.

Nothing is exported; the snapshot is logged when the agent shuts down and is
handy in tests.
"""

import threading
from dataclasses import dataclass, field
from typing import Any

# Request outcome labels
OUTCOME_ANSWERED = "answered"
OUTCOME_NO_MATCH = "no_match"
OUTCOME_FILE_UNAVAILABLE = "file_unavailable"
OUTCOME_MALFORMED = "malformed"
OUTCOME_NOT_ACTIVE = "not_active"
OUTCOME_INTERNAL_ERROR = "internal_error"


@dataclass
class MetricsCollector:
    """In-memory metrics collector.

    Thread-safe; the signal handler and the main loop may touch it concurrently.
    """

    # Counters per request outcome
    request_outcomes: dict[str, int] = field(default_factory=dict)

    # Counters per setting name of answered requests
    answered_settings: dict[str, int] = field(default_factory=dict)

    registration_attempts: int = 0
    registration_failures: int = 0
    manager_restarts: int = 0

    # Thread lock for safe concurrent access
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def record_request(self, outcome: str, setting_name: str | None = None) -> None:
        """Record the outcome of one GetSecrets request.

        Args:
            outcome: One of the OUTCOME_* labels
            setting_name: Requested setting, counted only for answered requests
        """
        with self._lock:
            self.request_outcomes[outcome] = self.request_outcomes.get(outcome, 0) + 1
            if outcome == OUTCOME_ANSWERED and setting_name:
                self.answered_settings[setting_name] = self.answered_settings.get(setting_name, 0) + 1

    def record_registration(self, success: bool) -> None:
        """Record one registration attempt."""
        with self._lock:
            self.registration_attempts += 1
            if not success:
                self.registration_failures += 1

    def record_manager_restart(self) -> None:
        """Record a detected loss of the connection manager."""
        with self._lock:
            self.manager_restarts += 1

    def get_snapshot(self) -> dict[str, Any]:
        """Get a snapshot of current metrics."""
        with self._lock:
            return {
                "request_outcomes": dict(self.request_outcomes),
                "answered_settings": dict(self.answered_settings),
                "registration_attempts": self.registration_attempts,
                "registration_failures": self.registration_failures,
                "manager_restarts": self.manager_restarts,
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.request_outcomes.clear()
            self.answered_settings.clear()
            self.registration_attempts = 0
            self.registration_failures = 0
            self.manager_restarts = 0


# Global metrics collector instance
_metrics_collector: MetricsCollector | None = None
_metrics_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get or create the global metrics collector instance."""
    global _metrics_collector
    with _metrics_lock:
        if _metrics_collector is None:
            _metrics_collector = MetricsCollector()
        return _metrics_collector
