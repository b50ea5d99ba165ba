from collections import deque
from dataclasses import dataclass
from threading import Lock
from datetime import datetime, timezone
from typing import Optional, Dict, Any


@dataclass(frozen=True)
class BestEffort:
    """Outcome of a side call whose failure must not fail the caller."""

    delivered: bool
    error: Optional[str] = None
    ref: Optional[str] = None

    @classmethod
    def ok(cls, ref: Optional[str] = None) -> "BestEffort":
        return cls(delivered=True, ref=ref)

    @classmethod
    def failed(cls, error: Exception | str) -> "BestEffort":
        return cls(delivered=False, error=str(error))


class _ResilienceState:
    def __init__(self, max_events: int = 100):
        self._lock = Lock()
        self.counters: Dict[str, int] = {
            "publish_success": 0, "publish_fail": 0,
            "consume_success": 0, "consume_fail": 0,
        }
        self.consecutive_publish_failures = 0
        self.last_publish_success: Optional[str] = None
        self.last_error: Optional[Dict[str, Any]] = None
        self.events = deque(maxlen=max_events)  # ring buffer

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def record(self, kind: str, ok: bool, error: Optional[str] = None, correlation_id: Optional[str] = None):
        now = self._now()
        key = f"{kind}_{'success' if ok else 'fail'}"
        with self._lock:
            self.counters[key] += 1
            if kind == "publish":
                if ok:
                    self.consecutive_publish_failures = 0
                    self.last_publish_success = now
                else:
                    self.consecutive_publish_failures += 1
            if not ok:
                self.last_error = {"ts": now, "type": key, "error": error}
            evt = {"ts": now, "type": f"{kind}_{'success' if ok else 'failure'}", "correlation_id": correlation_id}
            if error:
                evt["error"] = error
            self.events.append(evt)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self.counters,
                "consecutive_publish_failures": self.consecutive_publish_failures,
                "last_publish_success": self.last_publish_success,
                "last_error": self.last_error,
                "recent": list(self.events),
            }

    def reset(self):
        with self._lock:
            for key in self.counters:
                self.counters[key] = 0
            self.consecutive_publish_failures = 0
            self.last_publish_success = None
            self.last_error = None
            self.events.clear()


_state = _ResilienceState()


def record_publish_success(correlation_id: Optional[str] = None):
    _state.record("publish", True, correlation_id=correlation_id)


def record_publish_failure(error: Exception | str, correlation_id: Optional[str] = None):
    _state.record("publish", False, error=str(error), correlation_id=correlation_id)


def record_consume_success(correlation_id: Optional[str] = None):
    _state.record("consume", True, correlation_id=correlation_id)


def record_consume_failure(error: Exception | str, correlation_id: Optional[str] = None):
    _state.record("consume", False, error=str(error), correlation_id=correlation_id)


def get_snapshot() -> Dict[str, Any]:
    return _state.snapshot()


def reset_snapshot():
    _state.reset()
