from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class WorkloadStatus:
    workload: str
    running_version: str
    replicas: dict[str, int] = field(default_factory=dict)  # last validated counts per version
    observed: dict[str, int] = field(default_factory=dict)
    rollout_state: str = "idle"
    rollout: dict[str, Any] | None = None
    last_decision: dict[str, Any] | None = None
    stalled: bool = False
    deferred: bool = False
    last_error: str | None = None
    last_cycle_at: str | None = None
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RuntimeState:
    """In-memory status per workload, shared by loop threads and the API."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.statuses: dict[str, WorkloadStatus] = {}
        self.skipped_ticks: dict[str, int] = {}

    def upsert_status(self, st: WorkloadStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.statuses[st.workload] = st

    def get_status(self, workload: str) -> WorkloadStatus | None:
        with self.lock:
            st = self.statuses.get(workload)
            return replace(st) if st else None

    def list_statuses(self) -> list[WorkloadStatus]:
        with self.lock:
            return [replace(s) for s in self.statuses.values()]

    def mark_skipped(self, workload: str) -> int:
        with self.lock:
            self.skipped_ticks[workload] = self.skipped_ticks.get(workload, 0) + 1
            return self.skipped_ticks[workload]
