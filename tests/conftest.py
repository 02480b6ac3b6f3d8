import sys
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import dsc` works without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dsc import db  # noqa: E402
from dsc.errors import ExecutorUnreachable  # noqa: E402
from dsc.models import MetricTarget, ReplicaBounds, Replica, ReplicaState, RolloutPolicy, ScalingPolicy, WorkloadSpec  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point the event log / spec registry at a throwaway sqlite file."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "dsc-test.db")))
    db.init_db()
    yield


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeExecutor:
    """In-memory executor that converges instantly on apply.

    New replicas become ready after `ready_after` observations (None: never).
    Every replica reports the metric values in `metrics`.
    """

    def __init__(self, clock: FakeClock, ready_after: int | None = 1):
        self.clock = clock
        self.ready_after = ready_after
        self.metrics: dict[str, float] = {}
        self.replicas: dict[str, list[dict]] = {}
        self.applied: list = []
        self.registered: list = []
        self.fail_observe = 0
        self.fail_apply = 0
        self.observe_calls = 0
        self._seq = 0

    # setup helpers

    def seed(self, workload: str, version: str, count: int, ready: bool = True) -> None:
        for _ in range(count):
            self._add(workload, version, ready)

    def _add(self, workload: str, version: str, ready: bool) -> None:
        self._seq += 1
        self.replicas.setdefault(workload, []).append(
            {"id": f"{workload}-{version}-{self._seq}", "version": version, "age": 0, "ready": ready}
        )

    def mark_all_ready(self, workload: str) -> None:
        for r in self.replicas.get(workload, []):
            r["ready"] = True

    # executor protocol

    def register(self, spec) -> None:
        self.registered.append((spec.name, spec.version))

    def apply(self, diff) -> None:
        if self.fail_apply:
            self.fail_apply -= 1
            raise ExecutorUnreachable("apply refused")
        self.applied.append(diff)
        current = self.replicas.setdefault(diff.workload, [])
        for version in {r["version"] for r in current} | set(diff.replica_count_by_version):
            want = diff.replica_count_by_version.get(version, 0)
            mine = [r for r in current if r["version"] == version]
            extra = len(mine) - want
            if extra > 0:
                # Not-ready first, then newest.
                victims = sorted(mine, key=lambda r: (r["ready"], -int(r["id"].rsplit("-", 1)[1])))[:extra]
                for v in victims:
                    current.remove(v)
            for _ in range(max(0, -extra)):
                self._add(diff.workload, version, False)

    def observe(self, workload: str) -> ReplicaState:
        self.observe_calls += 1
        if self.fail_observe:
            self.fail_observe -= 1
            raise ExecutorUnreachable("observe refused")
        out = []
        for r in self.replicas.get(workload, []):
            r["age"] += 1
            if not r["ready"] and self.ready_after is not None and r["age"] >= self.ready_after:
                r["ready"] = True
            out.append(
                Replica(
                    id=r["id"],
                    version=r["version"],
                    ready=r["ready"],
                    metrics=dict(self.metrics),
                    reported_at=self.clock(),
                )
            )
        return ReplicaState(replicas=tuple(out), observed_at=self.clock())

    def counts(self, workload: str) -> dict[str, int]:
        out: dict[str, int] = {}
        for r in self.replicas.get(workload, []):
            out[r["version"]] = out.get(r["version"], 0) + 1
        return out


def make_spec(
    version: str = "v1",
    name: str = "web",
    min_replicas: int = 1,
    max_replicas: int = 10,
    cpu_target: float | None = 50.0,
    surge: int = 1,
    unavailable: int = 1,
    batch_size: int | None = 1,
    window_s: int = 300,
    **kwargs,
) -> WorkloadSpec:
    metrics = (MetricTarget("cpu", cpu_target),) if cpu_target is not None else ()
    return WorkloadSpec(
        name=name,
        version=version,
        image=f"registry.local/{name}:{version}",
        bounds=ReplicaBounds(min_replicas, max_replicas),
        metrics=metrics,
        rollout=RolloutPolicy(surge_budget=surge, unavailability_budget=unavailable, batch_size=batch_size),
        scaling=ScalingPolicy(stabilization_window_s=window_s),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor(clock):
    return FakeExecutor(clock)


def no_sleep(_seconds: float) -> None:
    return None
