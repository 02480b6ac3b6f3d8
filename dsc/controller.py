from __future__ import annotations

import json
import time
from threading import Lock
from typing import Any, Callable, Iterable

from . import db
from .api_models import ControllerConfig, WorkloadSpecModel
from .executor import Executor, build_executor, call_with_backoff
from .isolation import IsolationGuard
from .models import Endpoint, IsolationRule, WorkloadSpec
from .reconciler import CycleResult, ReconciliationLoop
from .rollouts import RolloutPlan
from .runtime import RuntimeState
from .sampler import HttpMetricsSource, MetricsSampler
from .settings import settings


def _spec_json(spec: WorkloadSpec) -> str:
    return WorkloadSpecModel.from_spec(spec).model_dump_json()


class ControlPlane:
    """Operator control surface. Owns one reconciliation loop per workload.

    Loops share nothing mutable; the environment's isolation rules and peer
    endpoints are read-only and handed to every loop's guard.
    """

    def __init__(
        self,
        executor: Executor | None = None,
        rules: Iterable[IsolationRule] = (),
        peers: Iterable[Endpoint] = (),
        runtime: RuntimeState | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        metrics_url: str | None = None,
    ):
        self.executor = executor or build_executor()
        self.metrics_url = metrics_url if metrics_url is not None else settings.metrics_url
        self.rules = tuple(rules)
        self.peers = tuple(peers)
        self.runtime = runtime or RuntimeState()
        self.clock = clock
        self.sleep = sleep
        self._lock = Lock()
        self.loops: dict[str, ReconciliationLoop] = {}
        self._started = False

    @classmethod
    def from_config(cls, config: ControllerConfig, executor: Executor | None = None, **kwargs: Any) -> "ControlPlane":
        cp = cls(
            executor=executor,
            rules=[r.to_rule() for r in config.isolation_rules],
            peers=[p.to_endpoint() for p in config.peers],
            **kwargs,
        )
        for req in config.workloads:
            cp.register(req.spec.to_spec(), rules=[r.to_rule() for r in req.isolation_rules])
        return cp

    @classmethod
    def from_file(cls, path: str, executor: Executor | None = None, **kwargs: Any) -> "ControlPlane":
        with open(path, "r", encoding="utf-8") as f:
            config = ControllerConfig.model_validate(json.load(f))
        return cls.from_config(config, executor=executor, **kwargs)

    def _loop(self, workload: str) -> ReconciliationLoop:
        with self._lock:
            loop = self.loops.get(workload)
        if loop is None:
            raise KeyError(f"unknown workload '{workload}'")
        return loop

    # operations

    def register(self, spec: WorkloadSpec, rules: Iterable[IsolationRule] = ()) -> ReconciliationLoop:
        with self._lock:
            if spec.name in self.loops:
                raise ValueError(f"workload '{spec.name}' is already registered; submit a new version instead")

        call_with_backoff(lambda: self.executor.register(spec), what=f"register {spec.name} {spec.version}", sleep=self.sleep)
        guard = IsolationGuard(self.rules + tuple(rules), self.peers)
        sampler = None
        if self.metrics_url:
            sampler = MetricsSampler(
                spec.name, [m.name for m in spec.metrics], HttpMetricsSource(self.metrics_url), clock=self.clock
            )
        loop = ReconciliationLoop(
            spec, self.executor, self.runtime, guard=guard, sampler=sampler, clock=self.clock, sleep=self.sleep
        )

        with self._lock:
            self.loops[spec.name] = loop
        db.upsert_spec_version(spec.name, spec.version, _spec_json(spec), "active")
        db.log_event(
            "INFO",
            f"Registered with bounds [{spec.bounds.min_replicas}, {spec.bounds.max_replicas}]",
            workload=spec.name,
            version=spec.version,
        )
        if self._started:
            loop.start()
        return loop

    def submit_version(self, spec: WorkloadSpec) -> RolloutPlan | None:
        loop = self._loop(spec.name)
        previous = loop.sequencer.plan
        plan = loop.submit(spec)
        if plan is None:
            db.log_event("INFO", "Version already running; nothing to roll out", workload=spec.name, version=spec.version)
            return None
        if previous is not None and previous is not plan:
            db.set_spec_state(spec.name, previous.target_version, "aborted")
        db.upsert_spec_version(spec.name, spec.version, _spec_json(spec), "candidate")
        return plan

    def abort_rollout(self, workload: str, reason: str = "operator request") -> bool:
        return self._loop(workload).abort(reason)

    def get_status(self, workload: str) -> dict[str, Any]:
        loop = self._loop(workload)
        st = self.runtime.get_status(workload)
        out = st.to_dict() if st else {"workload": workload}
        out["desired_replicas"] = loop.desired
        out["versions"] = [
            {"version": row.version, "state": row.state, "created_at": row.created_at}
            for row in db.list_spec_versions(workload)
        ]
        return out

    def list_workloads(self) -> list[str]:
        with self._lock:
            return sorted(self.loops)

    def reconcile_now(self, workload: str) -> CycleResult | None:
        return self._loop(workload).tick()

    def start(self) -> None:
        self._started = True
        with self._lock:
            loops = list(self.loops.values())
        for loop in loops:
            loop.start()

    def stop(self) -> None:
        self._started = False
        with self._lock:
            loops = list(self.loops.values())
        for loop in loops:
            loop.stop()
