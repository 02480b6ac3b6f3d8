from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from threading import Lock, Thread
from typing import Callable

from . import db
from .alerts import alert
from .errors import DecisionSkipped, ExecutorUnreachable
from .executor import Executor, call_with_backoff
from .isolation import IsolationGuard
from .models import DesiredStateDiff, ReplicaState, ScalingDecision, Violation, WorkloadSpec
from .policy import PolicyEvaluator
from .rollouts import RolloutPlan, RolloutSequencer
from .runtime import RuntimeState, WorkloadStatus, utc_now
from .sampler import ExecutorMetricsSource, MetricsSampler, samples_from_state
from .settings import settings


@dataclass(frozen=True)
class CycleResult:
    workload: str
    outcome: str  # applied|unchanged|deferred|blocked
    diff: DesiredStateDiff | None = None
    decision: ScalingDecision | None = None
    violation: Violation | None = None
    error: str | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == "applied"


class ReconciliationLoop:
    """Observe -> sample -> evaluate -> advance rollout -> validate -> emit, for one workload.

    Cycles never overlap: a tick that finds the previous one still running is
    skipped and logged, not queued.
    """

    def __init__(
        self,
        spec: WorkloadSpec,
        executor: Executor,
        runtime: RuntimeState,
        guard: IsolationGuard | None = None,
        sampler: MetricsSampler | None = None,
        interval_s: float | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.workload = spec.name
        self.executor = executor
        self.runtime = runtime
        self.guard = guard or IsolationGuard()
        self.interval_s = interval_s if interval_s is not None else float(settings.reconcile_interval_s)
        self.clock = clock
        self.sleep = sleep

        self.specs: dict[str, WorkloadSpec] = {spec.version: spec}
        self.sequencer = RolloutSequencer(spec.name, spec.version, clock=clock)
        self.evaluator = PolicyEvaluator(spec.metrics, spec.scaling, clock=clock)
        self.sampler = sampler or MetricsSampler(
            spec.name, [m.name for m in spec.metrics], ExecutorMetricsSource(executor), clock=clock
        )
        self._metrics_from_observed = isinstance(self.sampler.source, ExecutorMetricsSource)

        self._exec_lock = Lock()
        self._desired: int | None = None
        self._last_applied: DesiredStateDiff | None = None
        self._last_valid: DesiredStateDiff | None = None
        self._last_violation: Violation | None = None
        self._stall_alerted = False
        self._skipping_decisions = False
        self._seen_outcome = None

        self._stop = False
        self._thr: Thread | None = None

        runtime.upsert_status(WorkloadStatus(workload=spec.name, running_version=spec.version))

    # specs

    @property
    def active_spec(self) -> WorkloadSpec:
        plan = self.sequencer.plan
        if plan is not None and not plan.aborting:
            return self.specs[plan.target_version]
        return self.specs[self.sequencer.running_version]

    @property
    def desired(self) -> int | None:
        return self._desired

    def submit(self, spec: WorkloadSpec) -> RolloutPlan | None:
        """Queue a rollout to `spec`. Waits for an in-progress cycle to finish."""
        if spec.name != self.workload:
            raise ValueError(f"spec is for '{spec.name}', not '{self.workload}'")
        with self._exec_lock:
            known = self.specs.get(spec.version)
            if known is not None and known != spec:
                raise ValueError(f"version {spec.version} of {self.workload} is already registered with a different spec")

            call_with_backoff(lambda: self.executor.register(spec), what=f"register {spec.name} {spec.version}", sleep=self.sleep)
            self.specs[spec.version] = spec
            plan = self.sequencer.submit(spec.version, spec.rollout)
            if plan is not None:
                self.evaluator.metrics = spec.metrics
                self.evaluator.policy = spec.scaling
                self.sampler.metrics = tuple(m.name for m in spec.metrics)
            return plan

    def abort(self, reason: str = "operator request") -> bool:
        with self._exec_lock:
            return self.sequencer.abort(reason)

    # thread

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        if not self._metrics_from_observed:
            self.sampler.start()
        self._thr = Thread(target=self._loop, daemon=True, name=f"reconciler-{self.workload}")
        self._thr.start()

    def stop(self) -> None:
        self._stop = True
        self.sampler.stop()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciliation loop started", workload=self.workload)
        while not self._stop:
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconcile tick failed: {type(e).__name__}: {e}", workload=self.workload)
            time.sleep(max(1.0, self.interval_s))

    def tick(self) -> CycleResult | None:
        """Run one cycle, or return None when the previous cycle is still in progress."""
        if not self._exec_lock.acquire(blocking=False):
            n = self.runtime.mark_skipped(self.workload)
            db.log_event("WARN", f"Tick skipped: previous cycle still applying (skipped {n} so far)", workload=self.workload)
            return None
        try:
            return self._cycle()
        finally:
            self._exec_lock.release()

    # cycle

    def _cycle(self) -> CycleResult:
        now = self.clock()

        try:
            observed = call_with_backoff(
                lambda: self.executor.observe(self.workload), what=f"observe {self.workload}", sleep=self.sleep
            )
        except ExecutorUnreachable as e:
            return self._defer(e)

        self.sampler.observe_readiness(observed)
        if self._metrics_from_observed:
            self.sampler.ingest(samples_from_state(observed))
        elif not self.sampler.running:
            self.sampler.poll()

        spec = self.active_spec
        if self._desired is None:
            self._desired = spec.bounds.clamp(observed.total or spec.bounds.min_replicas)
        previous_desired = self._desired
        decision = self._decide(spec, previous_desired, now)

        checkpoint = self.sequencer.checkpoint()
        counts = self.sequencer.step(observed, decision.target, now)
        target_version = self.sequencer.plan.target_version if self.sequencer.plan else self.sequencer.running_version
        diff = DesiredStateDiff(
            workload=self.workload,
            target_spec_version=target_version,
            replica_count_by_version=counts,
            network_rules=self.guard.rules,
        )

        violation = self.guard.validate(self.guard.build_topology(self.specs, counts))
        if violation is not None:
            self.sequencer.restore(checkpoint)
            return self._block(violation, decision, observed)

        self._desired = decision.target
        if decision.target != previous_desired:
            db.log_event(
                "INFO",
                f"Scaling {previous_desired} -> {decision.target} ({decision.action}) candidates={decision.candidates}",
                workload=self.workload,
                version=target_version,
            )
        self._last_violation = None
        self._last_valid = diff
        self._record_outcome()

        drift = observed.count_by_version() != {v: c for v, c in counts.items() if c > 0}
        if diff == self._last_applied and not drift:
            outcome = "unchanged"
        else:
            try:
                call_with_backoff(lambda: self.executor.apply(diff), what=f"apply {self.workload}", sleep=self.sleep)
            except ExecutorUnreachable as e:
                return self._defer(e, decision)
            if diff != self._last_applied:
                db.log_event("INFO", f"Applied desired state {diff.to_dict()['replicaCountByVersion']}", workload=self.workload, version=target_version)
            self._last_applied = diff
            outcome = "applied"

        stalled = self.sequencer.stalled
        if stalled is not None and not self._stall_alerted:
            alert("RolloutStalled", self.workload, str(stalled), version=stalled.version)
            self._stall_alerted = True
        elif stalled is None:
            self._stall_alerted = False

        self._publish(observed, counts, decision, deferred=False, error=type(stalled).__name__ if stalled else None)
        return CycleResult(self.workload, outcome, diff=diff, decision=decision)

    def _decide(self, spec: WorkloadSpec, current: int, now: float) -> ScalingDecision:
        utilization = self.sampler.utilization()
        try:
            decision = self.evaluator.evaluate(utilization, current, spec.bounds, now)
        except DecisionSkipped as e:
            if not self._skipping_decisions:
                db.log_event("INFO", f"Decision skipped: {e.reason}; keeping {e.replicas} replicas", workload=self.workload)
            self._skipping_decisions = True
            # Bounds still hold even without metrics.
            target = spec.bounds.clamp(e.replicas)
            return ScalingDecision(target, target, "skipped", {}, e.reason, now)
        self._skipping_decisions = False
        return decision

    def _record_outcome(self) -> None:
        outcome = self.sequencer.last_outcome
        if outcome is None or outcome is self._seen_outcome:
            return
        self._seen_outcome = outcome
        if outcome.result == "converged":
            for v in self.specs:
                if v != outcome.target_version and db.get_spec_version(self.workload, v) is not None:
                    db.set_spec_state(self.workload, v, "retired")
            db.set_spec_state(self.workload, outcome.target_version, "active")
            # Versions without replicas are no longer needed for topology checks.
            self.specs = {v: s for v, s in self.specs.items() if v == outcome.target_version}
        else:
            db.set_spec_state(self.workload, outcome.target_version, "aborted")

    def _defer(self, err: ExecutorUnreachable, decision: ScalingDecision | None = None) -> CycleResult:
        db.log_event("WARN", f"Cycle deferred: {err}", workload=self.workload)
        alert("ExecutorUnreachable", self.workload, str(err))
        st = self.runtime.get_status(self.workload) or WorkloadStatus(self.workload, self.sequencer.running_version)
        st.deferred = True
        st.last_error = type(err).__name__
        st.last_cycle_at = utc_now()
        self.runtime.upsert_status(st)
        return CycleResult(self.workload, "deferred", diff=self._last_valid, decision=decision, error=str(err))

    def _block(self, violation: Violation, decision: ScalingDecision, observed: ReplicaState) -> CycleResult:
        if violation != self._last_violation:
            alert("IsolationViolation", self.workload, violation.reason)
        self._last_violation = violation
        st = self.runtime.get_status(self.workload) or WorkloadStatus(self.workload, self.sequencer.running_version)
        st.deferred = True
        st.last_error = "IsolationViolation"
        st.observed = observed.count_by_version()
        st.last_cycle_at = utc_now()
        self.runtime.upsert_status(st)
        return CycleResult(self.workload, "blocked", diff=self._last_valid, decision=decision, violation=violation)

    def _publish(
        self,
        observed: ReplicaState,
        counts: dict[str, int],
        decision: ScalingDecision,
        deferred: bool,
        error: str | None,
    ) -> None:
        plan = self.sequencer.plan
        last_decision = asdict(decision)
        self.runtime.upsert_status(
            WorkloadStatus(
                workload=self.workload,
                running_version=self.sequencer.running_version,
                replicas=dict(sorted(counts.items())),
                observed=observed.count_by_version(),
                rollout_state=self.sequencer.state.value,
                rollout=plan.snapshot() if plan else None,
                last_decision=last_decision,
                stalled=self.sequencer.stalled is not None,
                deferred=deferred,
                last_error=error,
                last_cycle_at=utc_now(),
            )
        )

