from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable

from . import db
from .errors import RolloutStalled
from .models import ReplicaState, RolloutPolicy, RolloutState


SURGE = "surge"
DRAIN = "drain"


@dataclass
class RolloutPlan:
    workload: str
    source_version: str
    target_version: str
    policy: RolloutPolicy
    source_counts: dict[str, int]  # distribution before the rollout started
    planned: dict[str, int]  # counts last handed to the executor
    started_at: float
    step_index: int = 0
    phase: str = SURGE
    waiting: bool = False
    batch_started_at: float | None = None
    grown: tuple[str, ...] = ()
    shrunk: tuple[str, ...] = ()
    aborting: bool = False
    abort_requested: bool = False
    abort_reason: str = ""
    stalled_since: float | None = None
    batch_size: int = 1

    @property
    def surge_budget(self) -> int:
        return self.policy.surge_budget

    @property
    def unavailability_budget(self) -> int:
        return self.policy.unavailability_budget

    @property
    def state(self) -> RolloutState:
        if self.aborting:
            return RolloutState.ABORTING
        return RolloutState.SURGING if self.phase == SURGE else RolloutState.DRAINING

    def goal(self, desired: int) -> dict[str, int]:
        if self.aborting:
            return {v: c for v, c in self.source_counts.items() if c > 0}
        return {self.target_version: max(0, int(desired))} if desired > 0 else {}

    def snapshot(self) -> dict[str, object]:
        return {
            "source_version": self.source_version,
            "target_version": self.target_version,
            "state": self.state.value,
            "step_index": self.step_index,
            "batch_size": self.batch_size,
            "surge_budget": self.surge_budget,
            "unavailability_budget": self.unavailability_budget,
            "planned": dict(sorted(self.planned.items())),
            "source_counts": dict(sorted(self.source_counts.items())),
            "abort_requested": self.abort_requested,
            "stalled": self.stalled_since is not None,
        }


@dataclass
class RolloutOutcome:
    target_version: str
    result: str  # converged|aborted
    at: float = field(default_factory=time.time)


class RolloutSequencer:
    """Drives one workload from its running version to a new one, batch by batch.

    Each batch first surges (adds target replicas within `desired + surge_budget`
    and waits for them to be ready) then drains (removes retiring replicas while
    keeping `available >= desired - unavailability_budget`). When the surge
    budget leaves no room the drain goes first. Aborts reuse the same engine
    with the pre-rollout distribution as the goal.
    """

    def __init__(self, workload: str, running_version: str, clock: Callable[[], float] = time.time):
        self.workload = workload
        self.running_version = running_version
        self.clock = clock
        self._lock = Lock()
        self.plan: RolloutPlan | None = None
        self._settled_state = RolloutState.IDLE
        self._rest: dict[str, int] = {}  # non-running versions kept after an abort
        self._last_counts: dict[str, int] = {}
        self.stalled: RolloutStalled | None = None
        self.last_outcome: RolloutOutcome | None = None

    @property
    def state(self) -> RolloutState:
        with self._lock:
            return self.plan.state if self.plan else self._settled_state

    @property
    def active(self) -> bool:
        return self.plan is not None

    # operator actions

    def submit(self, version: str, policy: RolloutPolicy, now: float | None = None) -> RolloutPlan | None:
        """Start a rollout to `version`, superseding any active plan.

        Returns None when `version` is already running and nothing is in flight.
        """
        now = self.clock() if now is None else now
        with self._lock:
            old = self.plan
            if old is None and version == self.running_version:
                return None
            if old is not None and not old.aborting and old.target_version == version:
                return old

            if old is not None:
                base = {v: c for v, c in old.planned.items() if c > 0}
                source = old.source_version
                db.log_event(
                    "WARN",
                    f"Rollout to {old.target_version} superseded by {version}; continuing from {base}",
                    workload=self.workload,
                    version=old.target_version,
                )
            else:
                base = {v: c for v, c in self._last_counts.items() if c > 0}
                source = self.running_version

            plan = RolloutPlan(
                workload=self.workload,
                source_version=source,
                target_version=version,
                policy=policy,
                source_counts=dict(base),
                planned=dict(base),
                started_at=now,
            )
            self.plan = plan
            self.stalled = None
            db.log_event(
                "INFO",
                f"Rollout {source} -> {version} started "
                f"(surge={policy.surge_budget}, unavailable={policy.unavailability_budget})",
                workload=self.workload,
                version=version,
            )
            return plan

    def abort(self, reason: str = "operator request") -> bool:
        """Request a cooperative abort. Takes effect at the next batch boundary."""
        with self._lock:
            plan = self.plan
            if plan is None:
                return False
            if plan.aborting or plan.abort_requested:
                return True
            plan.abort_requested = True
            plan.abort_reason = reason
            db.log_event(
                "WARN",
                f"Abort requested ({reason}); applies at next batch boundary",
                workload=self.workload,
                version=plan.target_version,
            )
            return True

    # reconciliation

    def checkpoint(self) -> tuple[Any, ...]:
        with self._lock:
            return (
                copy.deepcopy(self.plan),
                self.running_version,
                self._settled_state,
                dict(self._rest),
                dict(self._last_counts),
                self.stalled,
                self.last_outcome,
            )

    def restore(self, cp: tuple[Any, ...]) -> None:
        """Undo a step whose result was rejected before it reached the executor."""
        plan, running, settled, rest, last_counts, stalled, outcome = cp
        with self._lock:
            self.plan = copy.deepcopy(plan)
            self.running_version = running
            self._settled_state = settled
            self._rest = dict(rest)
            self._last_counts = dict(last_counts)
            self.stalled = stalled
            self.last_outcome = outcome

    def step(self, observed: ReplicaState, desired: int, now: float | None = None) -> dict[str, int]:
        """Advance the plan against observed state; return replica counts per version."""
        now = self.clock() if now is None else now
        with self._lock:
            if self.plan is None:
                counts = self._idle_counts(desired)
            else:
                counts = self._advance(self.plan, observed, desired, now)
            self._last_counts = dict(counts)
            return counts

    def _idle_counts(self, desired: int) -> dict[str, int]:
        counts = {v: c for v, c in self._rest.items() if c > 0 and v != self.running_version}
        counts[self.running_version] = max(0, int(desired) - sum(counts.values()))
        return counts

    def _advance(self, plan: RolloutPlan, observed: ReplicaState, desired: int, now: float) -> dict[str, int]:
        obs_total = observed.count_by_version()
        obs_ready = observed.ready_by_version()

        if not plan.source_counts and not plan.planned:
            # Submitted before any cycle ran: start from what is actually running.
            base = {v: c for v, c in obs_total.items() if c > 0}
            plan.source_counts = dict(base)
            plan.planned = dict(base)

        if plan.waiting:
            if not self._batch_settled(plan, obs_total, obs_ready):
                if plan.phase == SURGE:
                    self._check_stall(plan, now)
                if plan.abort_requested and not plan.aborting and plan.stalled_since is not None:
                    self._begin_abort(plan)
                else:
                    return dict(plan.planned)
            else:
                if plan.stalled_since is not None:
                    db.log_event(
                        "INFO", "Stalled batch became ready; rollout resumes", workload=self.workload, version=plan.target_version
                    )
                    plan.stalled_since = None
                    self.stalled = None
                plan.waiting = False
                if plan.phase == SURGE:
                    plan.phase = DRAIN
                else:
                    plan.phase = SURGE
                    plan.step_index += 1

        if plan.abort_requested and not plan.aborting:
            self._begin_abort(plan)

        goal = plan.goal(desired)
        budget = sum(goal.values())
        plan.batch_size = plan.policy.batch_for(budget)

        for _ in range(2):
            if self._finished(plan, goal, obs_total, obs_ready):
                return self._finish(plan, desired)
            if plan.phase == SURGE:
                opened = self._open_surge(plan, goal, budget, now)
            else:
                opened = self._open_drain(plan, goal, budget, obs_ready, now)
            if opened:
                break
            plan.phase = DRAIN if plan.phase == SURGE else SURGE
        return dict(plan.planned)

    def _batch_settled(self, plan: RolloutPlan, obs_total: dict[str, int], obs_ready: dict[str, int]) -> bool:
        if plan.phase == SURGE:
            return all(obs_ready.get(v, 0) >= plan.planned.get(v, 0) for v in plan.grown)
        return all(obs_total.get(v, 0) <= plan.planned.get(v, 0) for v in plan.shrunk)

    def _finished(
        self, plan: RolloutPlan, goal: dict[str, int], obs_total: dict[str, int], obs_ready: dict[str, int]
    ) -> bool:
        planned = {v: c for v, c in plan.planned.items() if c > 0}
        if planned != goal:
            return False
        if any(obs_ready.get(v, 0) < c for v, c in goal.items()):
            return False
        return all(c == 0 for v, c in obs_total.items() if v not in goal)

    def _open_surge(self, plan: RolloutPlan, goal: dict[str, int], budget: int, now: float) -> bool:
        total = sum(plan.planned.values())
        room = budget + plan.surge_budget - total
        deficits = [(v, goal[v] - plan.planned.get(v, 0)) for v in goal if goal[v] > plan.planned.get(v, 0)]
        if room <= 0 or not deficits:
            return False

        add = min(plan.batch_size, room, sum(d for _, d in deficits))
        grown: list[str] = []
        for v, deficit in deficits:
            n = min(deficit, add)
            plan.planned[v] = plan.planned.get(v, 0) + n
            add -= n
            grown.append(v)
            if add <= 0:
                break

        plan.grown = tuple(grown)
        plan.shrunk = ()
        plan.waiting = True
        plan.batch_started_at = now
        db.log_event(
            "INFO",
            f"{plan.state.value}: batch {plan.step_index + 1} scaled {', '.join(grown)} up; planned {dict(sorted(plan.planned.items()))}",
            workload=self.workload,
            version=plan.target_version,
        )
        return True

    def _open_drain(
        self, plan: RolloutPlan, goal: dict[str, int], budget: int, obs_ready: dict[str, int], now: float
    ) -> bool:
        order = [v for v in plan.source_counts if v not in goal]
        order += [v for v in plan.planned if v not in goal and v not in order]
        order += [v for v in goal if v not in order]
        excess = [(v, plan.planned.get(v, 0) - goal.get(v, 0)) for v in order if plan.planned.get(v, 0) > goal.get(v, 0)]
        if not excess:
            return False

        available = sum(min(obs_ready.get(v, 0), c) for v, c in plan.planned.items())
        floor = budget - plan.unavailability_budget
        remove = min(plan.batch_size, sum(e for _, e in excess), available - floor)
        if remove <= 0:
            return False

        shrunk: list[str] = []
        for v, e in excess:
            n = min(e, remove)
            plan.planned[v] -= n
            remove -= n
            shrunk.append(v)
            if remove <= 0:
                break
        plan.planned = {v: c for v, c in plan.planned.items() if c > 0}

        plan.shrunk = tuple(shrunk)
        plan.grown = ()
        plan.waiting = True
        plan.batch_started_at = now
        db.log_event(
            "INFO",
            f"{plan.state.value}: batch {plan.step_index + 1} scaled {', '.join(shrunk)} down; planned {dict(sorted(plan.planned.items()))}",
            workload=self.workload,
            version=plan.target_version,
        )
        return True

    def _check_stall(self, plan: RolloutPlan, now: float) -> None:
        started = plan.batch_started_at if plan.batch_started_at is not None else now
        waited = now - started
        if plan.stalled_since is None and waited > plan.policy.ready_timeout_s:
            plan.stalled_since = now
            self.stalled = RolloutStalled(self.workload, plan.target_version, waited)
            db.log_event("ERROR", str(self.stalled), workload=self.workload, version=plan.target_version)

        auto_abort = plan.policy.stall_abort_after_s
        if (
            plan.stalled_since is not None
            and auto_abort is not None
            and not plan.abort_requested
            and not plan.aborting
            and now - plan.stalled_since >= auto_abort
        ):
            plan.abort_requested = True
            plan.abort_reason = f"stalled for {now - plan.stalled_since:.0f}s"
            db.log_event("WARN", f"Auto-abort: {plan.abort_reason}", workload=self.workload, version=plan.target_version)

    def _begin_abort(self, plan: RolloutPlan) -> None:
        plan.aborting = True
        plan.waiting = False
        plan.phase = DRAIN
        plan.stalled_since = None
        self.stalled = None
        db.log_event(
            "WARN",
            f"Aborting rollout to {plan.target_version} ({plan.abort_reason}); restoring {plan.source_counts}",
            workload=self.workload,
            version=plan.target_version,
        )

    def _finish(self, plan: RolloutPlan, desired: int) -> dict[str, int]:
        if plan.aborting:
            self.running_version = plan.source_version
            self._rest = {v: c for v, c in plan.source_counts.items() if v != plan.source_version}
            self._settled_state = RolloutState.IDLE
            self.last_outcome = RolloutOutcome(plan.target_version, "aborted", self.clock())
            db.log_event(
                "WARN",
                f"Rollout to {plan.target_version} aborted; restored {plan.source_counts}",
                workload=self.workload,
                version=plan.target_version,
            )
            counts = {v: c for v, c in plan.source_counts.items() if c > 0}
        else:
            self.running_version = plan.target_version
            self._rest = {}
            self._settled_state = RolloutState.CONVERGED
            self.last_outcome = RolloutOutcome(plan.target_version, "converged", self.clock())
            db.log_event(
                "INFO",
                f"Rollout completed after {plan.step_index} batches; all replicas on {plan.target_version}",
                workload=self.workload,
                version=plan.target_version,
            )
            counts = self._idle_counts(desired)
        self.plan = None
        self.stalled = None
        return counts
