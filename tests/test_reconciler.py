import threading
from dataclasses import replace

import pytest

from conftest import FakeExecutor, make_spec, no_sleep
from dsc import db
from dsc.isolation import IsolationGuard
from dsc.models import Dependency, Endpoint, RolloutState, Selector
from dsc.reconciler import ReconciliationLoop
from dsc.runtime import RuntimeState


def _loop(executor, clock, spec=None, guard=None, runtime=None):
    spec = spec or make_spec()
    return ReconciliationLoop(spec, executor, runtime or RuntimeState(), guard=guard, clock=clock, sleep=no_sleep)


def _seeded(clock, count=3, cpu=50.0, **kw):
    ex = FakeExecutor(clock, **kw)
    ex.seed("web", "v1", count)
    ex.metrics = {"cpu": cpu}
    return ex


def test_steady_state_emits_identical_diff_without_reapplying(clock):
    ex = _seeded(clock)
    loop = _loop(ex, clock)

    first = loop.tick()
    clock.advance(15)
    second = loop.tick()

    assert first.outcome == "applied"
    assert second.outcome == "unchanged"
    assert first.diff == second.diff
    assert first.diff.replica_count_by_version == {"v1": 3}
    assert len(ex.applied) == 1


def test_drift_is_reapplied(clock):
    ex = _seeded(clock)
    loop = _loop(ex, clock)
    loop.tick()

    ex.replicas["web"].pop()
    clock.advance(15)
    result = loop.tick()

    assert result.outcome == "applied"
    assert ex.counts("web") == {"v1": 3}


def test_high_utilization_scales_up(clock):
    ex = _seeded(clock, cpu=100.0)
    loop = _loop(ex, clock)

    result = loop.tick()

    assert result.decision.action == "scale_up"
    assert result.diff.replica_count_by_version == {"v1": 6}
    assert ex.counts("web") == {"v1": 6}
    assert loop.desired == 6


def test_missing_metrics_keep_count_within_bounds(clock):
    ex = _seeded(clock, count=3)
    ex.metrics = {}
    loop = _loop(ex, clock, spec=make_spec(min_replicas=5))

    result = loop.tick()

    assert result.decision.action == "skipped"
    assert result.diff.replica_count_by_version == {"v1": 5}


def test_overlapping_tick_is_skipped(clock):
    ex = _seeded(clock)
    runtime = RuntimeState()
    loop = _loop(ex, clock, runtime=runtime)

    loop._exec_lock.acquire()
    try:
        assert loop.tick() is None
    finally:
        loop._exec_lock.release()

    assert runtime.skipped_ticks["web"] == 1
    assert ex.observe_calls == 0
    messages = [e["message"] for e in db.latest_events(10, workload="web")]
    assert any(m.startswith("Tick skipped") for m in messages)


def test_unreachable_executor_defers_cycle(clock):
    ex = _seeded(clock)
    runtime = RuntimeState()
    loop = _loop(ex, clock, runtime=runtime)
    ex.fail_observe = 5

    result = loop.tick()

    assert result.outcome == "deferred"
    assert ex.observe_calls == 5
    assert ex.applied == []
    st = runtime.get_status("web")
    assert st.deferred is True
    assert st.last_error == "ExecutorUnreachable"

    result = loop.tick()
    assert result.outcome == "applied"
    assert runtime.get_status("web").deferred is False


def test_transient_executor_failure_is_retried(clock):
    ex = _seeded(clock)
    loop = _loop(ex, clock)
    ex.fail_observe = 4

    assert loop.tick().outcome == "applied"


def test_failed_apply_defers_and_keeps_last_valid_diff(clock):
    ex = _seeded(clock)
    loop = _loop(ex, clock)
    ex.fail_apply = 5

    result = loop.tick()

    assert result.outcome == "deferred"
    assert result.diff.replica_count_by_version == {"v1": 3}
    assert ex.applied == []


def _guarded_rollout(clock):
    ex = _seeded(clock)
    guard = IsolationGuard(rules=(), peers=(Endpoint("postgres-0", {"app": "postgres"}),))
    loop = _loop(ex, clock, guard=guard)
    loop.tick()
    needs_db = (Dependency(Selector({"dsc.workload": "web"}), Selector({"app": "postgres"}), 5432),)
    loop.submit(make_spec("v2", dependencies=needs_db))
    return ex, loop


def test_isolation_violation_blocks_and_keeps_previous_diff(clock):
    ex, loop = _guarded_rollout(clock)
    applied_before = list(ex.applied)

    clock.advance(15)
    result = loop.tick()

    assert result.outcome == "blocked"
    assert result.violation.path[1:] == ("postgres-0", 5432)
    assert result.diff.replica_count_by_version == {"v1": 3}
    assert ex.applied == applied_before
    assert loop.sequencer.plan.planned == {"v1": 3}
    st = loop.runtime.get_status("web")
    assert st.deferred is True
    assert st.last_error == "IsolationViolation"


def test_repeated_violation_alerts_once(clock):
    ex, loop = _guarded_rollout(clock)
    for _ in range(3):
        clock.advance(15)
        assert loop.tick().outcome == "blocked"

    alerts = [e for e in db.latest_events(50, workload="web") if e["message"].startswith("ALERT IsolationViolation")]
    assert len(alerts) == 1


def test_rollout_converges_through_the_loop(clock):
    ex = _seeded(clock)
    runtime = RuntimeState()
    loop = _loop(ex, clock, runtime=runtime)
    loop.tick()
    loop.submit(make_spec("v2"))

    for _ in range(30):
        clock.advance(15)
        loop.tick()
        if loop.sequencer.state == RolloutState.CONVERGED:
            break

    loop.tick()
    assert loop.sequencer.state == RolloutState.CONVERGED
    assert ex.counts("web") == {"v2": 3}
    st = runtime.get_status("web")
    assert st.running_version == "v2"
    assert st.rollout_state == "converged"
    assert st.rollout is None
    assert list(loop.specs) == ["v2"]


def test_stalled_rollout_is_flagged_then_aborted(clock):
    ex = _seeded(clock, ready_after=None)
    runtime = RuntimeState()
    loop = _loop(ex, clock, runtime=runtime)
    loop.tick()

    v2 = make_spec("v2")
    loop.submit(replace(v2, rollout=replace(v2.rollout, ready_timeout_s=60)))
    clock.advance(15)
    assert loop.tick().diff.replica_count_by_version == {"v1": 3, "v2": 1}

    clock.advance(61)
    loop.tick()
    st = runtime.get_status("web")
    assert st.stalled is True
    assert st.last_error == "RolloutStalled"
    assert st.rollout_state == "surging"
    messages = [e["message"] for e in db.latest_events(50, workload="web")]
    assert any(m.startswith("ALERT RolloutStalled") for m in messages)

    assert loop.abort("stuck canary") is True
    clock.advance(15)
    assert loop.tick().diff.replica_count_by_version == {"v1": 3}
    clock.advance(15)
    loop.tick()

    st = runtime.get_status("web")
    assert st.rollout_state == "idle"
    assert st.stalled is False
    assert ex.counts("web") == {"v1": 3}


def test_submit_rejects_changed_spec_for_known_version(clock):
    ex = _seeded(clock)
    loop = _loop(ex, clock)
    with pytest.raises(ValueError, match="already registered"):
        loop.submit(make_spec("v1", max_replicas=4))


def test_rollout_submitted_before_first_cycle_keeps_running_replicas(clock):
    ex = _seeded(clock)
    loop = _loop(ex, clock)
    loop.submit(make_spec("v2"))

    result = loop.tick()

    assert result.diff.replica_count_by_version == {"v1": 3, "v2": 1}
    assert ex.counts("web") == {"v1": 3, "v2": 1}


def test_submit_waits_for_the_running_cycle(clock):
    ex = _seeded(clock)
    loop = _loop(ex, clock)
    loop.tick()

    loop._exec_lock.acquire()
    worker = threading.Thread(target=loop.submit, args=(make_spec("v2"),), daemon=True)
    try:
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        assert "v2" not in loop.specs
        assert loop.sequencer.plan is None
    finally:
        loop._exec_lock.release()

    worker.join(timeout=5)
    assert not worker.is_alive()
    assert loop.sequencer.plan.target_version == "v2"
    assert "v2" in loop.specs


def test_cycle_observes_executor_once(clock):
    ex = _seeded(clock)
    loop = _loop(ex, clock)

    result = loop.tick()

    assert ex.observe_calls == 1
    assert result.decision.candidates == {"cpu": 3}
