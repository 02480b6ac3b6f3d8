import httpx
import pytest

from conftest import FakeClock
from dsc import db
from dsc.errors import MetricUnavailable
from dsc.models import Replica, ReplicaState, UtilizationSample
from dsc.sampler import ExecutorMetricsSource, HttpMetricsSource, MetricsSampler, samples_from_state


class ScriptedSource:
    def __init__(self, clock):
        self.clock = clock
        self.values: dict[str, dict[str, float]] = {}  # replica -> metric -> value
        self.down = False

    def fetch(self, workload):
        if self.down:
            raise MetricUnavailable("metrics backend unreachable")
        now = self.clock()
        return [
            UtilizationSample(timestamp=now, metric=m, value=v, replica_id=rid)
            for rid, metrics in self.values.items()
            for m, v in metrics.items()
        ]


def _ready(*ids, not_ready=()):
    replicas = [Replica(id=i, version="v1", ready=True) for i in ids]
    replicas += [Replica(id=i, version="v1", ready=False) for i in not_ready]
    return ReplicaState(replicas=tuple(replicas))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source(clock):
    return ScriptedSource(clock)


def _sampler(source, clock, **kw):
    kw.setdefault("timeout_s", 30)
    kw.setdefault("stale_cycles", 3)
    return MetricsSampler("web", ["cpu"], source, clock=clock, **kw)


def test_sample_is_mean_over_ready_replicas(source, clock):
    source.values = {"a": {"cpu": 40.0}, "b": {"cpu": 60.0}, "c": {"cpu": 100.0}}
    s = _sampler(source, clock)
    s.observe_readiness(_ready("a", "b", not_ready=("c",)))
    s.poll()
    assert s.sample() == {"cpu": 50.0}


def test_missing_sample_for_a_ready_replica_makes_metric_unavailable(source, clock):
    source.values = {"a": {"cpu": 40.0}}
    s = _sampler(source, clock)
    s.observe_readiness(_ready("a", "b"))
    s.poll()
    with pytest.raises(MetricUnavailable):
        s.sample()


def test_samples_older_than_timeout_are_ignored(source, clock):
    source.values = {"a": {"cpu": 40.0}}
    s = _sampler(source, clock)
    s.observe_readiness(_ready("a"))
    s.poll()
    clock.advance(31)
    with pytest.raises(MetricUnavailable):
        s.sample()


def test_unreachable_source_raises(source, clock):
    s = _sampler(source, clock)
    source.down = True
    s.poll()
    with pytest.raises(MetricUnavailable):
        s.sample()


def test_window_is_bounded_and_evicts_oldest(source, clock):
    source.values = {"a": {"cpu": 1.0}, "b": {"cpu": 2.0}, "c": {"cpu": 3.0}}
    s = _sampler(source, clock, window=5)
    s.poll()
    clock.advance(1)
    s.poll()
    history = s.history()
    assert len(history) == 5
    assert history[0].timestamp == clock() - 1
    assert history[-1].timestamp == clock()


def test_last_known_good_used_for_three_cycles_then_dropped(source, clock):
    source.values = {"a": {"cpu": 70.0}}
    s = _sampler(source, clock)
    s.observe_readiness(_ready("a"))
    s.poll()
    assert s.utilization() == {"cpu": 70.0}

    source.down = True
    for _ in range(3):
        clock.advance(15)
        s.poll()
        assert s.utilization() == {"cpu": 70.0}

    clock.advance(15)
    s.poll()
    assert s.utilization() == {}
    messages = [e["message"] for e in db.latest_events(20, workload="web")]
    assert any("excluded from scaling decisions" in m for m in messages)

    source.down = False
    source.values = {"a": {"cpu": 20.0}}
    s.poll()
    assert s.utilization() == {"cpu": 20.0}


def test_executor_source_reads_replica_metrics(clock):
    class _Exec:
        def observe(self, workload):
            return ReplicaState(
                replicas=(
                    Replica(id="a", version="v1", ready=True, metrics={"cpu": 30.0}, reported_at=clock()),
                    Replica(id="b", version="v1", ready=True, metrics={"cpu": 50.0}, reported_at=clock()),
                ),
                observed_at=clock(),
            )

    s = MetricsSampler("web", ["cpu"], ExecutorMetricsSource(_Exec()), clock=clock)
    s.observe_readiness(_Exec().observe("web"))
    s.poll()
    assert s.sample() == {"cpu": 40.0}


def test_executor_source_failure_is_metric_unavailable():
    class _Down:
        def observe(self, workload):
            raise RuntimeError("connection refused")

    with pytest.raises(MetricUnavailable):
        ExecutorMetricsSource(_Down()).fetch("web")


def test_http_source_parses_samples_and_skips_malformed():
    def handler(request):
        assert request.url.path == "/workloads/web/metrics"
        return httpx.Response(
            200,
            json={
                "samples": [
                    {"replica": "a", "metric": "cpu", "value": 41.5, "timestamp": 1700000000.0},
                    {"replica": "b", "metric": "cpu"},
                ]
            },
        )

    source = HttpMetricsSource("http://metrics.local/", transport=httpx.MockTransport(handler))
    samples = source.fetch("web")
    assert samples == [UtilizationSample(timestamp=1700000000.0, metric="cpu", value=41.5, replica_id="a")]


def test_http_source_error_is_metric_unavailable():
    source = HttpMetricsSource("http://metrics.local", transport=httpx.MockTransport(lambda r: httpx.Response(502)))
    with pytest.raises(MetricUnavailable):
        source.fetch("web")


def test_ingesting_observed_state_replaces_a_failed_poll(source, clock):
    s = _sampler(source, clock)
    source.down = True
    s.poll()

    observed = ReplicaState(
        replicas=(
            Replica(id="a", version="v1", ready=True, metrics={"cpu": 20.0}),
            Replica(id="b", version="v1", ready=True, metrics={"cpu": 40.0}, reported_at=clock() - 5),
        ),
        observed_at=clock(),
    )
    assert [x.timestamp for x in samples_from_state(observed)] == [clock(), clock() - 5]

    s.observe_readiness(observed)
    assert s.ingest(samples_from_state(observed)) == 2
    assert s.sample() == {"cpu": 30.0}
