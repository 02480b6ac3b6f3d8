from __future__ import annotations

import time
from collections import deque
from threading import Lock, Thread
from typing import TYPE_CHECKING, Callable, Iterable, Protocol

import httpx

from . import db
from .errors import MetricUnavailable
from .models import ReplicaState, UtilizationSample
from .settings import settings

if TYPE_CHECKING:
    from .executor import Executor


class MetricsSource(Protocol):
    def fetch(self, workload: str) -> list[UtilizationSample]:
        """Return the latest per-replica samples; raise MetricUnavailable on failure."""
        ...


def samples_from_state(observed: ReplicaState) -> list[UtilizationSample]:
    out: list[UtilizationSample] = []
    for r in observed.replicas:
        ts = r.reported_at if r.reported_at is not None else observed.observed_at
        for name, value in r.metrics.items():
            out.append(UtilizationSample(timestamp=ts, metric=name, value=float(value), replica_id=r.id))
    return out


class ExecutorMetricsSource:
    """Reads the per-replica metric values carried by the executor's observed state.

    The reconciliation loop ingests its own observed state instead of polling this.
    """

    def __init__(self, executor: Executor):
        self.executor = executor

    def fetch(self, workload: str) -> list[UtilizationSample]:
        try:
            observed = self.executor.observe(workload)
        except Exception as e:
            raise MetricUnavailable(f"observed-state query failed: {type(e).__name__}: {e}") from e
        return samples_from_state(observed)


class HttpMetricsSource:
    """Pulls samples from `GET {base}/workloads/{name}/metrics`.

    Expected JSON: {"samples": [{"replica": "...", "metric": "cpu", "value": 41.5, "timestamp": 1700000000.0}]}
    """

    def __init__(self, base_url: str, timeout_s: float | None = None, transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else float(settings.metric_timeout_s)
        self._transport = transport

    def fetch(self, workload: str) -> list[UtilizationSample]:
        url = f"{self.base_url}/workloads/{workload}/metrics"
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self._transport) as client:
                resp = client.get(url)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MetricUnavailable(f"metrics source unreachable: {type(e).__name__}: {e}") from e

        now = time.time()
        out: list[UtilizationSample] = []
        for item in data.get("samples", []) if isinstance(data, dict) else []:
            try:
                out.append(
                    UtilizationSample(
                        timestamp=float(item.get("timestamp", now)),
                        metric=str(item["metric"]),
                        value=float(item["value"]),
                        replica_id=str(item["replica"]),
                    )
                )
            except (KeyError, TypeError, ValueError):
                continue
        return out


class MetricsSampler:
    """Polls one workload's metrics and keeps a bounded sliding window of samples.

    `sample()` is the strict view (raises MetricUnavailable). `utilization()` is
    what the reconciliation loop consumes: it falls back to the last-known-good
    value of a metric for at most `stale_cycles` consecutive cycles and then
    drops the metric so scaling never runs on stale data indefinitely.
    """

    def __init__(
        self,
        workload: str,
        metrics: Iterable[str],
        source: MetricsSource,
        interval_s: float | None = None,
        timeout_s: float | None = None,
        stale_cycles: int | None = None,
        window: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.workload = workload
        self.metrics = tuple(metrics)
        self.source = source
        self.interval_s = interval_s if interval_s is not None else float(settings.sample_interval_s)
        self.timeout_s = timeout_s if timeout_s is not None else float(settings.metric_timeout_s)
        self.stale_cycles = max(0, stale_cycles if stale_cycles is not None else settings.stale_cycles)
        self.clock = clock

        self._lock = Lock()
        self._window: deque[UtilizationSample] = deque(maxlen=max(1, window or settings.sample_window))
        self._ready: set[str] | None = None
        self._source_error: str | None = None
        self._last_good: dict[str, float] = {}
        self._misses: dict[str, int] = {}

        self._stop = False
        self._thr: Thread | None = None

    # polling

    @property
    def running(self) -> bool:
        return bool(self._thr and self._thr.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop = False
        self._thr = Thread(target=self._loop, daemon=True, name=f"sampler-{self.workload}")
        self._thr.start()

    def stop(self) -> None:
        self._stop = True

    def _loop(self) -> None:
        while not self._stop:
            self.poll()
            time.sleep(max(1.0, self.interval_s))

    def poll(self) -> int:
        """Fetch once from the source. Returns the number of samples ingested."""
        try:
            samples = self.source.fetch(self.workload)
        except MetricUnavailable as e:
            with self._lock:
                self._source_error = str(e)
            return 0
        return self.ingest(samples)

    def ingest(self, samples: Iterable[UtilizationSample]) -> int:
        """Add samples obtained elsewhere, e.g. from the cycle's observed state."""
        samples = list(samples)
        with self._lock:
            self._source_error = None
            self._window.extend(samples)
        return len(samples)

    def observe_readiness(self, observed: ReplicaState) -> None:
        with self._lock:
            self._ready = {r.id for r in observed.replicas if r.ready}

    def history(self) -> list[UtilizationSample]:
        with self._lock:
            return list(self._window)

    # views

    def sample(self) -> dict[str, float]:
        """Mean of each metric across ready replicas, using only fresh samples.

        A metric is reported only when every ready replica has a sample for it
        newer than the timeout.
        """
        now = self.clock()
        with self._lock:
            if self._source_error:
                raise MetricUnavailable(self._source_error)
            ready = None if self._ready is None else set(self._ready)
            latest: dict[tuple[str, str], UtilizationSample] = {}
            for s in self._window:
                if now - s.timestamp > self.timeout_s:
                    continue
                key = (s.metric, s.replica_id)
                prev = latest.get(key)
                if prev is None or s.timestamp >= prev.timestamp:
                    latest[key] = s

        out: dict[str, float] = {}
        for metric in self.metrics:
            per_replica = {rid: s.value for (m, rid), s in latest.items() if m == metric}
            if ready is not None:
                if not ready or not ready.issubset(per_replica):
                    continue
                values = [per_replica[rid] for rid in ready]
            else:
                values = list(per_replica.values())
            if values:
                out[metric] = sum(values) / len(values)

        if not out:
            raise MetricUnavailable(f"no fresh data for {self.workload} within {self.timeout_s:.0f}s")
        return out

    def utilization(self) -> dict[str, float]:
        """Values to evaluate this cycle, degrading to last-known-good then to missing."""
        try:
            fresh = self.sample()
        except MetricUnavailable as e:
            fresh = {}
            db.log_event("WARN", f"Metrics unavailable: {e}", workload=self.workload)

        out: dict[str, float] = {}
        for metric in self.metrics:
            if metric in fresh:
                self._last_good[metric] = fresh[metric]
                self._misses[metric] = 0
                out[metric] = fresh[metric]
                continue
            misses = self._misses.get(metric, 0) + 1
            self._misses[metric] = misses
            if metric in self._last_good and misses <= self.stale_cycles:
                out[metric] = self._last_good[metric]
            elif misses == self.stale_cycles + 1:
                db.log_event(
                    "WARN",
                    f"Metric '{metric}' stale for {misses} cycles; excluded from scaling decisions",
                    workload=self.workload,
                )
        return out
