from __future__ import annotations

import secrets
import time
from typing import Any, Callable, Protocol, TypeVar

import docker
import httpx
from docker.errors import DockerException, NotFound

from . import db
from .api_models import WorkloadSpecModel
from .errors import ExecutorUnreachable
from .health import probe_ready
from .models import VERSION_LABEL, WORKLOAD_LABEL, DesiredStateDiff, Replica, ReplicaState, WorkloadSpec
from .settings import settings


T = TypeVar("T")


class Executor(Protocol):
    """The platform-facing side: converges the cluster toward emitted diffs."""

    def register(self, spec: WorkloadSpec) -> None: ...

    def apply(self, diff: DesiredStateDiff) -> None: ...

    def observe(self, workload: str) -> ReplicaState: ...


def call_with_backoff(
    fn: Callable[[], T],
    what: str = "executor call",
    attempts: int | None = None,
    base_s: float | None = None,
    cap_s: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Retry `fn` on ExecutorUnreachable with exponential backoff (base, 2*base, ... capped)."""
    attempts = max(1, attempts if attempts is not None else settings.backoff_attempts)
    base_s = settings.backoff_base_s if base_s is None else base_s
    cap_s = settings.backoff_cap_s if cap_s is None else cap_s

    last: ExecutorUnreachable | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ExecutorUnreachable as e:
            last = e
            if attempt == attempts:
                break
            sleep(min(cap_s, base_s * (2 ** (attempt - 1))))
    raise ExecutorUnreachable(f"{what} failed after {attempts} attempts: {last}", attempts) from last


class HttpExecutor:
    """Talks to an executor service over HTTP.

    PUT  {base}/workloads/{name}/specs/{version}   register a spec version
    POST {base}/workloads/{name}/desired           apply a desired-state diff
    GET  {base}/workloads/{name}/observed          observed replicas
    """

    def __init__(self, base_url: str | None = None, timeout_s: float | None = None, transport: httpx.BaseTransport | None = None):
        self.base_url = (base_url or settings.executor_url).rstrip("/")
        self.timeout_s = settings.executor_timeout_s if timeout_s is None else timeout_s
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self._transport)

    def _request(self, method: str, path: str, json: Any = None) -> httpx.Response:
        try:
            with self._client() as client:
                resp = client.request(method, f"{self.base_url}{path}", json=json)
        except httpx.HTTPError as e:
            raise ExecutorUnreachable(f"{method} {path}: {type(e).__name__}: {e}") from e
        if resp.status_code >= 500:
            raise ExecutorUnreachable(f"{method} {path}: HTTP {resp.status_code}")
        resp.raise_for_status()
        return resp

    def register(self, spec: WorkloadSpec) -> None:
        payload = WorkloadSpecModel.from_spec(spec).model_dump(mode="json")
        self._request("PUT", f"/workloads/{spec.name}/specs/{spec.version}", json=payload)

    def apply(self, diff: DesiredStateDiff) -> None:
        self._request("POST", f"/workloads/{diff.workload}/desired", json=diff.to_dict())

    def observe(self, workload: str) -> ReplicaState:
        data = self._request("GET", f"/workloads/{workload}/observed").json()
        replicas = []
        for item in data.get("replicas", []):
            replicas.append(
                Replica(
                    id=str(item["id"]),
                    version=str(item["version"]),
                    ready=bool(item.get("ready", False)),
                    metrics={str(k): float(v) for k, v in (item.get("metrics") or {}).items()},
                    reported_at=item.get("reported_at"),
                )
            )
        return ReplicaState(replicas=tuple(replicas), observed_at=float(data.get("observed_at", time.time())))


class DockerExecutor:
    """Single-node executor that runs replicas as labeled Docker containers.

    Containers carry `dsc.workload` / `dsc.version` labels so state can be
    re-discovered after restarts. Readiness comes from an HTTP probe on the
    spec's health path; cpu/memory come from container stats (percent).
    Network rules are not enforced: a bridge network has no per-port policy.
    """

    def __init__(self, network: str | None = None):
        self.network = network or settings.docker_network
        self._specs: dict[tuple[str, str], WorkloadSpec] = {}

    def _client(self) -> docker.DockerClient:
        try:
            return docker.from_env()
        except DockerException as e:
            raise ExecutorUnreachable(f"docker unavailable: {e}") from e

    def _ensure_network(self, c: docker.DockerClient) -> None:
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")
            db.log_event("INFO", f"Created docker network '{self.network}'.")

    def register(self, spec: WorkloadSpec) -> None:
        self._specs[(spec.name, spec.version)] = spec

    def _containers(self, c: docker.DockerClient, workload: str) -> list[Any]:
        return c.containers.list(all=True, filters={"label": [f"{WORKLOAD_LABEL}={workload}"]})

    def apply(self, diff: DesiredStateDiff) -> None:
        try:
            c = self._client()
            self._ensure_network(c)
            by_version: dict[str, list[Any]] = {}
            for cont in self._containers(c, diff.workload):
                if cont.status not in {"running", "created", "restarting"}:
                    cont.remove(force=True)
                    continue
                by_version.setdefault(cont.labels.get(VERSION_LABEL, ""), []).append(cont)

            for version, conts in by_version.items():
                want = diff.replica_count_by_version.get(version, 0)
                # Newest extras go first.
                for cont in sorted(conts, key=lambda x: x.attrs.get("Created", ""), reverse=True)[: max(0, len(conts) - want)]:
                    cont.remove(force=True)
                    db.log_event("INFO", f"Removed container {cont.name}", workload=diff.workload, version=version)

            for version, want in diff.replica_count_by_version.items():
                missing = want - len(by_version.get(version, []))
                for _ in range(max(0, missing)):
                    self._start(c, diff.workload, version)
        except DockerException as e:
            raise ExecutorUnreachable(f"docker apply failed: {e}") from e

    def _start(self, c: docker.DockerClient, workload: str, version: str) -> None:
        spec = self._specs.get((workload, version))
        if spec is None:
            raise ValueError(f"no registered spec for {workload} {version}")
        name = f"dsc-{workload}-{version}-{secrets.token_hex(3)}"
        c.containers.run(
            spec.image,
            detach=True,
            name=name,
            network=self.network,
            labels=spec.pod_labels(version),
            environment={"VERSION": version},
            # The controller replaces exited replicas itself.
            restart_policy={"Name": "no"},
        )
        db.log_event("INFO", f"Started container {name} from image {spec.image}", workload=workload, version=version)

    def observe(self, workload: str) -> ReplicaState:
        try:
            c = self._client()
            conts = self._containers(c, workload)
            now = time.time()
            replicas: list[Replica] = []
            for cont in sorted(conts, key=lambda x: x.name):
                version = cont.labels.get(VERSION_LABEL, "")
                running = cont.status == "running"
                ready = False
                metrics: dict[str, float] = {}
                spec = self._specs.get((workload, version))
                if running and spec is not None:
                    ready, _msg, _latency = probe_ready(f"http://{cont.name}:{spec.internal_port}{spec.health_path}")
                if running:
                    metrics = _container_metrics(cont.stats(stream=False))
                replicas.append(Replica(id=cont.name, version=version, ready=ready, metrics=metrics, reported_at=now))
            return ReplicaState(replicas=tuple(replicas), observed_at=now)
        except DockerException as e:
            raise ExecutorUnreachable(f"docker observe failed: {e}") from e


def _container_metrics(stats: dict[str, Any]) -> dict[str, float]:
    out: dict[str, float] = {}
    cpu = stats.get("cpu_stats") or {}
    pre = stats.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (pre.get("cpu_usage") or {}).get("total_usage", 0)
    sys_delta = cpu.get("system_cpu_usage", 0) - pre.get("system_cpu_usage", 0)
    if cpu_delta >= 0 and sys_delta > 0:
        online = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
        out["cpu"] = round(cpu_delta / sys_delta * online * 100.0, 2)
    mem = stats.get("memory_stats") or {}
    if mem.get("limit"):
        out["memory"] = round(mem.get("usage", 0) / mem["limit"] * 100.0, 2)
    return out


def build_executor(kind: str | None = None) -> Executor:
    kind = (kind or settings.executor_kind).lower()
    if kind == "docker":
        return DockerExecutor()
    if kind == "http":
        return HttpExecutor()
    raise ValueError(f"unknown executor kind '{kind}'")
