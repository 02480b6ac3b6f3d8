from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .settings import settings


WORKLOAD_LABEL = "dsc.workload"
VERSION_LABEL = "dsc.version"


class TieBreak(str, Enum):
    FAVOR_AVAILABILITY = "favor_availability"  # highest candidate wins
    FAVOR_COST = "favor_cost"  # lowest candidate wins


class RolloutState(str, Enum):
    IDLE = "idle"
    SURGING = "surging"
    DRAINING = "draining"
    CONVERGED = "converged"
    ABORTING = "aborting"


@dataclass(frozen=True)
class ReplicaBounds:
    min_replicas: int
    max_replicas: int

    def __post_init__(self) -> None:
        if self.min_replicas < 0:
            raise ValueError("min_replicas must be >= 0")
        if self.max_replicas < max(1, self.min_replicas):
            raise ValueError("max_replicas must be >= max(1, min_replicas)")

    def clamp(self, replicas: int) -> int:
        return max(self.min_replicas, min(self.max_replicas, int(replicas)))


@dataclass(frozen=True)
class MetricTarget:
    name: str
    target: float  # per-replica mean the workload should sit at, e.g. 50.0 (% CPU)

    def __post_init__(self) -> None:
        if self.target <= 0:
            raise ValueError(f"metric target for '{self.name}' must be > 0")


@dataclass(frozen=True)
class ResourceRequirements:
    cpu_request: str | None = None
    cpu_limit: str | None = None
    memory_request: str | None = None
    memory_limit: str | None = None


@dataclass(frozen=True)
class Selector:
    """Label selector; a pod matches when it carries every listed label."""

    match_labels: dict[str, str] = field(default_factory=dict)

    def matches(self, labels: Mapping[str, str]) -> bool:
        return all(labels.get(k) == v for k, v in self.match_labels.items())

    def describe(self) -> str:
        if not self.match_labels:
            return "{*}"
        return "{" + ",".join(f"{k}={v}" for k, v in sorted(self.match_labels.items())) + "}"


@dataclass(frozen=True)
class IsolationRule:
    source: Selector
    destination: Selector
    ports: tuple[int, ...] = ()  # empty: any port

    def allows(self, source_labels: Mapping[str, str], dest_labels: Mapping[str, str], port: int) -> bool:
        if self.ports and port not in self.ports:
            return False
        return self.source.matches(source_labels) and self.destination.matches(dest_labels)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": dict(sorted(self.source.match_labels.items())),
            "destination": dict(sorted(self.destination.match_labels.items())),
            "ports": sorted(self.ports),
        }


@dataclass(frozen=True)
class Dependency:
    """A communication path the workload needs in order to function."""

    source: Selector
    destination: Selector
    port: int


@dataclass(frozen=True)
class Endpoint:
    """A peer pod outside the workload, e.g. the datastore or the ingress controller."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RolloutPolicy:
    surge_budget: int = 1
    unavailability_budget: int = 1
    batch_size: int | None = None  # fixed size; None derives it from batch_percent
    batch_percent: int = field(default_factory=lambda: settings.batch_percent)
    ready_timeout_s: int = field(default_factory=lambda: settings.rollout_ready_timeout_s)
    stall_abort_after_s: int | None = None  # None: a stalled rollout waits for the operator

    def __post_init__(self) -> None:
        if self.surge_budget < 0 or self.unavailability_budget < 0:
            raise ValueError("surge and unavailability budgets must be >= 0")
        if self.surge_budget + self.unavailability_budget < 1:
            raise ValueError("surge_budget + unavailability_budget must be >= 1")
        if self.batch_size is not None and self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if not 1 <= self.batch_percent <= 100:
            raise ValueError("batch_percent must be within 1..100")

    def batch_for(self, desired: int) -> int:
        if self.batch_size is not None:
            return self.batch_size
        return max(1, math.ceil(desired * self.batch_percent / 100))


@dataclass(frozen=True)
class ScalingPolicy:
    stabilization_window_s: int = field(default_factory=lambda: settings.stabilization_window_s)
    tolerance: float = field(default_factory=lambda: settings.stability_tolerance)
    tie_break: TieBreak = TieBreak.FAVOR_AVAILABILITY


@dataclass(frozen=True)
class WorkloadSpec:
    name: str
    version: str
    image: str
    bounds: ReplicaBounds
    metrics: tuple[MetricTarget, ...] = ()
    resources: ResourceRequirements = field(default_factory=ResourceRequirements)
    labels: dict[str, str] = field(default_factory=dict)
    dependencies: tuple[Dependency, ...] = ()
    rollout: RolloutPolicy = field(default_factory=RolloutPolicy)
    scaling: ScalingPolicy = field(default_factory=ScalingPolicy)
    internal_port: int = 8080
    health_path: str = "/health"

    def pod_labels(self, version: str | None = None) -> dict[str, str]:
        labels = dict(self.labels)
        labels[WORKLOAD_LABEL] = self.name
        labels[VERSION_LABEL] = version or self.version
        return labels


@dataclass(frozen=True)
class Replica:
    id: str
    version: str
    ready: bool
    metrics: dict[str, float] = field(default_factory=dict)
    reported_at: float | None = None


@dataclass(frozen=True)
class ReplicaState:
    """Observed replicas of one workload, as reported by the executor."""

    replicas: tuple[Replica, ...] = ()
    observed_at: float = field(default_factory=time.time)

    @property
    def total(self) -> int:
        return len(self.replicas)

    @property
    def available(self) -> int:
        return sum(1 for r in self.replicas if r.ready)

    def count_by_version(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for r in self.replicas:
            out[r.version] = out.get(r.version, 0) + 1
        return out

    def ready_by_version(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for r in self.replicas:
            if r.ready:
                out[r.version] = out.get(r.version, 0) + 1
        return out


@dataclass(frozen=True)
class UtilizationSample:
    timestamp: float
    metric: str
    value: float
    replica_id: str


@dataclass(frozen=True)
class ScalingDecision:
    target: int
    raw_target: int
    action: str  # scale_up|scale_down|hold|skipped
    candidates: dict[str, int] = field(default_factory=dict)
    reason: str = ""
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PodRef:
    """One pod standing in for `replicas` identically labeled pods."""

    name: str
    labels: dict[str, str]
    replicas: int = 1


@dataclass(frozen=True)
class Topology:
    pods: tuple[PodRef, ...]
    dependencies: tuple[Dependency, ...] = ()


@dataclass(frozen=True)
class Violation:
    rule: Dependency
    reason: str
    path: tuple[str, str, int] | None = None


@dataclass(frozen=True)
class DesiredStateDiff:
    workload: str
    target_spec_version: str
    replica_count_by_version: dict[str, int]
    network_rules: tuple[IsolationRule, ...] = ()

    @property
    def total(self) -> int:
        return sum(self.replica_count_by_version.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "workload": self.workload,
            "targetSpecVersion": self.target_spec_version,
            "replicaCountByVersion": dict(sorted(self.replica_count_by_version.items())),
            "networkRules": [r.to_dict() for r in self.network_rules],
        }
