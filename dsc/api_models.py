from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import (
    Dependency,
    Endpoint,
    IsolationRule,
    MetricTarget,
    ReplicaBounds,
    ResourceRequirements,
    RolloutPolicy,
    ScalingPolicy,
    Selector,
    TieBreak,
    WorkloadSpec,
)
from .settings import settings


WORKLOAD_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
VERSION_RE = re.compile(r"^[a-z0-9][a-z0-9\-\._]{0,63}$")


class DependencyModel(BaseModel):
    source: dict[str, str] = Field(default_factory=dict, description="Labels of the calling pods")
    destination: dict[str, str] = Field(default_factory=dict, description="Labels of the called pods")
    port: int = Field(..., ge=1, le=65535)

    def to_dependency(self) -> Dependency:
        return Dependency(Selector(dict(self.source)), Selector(dict(self.destination)), self.port)


class IsolationRuleModel(BaseModel):
    source: dict[str, str] = Field(default_factory=dict)
    destination: dict[str, str] = Field(default_factory=dict)
    ports: list[int] = Field(default_factory=list, description="Allowed ports; empty allows any")

    @field_validator("ports")
    @classmethod
    def _ports_in_range(cls, v: list[int]) -> list[int]:
        for p in v:
            if not 1 <= p <= 65535:
                raise ValueError(f"port {p} out of range")
        return v

    def to_rule(self) -> IsolationRule:
        return IsolationRule(Selector(dict(self.source)), Selector(dict(self.destination)), tuple(sorted(set(self.ports))))


class EndpointModel(BaseModel):
    name: str
    labels: dict[str, str] = Field(default_factory=dict)

    def to_endpoint(self) -> Endpoint:
        return Endpoint(self.name, dict(self.labels))


class MetricTargetModel(BaseModel):
    name: str = Field(..., description="Metric name, e.g. cpu or memory")
    target: float = Field(..., gt=0, description="Target per-replica mean")


class ResourcesModel(BaseModel):
    cpu_request: str | None = None
    cpu_limit: str | None = None
    memory_request: str | None = None
    memory_limit: str | None = None


class RolloutPolicyModel(BaseModel):
    surge_budget: int = Field(1, ge=0, le=100)
    unavailability_budget: int = Field(1, ge=0, le=100)
    batch_size: int | None = Field(None, ge=1, le=100)
    batch_percent: int = Field(default_factory=lambda: settings.batch_percent, ge=1, le=100)
    ready_timeout_s: int = Field(default_factory=lambda: settings.rollout_ready_timeout_s, ge=1, le=86400)
    stall_abort_after_s: int | None = Field(None, ge=0, le=86400)

    @model_validator(mode="after")
    def _some_budget(self) -> "RolloutPolicyModel":
        if self.surge_budget + self.unavailability_budget < 1:
            raise ValueError("surge_budget + unavailability_budget must be >= 1")
        return self


class ScalingPolicyModel(BaseModel):
    stabilization_window_s: int = Field(default_factory=lambda: settings.stabilization_window_s, ge=0, le=86400)
    tolerance: float = Field(default_factory=lambda: settings.stability_tolerance, ge=0, le=1)
    tie_break: TieBreak = TieBreak.FAVOR_AVAILABILITY


class WorkloadSpecModel(BaseModel):
    name: str = Field(..., description="Workload name (dns-safe)")
    version: str = Field(..., description="Version label, e.g. v1, v2")
    image: str = Field(..., description="Container image (name:tag)")
    min_replicas: int = Field(1, ge=0, le=1000)
    max_replicas: int = Field(10, ge=1, le=1000)
    metrics: list[MetricTargetModel] = Field(default_factory=list)
    resources: ResourcesModel = Field(default_factory=ResourcesModel)
    labels: dict[str, str] = Field(default_factory=dict)
    dependencies: list[DependencyModel] = Field(default_factory=list)
    rollout: RolloutPolicyModel = Field(default_factory=RolloutPolicyModel)
    scaling: ScalingPolicyModel = Field(default_factory=ScalingPolicyModel)
    internal_port: int = Field(8080, ge=1, le=65535, description="Container port the service listens on")
    health_path: str = Field("/health", description="Readiness endpoint path")

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        if not WORKLOAD_NAME_RE.match(v):
            raise ValueError(
                "Invalid workload name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
            )
        return v

    @field_validator("version")
    @classmethod
    def _valid_version(cls, v: str) -> str:
        if not VERSION_RE.match(v):
            raise ValueError("Invalid version string. Use letters/numbers and -._ (max 64 chars).")
        return v

    @field_validator("health_path")
    @classmethod
    def _valid_health_path(cls, v: str) -> str:
        # A plain absolute path: no scheme, no parent segments.
        if not v.startswith("/") or "://" in v or ".." in v:
            raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")
        return v

    @model_validator(mode="after")
    def _bounds_ordered(self) -> "WorkloadSpecModel":
        if self.max_replicas < self.min_replicas:
            raise ValueError("max_replicas must be >= min_replicas")
        return self

    def to_spec(self) -> WorkloadSpec:
        return WorkloadSpec(
            name=self.name,
            version=self.version,
            image=self.image,
            bounds=ReplicaBounds(self.min_replicas, self.max_replicas),
            metrics=tuple(MetricTarget(m.name, m.target) for m in self.metrics),
            resources=ResourceRequirements(**self.resources.model_dump()),
            labels=dict(self.labels),
            dependencies=tuple(d.to_dependency() for d in self.dependencies),
            rollout=RolloutPolicy(**self.rollout.model_dump()),
            scaling=ScalingPolicy(**self.scaling.model_dump()),
            internal_port=self.internal_port,
            health_path=self.health_path,
        )

    @classmethod
    def from_spec(cls, spec: WorkloadSpec) -> "WorkloadSpecModel":
        return cls(
            name=spec.name,
            version=spec.version,
            image=spec.image,
            min_replicas=spec.bounds.min_replicas,
            max_replicas=spec.bounds.max_replicas,
            metrics=[MetricTargetModel(name=m.name, target=m.target) for m in spec.metrics],
            resources=ResourcesModel(
                cpu_request=spec.resources.cpu_request,
                cpu_limit=spec.resources.cpu_limit,
                memory_request=spec.resources.memory_request,
                memory_limit=spec.resources.memory_limit,
            ),
            labels=dict(spec.labels),
            dependencies=[
                DependencyModel(source=d.source.match_labels, destination=d.destination.match_labels, port=d.port)
                for d in spec.dependencies
            ],
            rollout=RolloutPolicyModel(
                surge_budget=spec.rollout.surge_budget,
                unavailability_budget=spec.rollout.unavailability_budget,
                batch_size=spec.rollout.batch_size,
                batch_percent=spec.rollout.batch_percent,
                ready_timeout_s=spec.rollout.ready_timeout_s,
                stall_abort_after_s=spec.rollout.stall_abort_after_s,
            ),
            scaling=ScalingPolicyModel(
                stabilization_window_s=spec.scaling.stabilization_window_s,
                tolerance=spec.scaling.tolerance,
                tie_break=spec.scaling.tie_break,
            ),
            internal_port=spec.internal_port,
            health_path=spec.health_path,
        )


class RegisterWorkloadRequest(BaseModel):
    spec: WorkloadSpecModel
    isolation_rules: list[IsolationRuleModel] = Field(
        default_factory=list, description="Rules added to the environment rules for this workload"
    )


class AbortRequest(BaseModel):
    reason: str = Field("operator request", max_length=200)


class ControllerConfig(BaseModel):
    """Shape of the DSC_WORKLOADS_FILE JSON document."""

    isolation_rules: list[IsolationRuleModel] = Field(default_factory=list)
    peers: list[EndpointModel] = Field(default_factory=list)
    workloads: list[RegisterWorkloadRequest] = Field(default_factory=list)
