from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from .errors import IsolationViolation
from .models import Dependency, Endpoint, IsolationRule, PodRef, Topology, Violation, WorkloadSpec


def validate(topology: Topology, rules: Sequence[IsolationRule]) -> Violation | None:
    """Return the first path implied by a dependency that no rule allows, or None.

    Pods and dependencies are walked in a fixed order so that the same
    topology always yields the same violation.
    """
    pods = sorted(topology.pods, key=lambda p: p.name)
    for dep in topology.dependencies:
        sources = [p for p in pods if dep.source.matches(p.labels)]
        dests = [p for p in pods if dep.destination.matches(p.labels)]
        for src in sources:
            for dst in dests:
                if src.name == dst.name and src.replicas < 2:
                    continue
                if any(rule.allows(src.labels, dst.labels, dep.port) for rule in rules):
                    continue
                return Violation(
                    rule=dep,
                    reason=(
                        f"no isolation rule allows {src.name} -> {dst.name}:{dep.port} "
                        f"(dependency {dep.source.describe()} -> {dep.destination.describe()})"
                    ),
                    path=(src.name, dst.name, dep.port),
                )
    return None


class IsolationGuard:
    """Checks proposed replica layouts against the environment's reachability rules.

    Rules and peer endpoints are read-only and may be shared between workloads.
    """

    def __init__(self, rules: Iterable[IsolationRule] = (), peers: Iterable[Endpoint] = ()):
        self.rules = tuple(rules)
        self.peers = tuple(peers)

    def build_topology(self, specs: Mapping[str, WorkloadSpec], counts: Mapping[str, int]) -> Topology:
        """One representative pod per version that will have replicas, plus the peers.

        Replicas of one version share labels, so one pod per version covers every
        path. A version with two or more replicas also has paths to itself.
        """
        pods: list[PodRef] = []
        deps: list[Dependency] = []
        for version in sorted(counts):
            if counts[version] <= 0:
                continue
            spec = specs.get(version)
            if spec is None:
                continue
            pods.append(PodRef(name=f"{spec.name}-{version}", labels=spec.pod_labels(version), replicas=counts[version]))
            for d in spec.dependencies:
                if d not in deps:
                    deps.append(d)
        for peer in self.peers:
            pods.append(PodRef(name=peer.name, labels=dict(peer.labels)))
        return Topology(pods=tuple(pods), dependencies=tuple(deps))

    def validate(self, topology: Topology) -> Violation | None:
        return validate(topology, self.rules)

    def enforce(self, topology: Topology) -> None:
        violation = self.validate(topology)
        if violation is not None:
            raise IsolationViolation(violation)
