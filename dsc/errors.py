"""Error taxonomy.

None of these are fatal to the process. Each one narrows to either
"defer this cycle" or "halt this rollout".
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Violation


class ControllerError(Exception):
    pass


class MetricUnavailable(ControllerError):
    """The metrics source is unreachable or returned no fresh data."""

    def __init__(self, message: str, metric: str | None = None):
        super().__init__(message)
        self.metric = metric


class DecisionSkipped(ControllerError):
    """No usable metric data; the replica count stays where it is."""

    def __init__(self, replicas: int, reason: str = "no metric data available"):
        super().__init__(reason)
        self.replicas = replicas
        self.reason = reason


class RolloutStalled(ControllerError):
    def __init__(self, workload: str, version: str, waited_s: float):
        super().__init__(f"Batch for {workload} {version} not ready after {waited_s:.0f}s")
        self.workload = workload
        self.version = version
        self.waited_s = waited_s


class IsolationViolation(ControllerError):
    def __init__(self, violation: Violation):
        super().__init__(violation.reason)
        self.violation = violation


class ExecutorUnreachable(ControllerError):
    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts
