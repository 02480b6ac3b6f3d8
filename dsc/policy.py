from __future__ import annotations

import math
import time
from typing import Callable, Iterable, Mapping

from .errors import DecisionSkipped
from .models import MetricTarget, ReplicaBounds, ScalingDecision, ScalingPolicy, TieBreak


class PolicyEvaluator:
    """Maps utilization to a target replica count.

    Per metric: candidate = ceil(current * observed / target). The candidates
    are combined by the tie-break policy and clamped to bounds. Scale-up is
    immediate; scale-down waits until the proposal has stayed within
    `tolerance` of itself for the whole stabilization window, then applies the
    largest proposal seen in that window.
    """

    def __init__(
        self,
        metrics: Iterable[MetricTarget],
        policy: ScalingPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.metrics = tuple(metrics)
        self.policy = policy or ScalingPolicy()
        self.clock = clock
        self._down_since: float | None = None
        self._down_anchor: int | None = None
        self._down_proposals: list[int] = []

    def reset(self) -> None:
        self._down_since = None
        self._down_anchor = None
        self._down_proposals = []

    @property
    def pending_scale_down(self) -> int | None:
        return self._down_anchor

    def candidates(self, utilization: Mapping[str, float], current_replicas: int) -> dict[str, int]:
        base = max(1, int(current_replicas))
        out: dict[str, int] = {}
        for m in self.metrics:
            observed = utilization.get(m.name)
            if observed is None:
                continue
            out[m.name] = math.ceil(base * float(observed) / m.target)
        return out

    def evaluate(
        self,
        utilization: Mapping[str, float],
        current_replicas: int,
        bounds: ReplicaBounds,
        now: float | None = None,
    ) -> ScalingDecision:
        now = self.clock() if now is None else now
        current = int(current_replicas)

        cands = self.candidates(utilization, current)
        if not cands:
            self.reset()
            raise DecisionSkipped(current)

        if self.policy.tie_break == TieBreak.FAVOR_COST:
            raw = min(cands.values())
        else:
            raw = max(cands.values())
        raw = bounds.clamp(raw)

        if current > bounds.max_replicas:
            # Out of bounds is corrected at once, not stabilized.
            self.reset()
            return ScalingDecision(raw, raw, "scale_down", cands, "above max_replicas", now)

        if raw > current:
            self.reset()
            return ScalingDecision(raw, raw, "scale_up", cands, "", now)

        if raw == current:
            self.reset()
            return ScalingDecision(current, raw, "hold", cands, "", now)

        anchor = self._down_anchor
        if anchor is None or abs(raw - anchor) > self.policy.tolerance * anchor:
            self._down_anchor = raw
            self._down_since = now
            self._down_proposals = [raw]
        else:
            self._down_proposals.append(raw)

        since = self._down_since if self._down_since is not None else now
        elapsed = now - since
        window = self.policy.stabilization_window_s
        if elapsed >= window:
            target = bounds.clamp(max(self._down_proposals))
            self.reset()
            return ScalingDecision(target, raw, "scale_down", cands, f"stable for {elapsed:.0f}s", now)

        reason = f"scale-down to {raw} pending stabilization ({window - elapsed:.0f}s left)"
        return ScalingDecision(current, raw, "hold", cands, reason, now)
