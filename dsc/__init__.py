"""Declarative Scaling Controller (DSC).

One reconciliation engine per workload that:
 - samples per-replica utilization and picks a replica count (with scale-down hysteresis)
 - rolls out new versions batch by batch within surge / unavailability budgets
 - refuses any layout that breaks the declared network-isolation rules
 - emits desired-state diffs to an external executor (HTTP service or local Docker)

The controller only decides; the executor converges.
"""
