from __future__ import annotations

import time

import httpx


READY_STATUSES = {"healthy", "ready", "ok"}


def probe_ready(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Readiness probe against a replica's health endpoint.

    A replica is ready on HTTP 200 with either a non-JSON body or a JSON body
    whose "status" is one of READY_STATUSES.
    Returns (is_ready, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
    except (httpx.ConnectError, httpx.TimeoutException):
        return False, "No response", round((time.time() - start) * 1000.0, 2)
    except httpx.HTTPError as e:
        return False, f"Error: {type(e).__name__}: {e}", round((time.time() - start) * 1000.0, 2)

    latency_ms = round((time.time() - start) * 1000.0, 2)
    if resp.status_code != 200:
        return False, f"HTTP {resp.status_code}", latency_ms
    try:
        data = resp.json()
    except ValueError:
        return True, "Ready", latency_ms
    if isinstance(data, dict) and "status" in data:
        status = str(data.get("status", "")).lower()
        if status in READY_STATUSES:
            return True, "Ready", latency_ms
        return False, f"Not ready: {data!r}", latency_ms
    return True, "Ready", latency_ms
