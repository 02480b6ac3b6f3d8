from __future__ import annotations

from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request, status

from . import db
from .api_models import AbortRequest, RegisterWorkloadRequest, WorkloadSpecModel
from .controller import ControlPlane
from .errors import ExecutorUnreachable
from .settings import settings


def _default_control_plane() -> ControlPlane:
    if settings.workloads_file:
        return ControlPlane.from_file(settings.workloads_file)
    return ControlPlane()


def create_app(
    control_plane_factory: Callable[[], ControlPlane] = _default_control_plane,
    start_loops: bool = True,
) -> FastAPI:
    app = FastAPI(title="Declarative Scaling Controller")
    app.state.control_plane = None

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        cp = control_plane_factory()
        app.state.control_plane = cp
        db.log_event("INFO", f"Controller started with {len(cp.list_workloads())} workload(s)")
        if start_loops:
            cp.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        cp = app.state.control_plane
        if cp is not None:
            cp.stop()

    def _cp(request: Request) -> ControlPlane:
        cp = request.app.state.control_plane
        if cp is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="controller not started")
        return cp

    def _status_or_404(cp: ControlPlane, name: str) -> dict[str, Any]:
        try:
            return cp.get_status(name)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "unknown workload")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/workloads")
    def list_workloads(request: Request) -> list[dict[str, Any]]:
        cp = _cp(request)
        return [cp.get_status(name) for name in cp.list_workloads()]

    @app.post("/workloads", status_code=status.HTTP_201_CREATED)
    def register_workload(req: RegisterWorkloadRequest, request: Request) -> dict[str, Any]:
        cp = _cp(request)
        try:
            cp.register(req.spec.to_spec(), rules=[r.to_rule() for r in req.isolation_rules])
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ExecutorUnreachable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return cp.get_status(req.spec.name)

    @app.get("/workloads/{name}/status")
    def get_status(name: str, request: Request) -> dict[str, Any]:
        return _status_or_404(_cp(request), name)

    @app.post("/workloads/{name}/versions", status_code=status.HTTP_202_ACCEPTED)
    def submit_version(name: str, spec: WorkloadSpecModel, request: Request) -> dict[str, Any]:
        cp = _cp(request)
        if spec.name != name:
            raise HTTPException(status_code=400, detail=f"spec name '{spec.name}' does not match '{name}'")
        try:
            plan = cp.submit_version(spec.to_spec())
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "unknown workload")
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ExecutorUnreachable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {
            "rollout": plan.snapshot() if plan else None,
            "message": f"Rollout to {spec.version} started" if plan else f"{spec.version} is already running",
        }

    @app.post("/workloads/{name}/rollout/abort")
    def abort_rollout(name: str, request: Request, req: AbortRequest | None = None) -> dict[str, Any]:
        cp = _cp(request)
        try:
            accepted = cp.abort_rollout(name, (req or AbortRequest()).reason)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "unknown workload")
        if not accepted:
            raise HTTPException(status_code=409, detail="no active rollout")
        return {"abort_requested": True, "status": cp.get_status(name)}

    @app.post("/workloads/{name}/reconcile")
    def reconcile(name: str, request: Request) -> dict[str, Any]:
        cp = _cp(request)
        try:
            result = cp.reconcile_now(name)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "unknown workload")
        if result is None:
            return {"outcome": "skipped", "detail": "previous cycle still in progress"}
        return {
            "outcome": result.outcome,
            "diff": result.diff.to_dict() if result.diff else None,
            "violation": result.violation.reason if result.violation else None,
            "error": result.error,
        }

    @app.get("/events")
    def events(limit: int = 50, workload: str | None = None) -> list[dict[str, Any]]:
        limit = max(1, min(1000, int(limit)))
        return db.latest_events(limit, workload=workload)

    return app
