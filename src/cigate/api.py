"""HTTP API — run history, merge gate and push checks.

Endpoints:
    - GET  /health                     - Liveness and security status
    - GET  /runs                       - Recent runs (filter by branch, sha, PR, status)
    - GET  /runs/{run_id}              - One run with its stage results
    - GET  /runs/{run_id}/artifacts    - Unexpired artifacts of a run
    - GET  /pulls/{pr_number}/gate     - Current merge-gate decision
    - POST /pulls/{pr_number}/merge-check - 200 when mergeable, 409 when denied
    - POST /push-check                 - Evaluate a push against branch restrictions

Security:
    All endpoints except /health respect CIGATE_API_KEY when configured.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cigate.api_security import get_security_config, require_api_key
from cigate.errors import GateDenied
from cigate.pipeline.models import RunStatus

if TYPE_CHECKING:
    from cigate.pipeline.engine import PipelineEngine
    from cigate.pipeline.registry import PipelineRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pipeline"])

# Module-level references (configured at startup)
_engine: "PipelineEngine | None" = None
_registry: "PipelineRegistry | None" = None


def configure(engine: "PipelineEngine", registry: "PipelineRegistry") -> None:
    """Configure the API router with required dependencies."""
    global _engine, _registry
    _engine = engine
    _registry = registry
    logger.info("API router configured")


def _require_engine() -> "PipelineEngine":
    if _engine is None:
        raise HTTPException(status_code=503, detail="Pipeline engine not configured")
    return _engine


def _require_registry() -> "PipelineRegistry":
    if _registry is None:
        raise HTTPException(status_code=503, detail="Registry not available")
    return _registry


class PushCheckRequest(BaseModel):
    branch: str
    pusher: str
    forced: bool = False
    deleted: bool = False


# ── Status ────────────────────────────────────────────────────────────────────


@router.get("/health")
async def health():
    return {
        "status": "ok",
        "engine": _engine is not None,
        "security": get_security_config(),
    }


# ── Runs ──────────────────────────────────────────────────────────────────────


@router.get("/runs")
async def list_runs(
    branch: str | None = Query(default=None),
    commit_sha: str | None = Query(default=None),
    pr_number: int | None = Query(default=None),
    status: str | None = Query(default=None, description="pending, running, completed, failed"),
    limit: int = Query(default=50, ge=1, le=500),
    _: bool = Depends(require_api_key),
):
    """List recent runs, newest first."""
    registry = _require_registry()

    run_status = None
    if status:
        try:
            run_status = RunStatus(status)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid status: {e}")

    runs = await registry.list_runs(
        branch=branch,
        commit_sha=commit_sha,
        pr_number=pr_number,
        status=run_status,
        limit=limit,
    )
    return {
        "count": len(runs),
        "runs": [r.model_dump(mode="json", exclude={"stages"}) for r in runs],
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: str, _: bool = Depends(require_api_key)):
    run = await _require_registry().get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run.model_dump(mode="json")


@router.get("/runs/{run_id}/artifacts")
async def get_run_artifacts(run_id: str, _: bool = Depends(require_api_key)):
    registry = _require_registry()
    if await registry.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    artifacts = await registry.get_artifacts_for_run(run_id)
    return {
        "run_id": run_id,
        "artifacts": [
            {**a.model_dump(mode="json"), "expires_at": a.expires_at.isoformat()}
            for a in artifacts
        ],
    }


# ── Merge Gate & Push Restrictions ────────────────────────────────────────────


@router.get("/pulls/{pr_number}/gate")
async def get_gate(pr_number: int, _: bool = Depends(require_api_key)):
    """Current merge-gate decision for a PR's head commit."""
    decision = await _require_engine().evaluate_gate(pr_number)
    return decision.model_dump(mode="json")


@router.post("/pulls/{pr_number}/merge-check")
async def merge_check(pr_number: int, _: bool = Depends(require_api_key)):
    """Ask whether a merge into the protected branch may proceed."""
    try:
        decision = await _require_engine().require_mergeable(pr_number)
    except GateDenied as exc:
        return JSONResponse(status_code=409, content=exc.to_dict())
    return decision.model_dump(mode="json")


@router.post("/push-check")
async def push_check(body: PushCheckRequest, _: bool = Depends(require_api_key)):
    decision = _require_engine().check_push(
        body.branch, body.pusher, forced=body.forced, deleted=body.deleted
    )
    return decision.model_dump(mode="json")
