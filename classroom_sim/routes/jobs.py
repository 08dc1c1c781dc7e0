"""
Simulation Job API Routes.

Worker trigger for schedulers, failed-job requeue and single-job lookup.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_sim.database import get_db
from classroom_sim.dependencies import get_lifecycle, get_worker, get_actor_id, get_organization_id
from classroom_sim.errors import NotFound
from classroom_sim.schemas.jobs import RunPendingRequest, RunSummaryResponse, RequeueRequest
from classroom_sim.services.job_service import JobService
from classroom_sim.services.scenario_lifecycle import ScenarioLifecycle
from classroom_sim.services.simulation_worker import SimulationWorker
from classroom_sim.tasks.simulation_runner import run_pending_jobs


router = APIRouter(prefix="/api/simulation", tags=["simulation-jobs"])


@router.post("/run-pending", response_model=RunSummaryResponse)
async def run_pending(
    payload: Optional[RunPendingRequest] = None,
    worker: SimulationWorker = Depends(get_worker),
    actor_id: int = Depends(get_actor_id)
):
    """
    Process one batch of pending jobs and wait for it.

    Intended for cron or an internal scheduler.
    """
    limit = payload.limit if payload else None
    return await run_pending_jobs(limit, worker)


@router.post("/requeue-failed")
async def requeue_failed(
    payload: RequeueRequest,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    """Move one scenario's failed jobs back to pending. Admins only."""
    await lifecycle.load_for_admin(db, payload.scenario_id, actor_id, organization_id)
    count = await JobService.requeue_failed_jobs(db, payload.scenario_id)
    return {"success": True, "requeued": count}


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    job = await JobService.get_job_by_id(db, job_id)
    if job is None:
        raise NotFound("SimulationJob", job_id)
    await lifecycle.access.validate_admin_access(db, job.classroom_id, actor_id, organization_id)
    return {"success": True, "job": job.to_dict()}
