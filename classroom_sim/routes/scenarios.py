"""
Scenario Lifecycle API Routes.

Admin routes for the scenario state machine, outcomes and runs, plus the
member-facing current scenario. Errors are SimulationErrors rendered by the
application's exception handler.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_sim.database import get_db
from classroom_sim.dependencies import get_lifecycle, get_actor_id, get_organization_id
from classroom_sim.errors import NotFound
from classroom_sim.schemas.scenario import (
    ScenarioCreate, ScenarioUpdate, ScenarioResponse, OutcomeUpsert, PreviewResponse
)
from classroom_sim.services.job_service import JobService
from classroom_sim.services.scenario_lifecycle import ScenarioLifecycle


router = APIRouter(prefix="/api", tags=["scenarios"])


# =============================================================================
# Classroom-scoped routes
# =============================================================================

@router.post("/classrooms/{classroom_id}/scenarios", response_model=ScenarioResponse, status_code=201)
async def create_scenario(
    classroom_id: int,
    payload: ScenarioCreate,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    """
    Create an unpublished scenario.

    The week number is assigned automatically.
    """
    scenario = await lifecycle.create(
        db,
        classroom_id,
        {"title": payload.title, "description": payload.description},
        payload.variables,
        actor_id=actor_id,
        organization_id=organization_id,
    )
    return scenario.to_dict()


@router.get("/classrooms/{classroom_id}/scenarios")
async def list_scenarios(
    classroom_id: int,
    include_closed: bool = True,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    await lifecycle.access.validate_admin_access(db, classroom_id, actor_id, organization_id)
    scenarios = await lifecycle.list_scenarios(db, classroom_id, include_closed=include_closed)
    return {"success": True, "scenarios": [s.to_dict() for s in scenarios]}


@router.get("/classrooms/{classroom_id}/scenarios/active")
async def get_active_scenario(
    classroom_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    await lifecycle.access.validate_admin_access(db, classroom_id, actor_id, organization_id)
    scenario = await lifecycle.get_active_scenario(db, classroom_id)
    return {"success": True, "scenario": scenario.to_dict() if scenario else None}


@router.get("/classrooms/{classroom_id}/scenarios/current")
async def get_current_scenario(
    classroom_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id)
):
    """Active scenario for an enrolled member."""
    scenario = await lifecycle.get_current_scenario_for_member(db, classroom_id, actor_id)
    return {"success": True, "scenario": scenario.to_dict() if scenario else None}


# =============================================================================
# Scenario routes
# =============================================================================

@router.get("/scenarios/{scenario_id}", response_model=ScenarioResponse)
async def get_scenario(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    scenario = await lifecycle.load_for_admin(db, scenario_id, actor_id, organization_id)
    return scenario.to_dict()


@router.patch("/scenarios/{scenario_id}", response_model=ScenarioResponse)
async def update_scenario(
    scenario_id: int,
    payload: ScenarioUpdate,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    scenario = await lifecycle.update(
        db,
        scenario_id,
        payload.changed_fields(),
        payload.variables,
        actor_id=actor_id,
        organization_id=organization_id,
    )
    return scenario.to_dict()


@router.get("/scenarios/{scenario_id}/variables")
async def get_scenario_variables(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    await lifecycle.load_for_admin(db, scenario_id, actor_id, organization_id)
    variables = await lifecycle.get_variables(db, scenario_id)
    return {"success": True, "scenario_id": scenario_id, "variables": variables}


@router.post("/scenarios/{scenario_id}/publish", response_model=ScenarioResponse)
async def publish_scenario(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    """
    Publish a scenario.

    Fails with 409 if it is already published, closed, or another scenario
    in the classroom is active.
    """
    scenario = await lifecycle.publish(db, scenario_id, actor_id=actor_id, organization_id=organization_id)
    return scenario.to_dict()


@router.post("/scenarios/{scenario_id}/unpublish", response_model=ScenarioResponse)
async def unpublish_scenario(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    scenario = await lifecycle.unpublish(db, scenario_id, actor_id=actor_id, organization_id=organization_id)
    return scenario.to_dict()


@router.post("/scenarios/{scenario_id}/close", response_model=ScenarioResponse)
async def close_scenario(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    scenario = await lifecycle.close(db, scenario_id, actor_id=actor_id, organization_id=organization_id)
    return scenario.to_dict()


# =============================================================================
# Outcome
# =============================================================================

@router.get("/scenarios/{scenario_id}/outcome")
async def get_outcome(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    await lifecycle.load_for_admin(db, scenario_id, actor_id, organization_id)
    outcome = await lifecycle.get_outcome(db, scenario_id)
    if outcome is None:
        raise NotFound("ScenarioOutcome", scenario_id)
    return {"success": True, "outcome": outcome.to_dict()}


@router.put("/scenarios/{scenario_id}/outcome")
async def set_outcome(
    scenario_id: int,
    payload: OutcomeUpsert,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    outcome = await lifecycle.set_outcome(
        db, scenario_id, payload.to_data(), actor_id=actor_id, organization_id=organization_id
    )
    return {"success": True, "outcome": outcome.to_dict()}


@router.delete("/scenarios/{scenario_id}/outcome")
async def delete_outcome(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    """Delete the outcome together with the ledger entries computed from it."""
    result = await lifecycle.delete_outcome(db, scenario_id, actor_id=actor_id, organization_id=organization_id)
    return {"success": True, **result}


# =============================================================================
# Preview / run / rerun
# =============================================================================

@router.post("/scenarios/{scenario_id}/preview", response_model=PreviewResponse)
async def preview_scenario(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    """Dry run: computes the first few outcomes without touching the ledger."""
    return await lifecycle.preview(db, scenario_id, actor_id=actor_id, organization_id=organization_id)


@router.post("/scenarios/{scenario_id}/run", status_code=202)
async def run_scenario(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    result = await lifecycle.run(db, scenario_id, actor_id=actor_id, organization_id=organization_id)
    return {"success": True, **result}


@router.post("/scenarios/{scenario_id}/rerun", status_code=202)
async def rerun_scenario(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    """Delete the scenario's ledger entries and queue every job again."""
    result = await lifecycle.rerun(db, scenario_id, actor_id=actor_id, organization_id=organization_id)
    return {"success": True, **result}


@router.get("/scenarios/{scenario_id}/jobs")
async def list_scenario_jobs(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    await lifecycle.load_for_admin(db, scenario_id, actor_id, organization_id)
    jobs = await JobService.get_jobs_by_scenario(db, scenario_id)
    return {
        "success": True,
        "jobs": [job.to_dict() for job in jobs],
        "counts": await JobService.job_status_counts(db, scenario_id),
    }
