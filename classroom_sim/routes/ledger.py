"""
Ledger API Routes.

Members read their own entries; admins list a scenario's entries and apply
overrides.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from classroom_sim.database import get_db
from classroom_sim.dependencies import get_lifecycle, get_actor_id, get_organization_id
from classroom_sim.errors import NotFound
from classroom_sim.schemas.jobs import LedgerOverride
from classroom_sim.services.ledger_service import LedgerService
from classroom_sim.services.scenario_lifecycle import ScenarioLifecycle


router = APIRouter(prefix="/api", tags=["ledger"])


@router.get("/scenarios/{scenario_id}/ledger/me")
async def get_my_ledger_entry(
    scenario_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    scenario = await lifecycle.get_scenario_by_id(db, scenario_id, organization_id)
    await lifecycle.access.require_enrollment(db, scenario.classroom_id, actor_id)
    entry = await LedgerService.get_ledger_entry(db, scenario_id, actor_id)
    if entry is None:
        raise NotFound("LedgerEntry")
    return {"success": True, "entry": entry.to_dict()}


@router.get("/scenarios/{scenario_id}/ledger")
async def list_scenario_ledger(
    scenario_id: int,
    include_context: bool = False,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    await lifecycle.load_for_admin(db, scenario_id, actor_id, organization_id)
    entries = await LedgerService.get_ledger_entries_by_scenario(db, scenario_id)
    return {"success": True, "entries": [e.to_dict(include_context=include_context) for e in entries]}


@router.get("/classrooms/{classroom_id}/ledger/summary")
async def get_my_ledger_summary(
    classroom_id: int,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id)
):
    await lifecycle.access.require_enrollment(db, classroom_id, actor_id)
    summary = await LedgerService.get_ledger_summary(db, classroom_id, actor_id)
    return {"success": True, "summary": summary}


@router.patch("/ledger/{entry_id}")
async def override_ledger_entry(
    entry_id: int,
    payload: LedgerOverride,
    db: AsyncSession = Depends(get_db),
    lifecycle: ScenarioLifecycle = Depends(get_lifecycle),
    actor_id: int = Depends(get_actor_id),
    organization_id: Optional[int] = Depends(get_organization_id)
):
    """Admin override; cash continuity is rechecked on the new values."""
    entry = await LedgerService.get_ledger_entry_by_id(db, entry_id)
    if entry is None:
        raise NotFound("LedgerEntry", entry_id)
    await lifecycle.access.validate_admin_access(db, entry.classroom_id, actor_id, organization_id)
    updated = await LedgerService.override_ledger_entry(db, entry_id, payload.patch(), actor_id)
    return {"success": True, "entry": updated.to_dict()}
