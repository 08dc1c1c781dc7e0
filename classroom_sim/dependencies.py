"""
classroom_sim/dependencies.py
FastAPI dependencies shared by the routers.

Authentication happens upstream; the auth middleware forwards the acting
user and organization as X-User-Id / X-Organization-Id headers.
"""
from typing import Optional

from fastapi import Header

from classroom_sim.errors import Forbidden
from classroom_sim.services.scenario_lifecycle import ScenarioLifecycle
from classroom_sim.services.simulation_worker import SimulationWorker

_lifecycle: Optional[ScenarioLifecycle] = None


def get_lifecycle() -> ScenarioLifecycle:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = ScenarioLifecycle()
    return _lifecycle


def get_worker() -> SimulationWorker:
    return get_lifecycle().worker


async def get_actor_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    if x_user_id is None:
        raise Forbidden("Missing acting user")
    return x_user_id


async def get_organization_id(x_organization_id: Optional[int] = Header(default=None)) -> Optional[int]:
    return x_organization_id
