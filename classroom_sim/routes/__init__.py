"""
classroom_sim/routes/__init__.py
Route registration
"""
from fastapi import APIRouter
from classroom_sim.routes import scenarios, jobs, ledger

router = APIRouter()

router.include_router(scenarios.router)
router.include_router(jobs.router)
router.include_router(ledger.router)
