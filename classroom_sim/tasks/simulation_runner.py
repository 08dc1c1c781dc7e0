"""
classroom_sim/tasks/simulation_runner.py
Batch runner for pending simulation jobs.

Entry points:
- run_pending_jobs: one batch, summarised as {success, processed, successful, failed, results}
- simulation_loop / start_simulation_task: continuous polling in the background
- dispatch_jobs: fire-and-forget batch after a run or rerun (inline dispatch mode)
- python -m classroom_sim.tasks.simulation_runner: one batch, for cron
"""

import logging
import asyncio
from typing import Optional, Dict, Any, Set

from classroom_sim.config import settings
from classroom_sim.errors import describe_exception
from classroom_sim.services.simulation_worker import SimulationWorker

logger = logging.getLogger(__name__)

# Strong references to in-flight dispatches so they are not garbage collected
_dispatched: Set[asyncio.Task] = set()


async def run_pending_jobs(
    limit: Optional[int] = None,
    worker: Optional[SimulationWorker] = None
) -> Dict[str, Any]:
    """Run a single batch and summarise it."""
    worker = worker or SimulationWorker()
    try:
        results = await worker.process_pending_jobs(limit)
    except Exception as e:
        logger.error(f"Simulation batch failed: {describe_exception(e)}")
        return {
            "success": False,
            "error": describe_exception(e),
            "processed": 0,
            "successful": 0,
            "failed": 0,
            "results": [],
        }

    successful = sum(1 for r in results if r.get("success"))
    summary = {
        "success": True,
        "processed": len(results),
        "successful": successful,
        "failed": len(results) - successful,
        "results": results,
    }
    if results:
        logger.info(
            f"Simulation batch: {summary['processed']} processed, "
            f"{summary['successful']} successful, {summary['failed']} failed"
        )
    return summary


async def simulation_loop(
    interval_seconds: Optional[int] = None,
    limit: Optional[int] = None,
    worker: Optional[SimulationWorker] = None
):
    """
    Background polling loop.
    Drains full batches back to back, then sleeps interval_seconds.
    """
    interval = interval_seconds if interval_seconds is not None else settings.poll_interval_seconds
    batch = limit if limit is not None else settings.batch_limit
    worker = worker or SimulationWorker()
    logger.info(f"Starting simulation loop with interval {interval}s, batch {batch}")

    while True:
        summary = await run_pending_jobs(batch, worker)
        if summary["success"] and summary["processed"] >= batch:
            continue
        await asyncio.sleep(interval)


def start_simulation_task(
    interval_seconds: Optional[int] = None,
    limit: Optional[int] = None,
    worker: Optional[SimulationWorker] = None
) -> asyncio.Task:
    """Start the simulation loop as a background coroutine."""
    return asyncio.create_task(simulation_loop(interval_seconds, limit, worker))


def dispatch_jobs(
    limit: Optional[int] = None,
    worker: Optional[SimulationWorker] = None
) -> Optional[asyncio.Task]:
    """
    Kick off one batch without waiting for it.

    In poll mode this is a no-op and the scheduler picks the jobs up.
    """
    mode = worker.settings.dispatch_mode if worker is not None else settings.dispatch_mode
    if mode != "inline":
        logger.debug("Dispatch mode is poll; leaving jobs for the scheduler")
        return None

    task = asyncio.create_task(run_pending_jobs(limit, worker))
    _dispatched.add(task)
    task.add_done_callback(_dispatched.discard)
    return task


if __name__ == "__main__":
    from classroom_sim.database import close_db

    logging.basicConfig(level=logging.INFO)

    async def main():
        try:
            summary = await run_pending_jobs()
            logger.info(
                f"Run complete: processed={summary['processed']} "
                f"successful={summary['successful']} failed={summary['failed']}"
            )
        finally:
            await close_db()

    asyncio.run(main())
