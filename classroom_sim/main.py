"""
classroom_sim/main.py
FastAPI application: scenario lifecycle, simulation jobs and ledger.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from classroom_sim import __version__
from classroom_sim.config import settings
from classroom_sim.database import init_db, close_db
from classroom_sim.errors import SimulationError, ErrorCode
from classroom_sim.routes import router
from classroom_sim.tasks.simulation_runner import start_simulation_task

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    logger.info(f"Settings: {settings.as_dict()}")
    try:
        await init_db()
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {str(e)}")
        raise

    loop_task = None
    if settings.worker_loop_enabled:
        loop_task = start_simulation_task()
        logger.info("Simulation polling loop started")

    yield

    logger.info("Shutting down application...")
    if loop_task is not None:
        loop_task.cancel()
        try:
            await loop_task
        except asyncio.CancelledError:
            pass
    try:
        await close_db()
    except Exception as e:
        logger.error(f"Error closing database connection: {str(e)}")


app = FastAPI(
    title="Classroom Simulation API",
    description="Scenario lifecycle and simulation job pipeline",
    version=__version__,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
    lifespan=lifespan
)

origins = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]
extra_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
origins.extend(extra_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

    error_details = []
    for error in exc.errors():
        error_details.append({
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            "type": error.get("type")
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": "Validation Error",
            "message": "Request body or parameters are invalid",
            "code": ErrorCode.VALIDATION_ERROR,
            "details": {"errors": error_details}
        }
    )


@app.exception_handler(SimulationError)
async def simulation_error_handler(request: Request, exc: SimulationError):
    if exc.status_code >= 500:
        logger.error(f"Simulation error on {request.url.path}: {exc.code} - {exc.message}")
    else:
        logger.warning(f"Simulation error on {request.url.path}: {exc.code} - {exc.message}")
    return exc.to_response()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    log_id = str(uuid.uuid4())[:8]
    logger.error(f"[{log_id}] Unhandled exception on {request.url.path}: {type(exc).__name__}: {str(exc)}")

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal Error",
            "message": "An unexpected error occurred. Please try again later.",
            "code": ErrorCode.DEPENDENCY_FAILURE,
            "details": {"log_id": log_id}
        }
    )


app.include_router(router)


@app.get("/health", tags=["Health"])
async def health_check():
    return {"status": "ok", "version": __version__, "dispatch_mode": settings.dispatch_mode}
