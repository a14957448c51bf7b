from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
import logging
import asyncio

from app.config import PLANS, settings

from app.routers import account, admin, batches, generations, health, referrals
from app.core.async_utils import run_sync
from app.core.database import init_db, close_db
from app.core.structured_logging import setup_logging
from app.core.errors import BillingError
from app.core.errors.registry import error_registry
from app.core.errors.middleware import billing_error_handler
from app.core.log_middleware import RequestLogMiddleware

setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

logger = logging.getLogger(__name__)

API_TITLE = "Studio Billing API"
API_VERSION = "0.4.0"

API_DESCRIPTION = """
## Studio Billing - Token Ledger & Generation Queue

Token accounting and asynchronous generation batches for AI images and videos.

### Flow
1. `POST /api/generations/images` (or `/videos`) reserves tokens and queues a batch (202)
2. Poll `GET /api/batches/{batch_id}` for progress, results and ETA
3. A batch is charged once when at least one output succeeds; otherwise it is refunded

### Authentication

Requests are authenticated by the session gateway, which forwards the
account id in the `X-User-Id` header.
"""

TAGS_METADATA = [
    {"name": "health", "description": "Health checks. No authentication required for the cheap check."},
    {"name": "generations", "description": "Reserve tokens and queue generation batches."},
    {"name": "batches", "description": "Batch status polling and cancellation."},
    {"name": "account", "description": "Balance breakdown and account registration."},
    {"name": "referrals", "description": "Referral code and reward statistics."},
    {"name": "admin", "description": "Subscription activation, expiry sweep and bonus tokens. **Admin only.**"},
]

# (router module, prefix, tag)
ROUTERS = (
    (health, "/api", "health"),
    (generations, "/api/generations", "generations"),
    (batches, "/api/batches", "batches"),
    (account, "/api/account", "account"),
    (referrals, "/api/referrals", "referrals"),
    (admin, "/api/admin", "admin"),
)


async def _start_embedded_worker():
    """Run the generation worker pool inside the API event loop."""
    # Deferred: the worker pulls in the provider stack, which the API alone never needs
    from app.workers.generation_worker import WorkerPool

    pool = WorkerPool(worker_id=f"api-{settings.worker_id or 'embedded'}")
    pool.start()
    logger.info("Embedded worker pool started for plans %s", ",".join(PLANS))
    return pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the error registry, size the thread pool, migrate, optionally start workers."""
    logger.info("Starting %s v%s", API_TITLE, API_VERSION)
    error_registry.load()

    # run_sync() hands every ledger and queue transaction to this pool
    executor = ThreadPoolExecutor(
        max_workers=settings.api_thread_pool_size, thread_name_prefix="studio-db"
    )
    asyncio.get_running_loop().set_default_executor(executor)

    await run_sync(init_db, timeout=120)
    logger.info("Schema at head, %d-thread pool ready", settings.api_thread_pool_size)

    pool = None
    if settings.run_worker_in_api:
        pool = await _start_embedded_worker()
    try:
        yield
    finally:
        logger.info("Shutting down %s", API_TITLE)
        if pool is not None:
            await pool.shutdown()
        close_db()
        executor.shutdown(wait=False)


def _mount_generated_files(app: FastAPI) -> Optional[str]:
    """Serve stored provider outputs when public_base_url is a local path."""
    base = settings.public_base_url.rstrip("/")
    if not settings.serve_generated_files or not base.startswith("/"):
        return None
    app.mount(base, StaticFiles(directory=settings.generated_directory, check_dir=False), name="generated")
    return base


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-Request-Id"],
    )
    app.add_middleware(RequestLogMiddleware)

    app.add_exception_handler(BillingError, billing_error_handler)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        request.state.error_code = "INTERNAL"
        return JSONResponse(
            status_code=500,
            content={
                "error": "An unexpected error occurred.",
                "code": "INTERNAL",
                "recommended_plan": None,
                "retryable": False,
            },
        )

    for module, prefix, tag in ROUTERS:
        app.include_router(module.router, prefix=prefix, tags=[tag])

    generated_path = _mount_generated_files(app)

    @app.get("/", tags=["health"], summary="API Root")
    async def root():
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "status": "running",
            "plans": list(PLANS),
            "generated_files": generated_path,
            "docs": "/docs",
        }

    return app


app = create_app()
