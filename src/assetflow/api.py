"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from assetflow.database import SessionLocal
from assetflow.ratelimit import limiter
from assetflow.routers import flowchains, queue, versions, workflows
from assetflow.settings import settings

app = FastAPI(
    title=settings.app_name,
    description="Multi-tenant asset versions, processing queue and approval workflows",
    version="0.1.0",
)
logger = logging.getLogger(__name__)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.on_event("startup")
async def start_worker_mode():
    """Start background queue worker when service runs in worker mode."""
    if not settings.worker_mode:
        return
    try:
        from assetflow.worker import start_background_worker_thread

        start_background_worker_thread()
    except Exception:
        # Keep API process alive even if worker startup fails.
        logger.exception("Failed to start worker mode thread")


@app.on_event("shutdown")
async def stop_worker_mode():
    """Stop background queue worker when service shuts down."""
    if not settings.worker_mode:
        return
    try:
        from assetflow.worker import stop_background_worker_thread

        stop_background_worker_thread()
    except Exception:
        logger.exception("Failed to stop worker mode thread")


_allowed_origins = [settings.app_url]
if settings.is_development:
    _allowed_origins += [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(versions.router)
app.include_router(queue.router)
app.include_router(flowchains.router)
app.include_router(workflows.router)


@app.get("/health")
async def health_check():
    """Health check endpoint with DB connectivity verification."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"Database unavailable: {exc}")
    finally:
        db.close()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "assetflow.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
    )


if __name__ == "__main__":
    main()
