"""
RepoRadar Jobs API.

FastAPI application exposing the background job queue over HTTP plus a
Prometheus /metrics endpoint.

    from reporadar.api.main import create_app

    queue = create_job_queue(load_config().jobs)
    register_default_processors(queue, analyzer, source)
    app = create_app(queue)
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from reporadar import __version__
from reporadar.api.routes.jobs import router as jobs_router
from reporadar.core.exceptions import StoreConnectionError
from reporadar.core.jobs.queue import JobQueue
from reporadar.core.logging import get_logger

logger = get_logger(__name__)


def create_app(queue: JobQueue, start_workers: bool = False) -> FastAPI:
    """
    Build the API application around a job queue.

    Args:
        queue: Queue with processors already registered.
        start_workers: Also run jobs in this process. API servers normally
            leave this off and rely on separate worker processes.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await queue.initialize(start_workers=start_workers)
        try:
            yield
        finally:
            await queue.close()

    app = FastAPI(title="RepoRadar Jobs API", version=__version__, lifespan=lifespan)
    app.state.job_queue = queue
    app.include_router(jobs_router)

    @app.exception_handler(StoreConnectionError)
    async def store_unavailable(request: Request, exc: StoreConnectionError) -> JSONResponse:
        logger.error("Job store unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc), "error_code": exc.error_code},
        )

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus metrics."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
