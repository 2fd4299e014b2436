"""
FastAPI Application
App factory: request logging middleware, JSON error handlers, routers and
a lifespan that loads the services and recovers interrupted runs at startup.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from pipeline_runner.api.deps import RunnerServices, build_services
from pipeline_runner.api.errors import register_error_handlers
from pipeline_runner.api.pipelines import router as pipelines_router
from pipeline_runner.api.runs import router as runs_router
from pipeline_runner.api.webhooks import router as webhooks_router

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Incoming: {request.method} {request.url.path} from {client_host}")

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise e


def create_app(services_factory: Callable[[], RunnerServices] = build_services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = services_factory()
        recovered = services.run_store.recover_interrupted()
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted run(s) as FAILED")
        app.state.services = services
        yield
        await services.manager.shutdown()

    app = FastAPI(title="Pipeline Runner API", lifespan=lifespan)
    app.add_middleware(LoggingMiddleware)
    register_error_handlers(app)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    app.include_router(pipelines_router, tags=["Pipelines"])
    app.include_router(runs_router, tags=["Runs"])
    app.include_router(webhooks_router)
    return app
