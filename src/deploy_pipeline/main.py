import logging
from contextlib import asynccontextmanager
from textwrap import dedent

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from deploy_pipeline.engine import PipelineEngine
from deploy_pipeline.errors import DefinitionError, InvalidTransition, PipelineError, RunNotFound
from deploy_pipeline.routers.health import router as health_router
from deploy_pipeline.routers.runs import router as runs_router
from deploy_pipeline.settings import Settings, get_settings

# Set up logging
logger = logging.getLogger(__name__)


def create_app(engine: PipelineEngine, settings: Settings | None = None) -> FastAPI:
    """Create the FastAPI trigger service around ``engine``."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down: cancelling active runs and draining notifications")
        await engine.shutdown(timeout=30)

    app = FastAPI(
        title="Deploy Pipeline",
        summary="Trigger and inspect pipeline runs",
        version="v1",
        description=dedent(
            """\
        Runs are created by a source push (`/v1/webhooks/push`) or an explicit
        request (`/v1/runs`). Final status and per-stage logs stay available
        under `/v1/runs/{run_id}` regardless of outcome.
        """
        ),
        docs_url="/",
        generate_unique_id_function=custom_generate_unique_id,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine

    app.include_router(runs_router, prefix="/v1", tags=["runs"])
    app.include_router(health_router, tags=["health"])

    app.add_exception_handler(RunNotFound, handle_not_found)
    app.add_exception_handler(DefinitionError, handle_definition_error)
    app.add_exception_handler(InvalidTransition, handle_conflict)
    app.add_exception_handler(PipelineError, handle_pipeline_error)

    return app


async def handle_not_found(request: Request, exc: RunNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


async def handle_definition_error(request: Request, exc: DefinitionError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


async def handle_conflict(request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


async def handle_pipeline_error(request: Request, exc: PipelineError) -> JSONResponse:
    logger.error(f"Unhandled pipeline error on {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})


def custom_generate_unique_id(route: APIRoute):
    """
    Generate prettier `operationId`s in the OpenAPI schema.

    These become the function names in generated client SDKs.
    """
    return f"{route.tags[0]}-{route.name}"
