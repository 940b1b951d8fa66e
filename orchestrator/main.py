import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import Config, load_config
from .deps import get_pipeline
from .errors import ConfigError, PlanError
from .gateway import ToolGatewayClient
from .generation import GenerationClient
from .pipeline import PlanPipeline, PlanStream
from .schemas import PlanRequest


router = APIRouter()


@router.get("/")
async def root(_: Request):
    return {"status": "ok"}


@router.post("/api/v1/plan")
async def plan(req: PlanRequest, pipeline: PlanPipeline = Depends(get_pipeline)):
    try:
        plan_stream = await pipeline.prepare(req)
    except PlanError as e:
        logging.error("Plan failed at %s: %s (%s)", e.stage, e.message, e.details)
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    return PlanStreamingResponse(plan_stream)


class PlanStreamingResponse(StreamingResponse):
    """Event-stream response that owns a ``PlanStream``.

    Starlette never closes the body iterator itself: on a client disconnect the
    frames generator is left suspended (or never started). The upstream Gemini
    stream is therefore released here, once the response finishes by any path.
    """

    def __init__(self, plan_stream: PlanStream) -> None:
        super().__init__(
            plan_stream.frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )
        self.plan_stream = plan_stream

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.plan_stream.aclose()


async def _validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "details": details},
    )


def create_app(
    config: Config,
    gateway: Optional[ToolGatewayClient] = None,
    generation: Optional[GenerationClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client = httpx.AsyncClient(timeout=config.http_timeout_sec)
        app.state.pipeline = PlanPipeline(
            gateway or ToolGatewayClient(config, http_client),
            generation or GenerationClient(config),
        )
        try:
            yield
        finally:
            await http_client.aclose()

    limiter = Limiter(key_func=get_remote_address, default_limits=[config.rate_limit])

    app = FastAPI(title="City Day Navigator - Orchestrator", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.include_router(router)
    return app


def main() -> None:
    # --- Logging Configuration ---
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
    # --------------------------
    if not load_dotenv():
        logging.info("Note: .env file not found, loading from system env")
    try:
        config = load_config()
    except ConfigError as e:
        logging.critical("FATAL: %s", e)
        sys.exit(1)

    logging.info("Starting orchestrator on http://%s:%d", config.host, config.port)
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
