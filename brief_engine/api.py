"""
FastAPI Application for Brief Engine
====================================

Endpoints:
- GET  /health           - Health check
- POST /briefs/generate  - Run the pipeline, streaming progress events (SSE)

Each event is sent as `data: {json}\\n\\n`. The stream ends after the `done`
event, or after an `error` event when the run fails or is cancelled. A client
disconnect cancels the run.

Run with:
    uvicorn brief_engine.api:app --host 0.0.0.0 --port 8000
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, Set

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from . import __version__
from .config import get_settings
from .errors import BackendError, BriefEngineError, SetupError
from .events import PipelineCallbacks
from .llm.citations_client import CitationsClient
from .llm.gateway import GatewayClient
from .pipeline import PipelineInput, PipelineResult, create_search_session, run_brief_pipeline
from .schemas import HealthResponse, ProgressEvent, ProgressEventKind

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

PipelineRunner = Callable[[PipelineInput, PipelineCallbacks, asyncio.Event], Awaitable[PipelineResult]]

# Runs whose client went away keep a reference here until they finish
_orphaned_runs: Set[asyncio.Task] = set()


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Brief Engine",
    description="Grounded legal brief generation with inline source citations",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def log_backend_config():
    for warning in get_settings().validate_backend_config():
        logger.warning(warning)


async def default_pipeline_runner(
    request: PipelineInput,
    callbacks: PipelineCallbacks,
    cancel: asyncio.Event,
) -> PipelineResult:
    """Production runner: fresh backend clients per run, closed afterwards"""
    settings = get_settings()
    gateway = GatewayClient.from_settings(settings)
    citations = CitationsClient.from_settings(settings)
    try:
        return await run_brief_pipeline(
            request,
            gateway=gateway,
            citations=citations,
            session=create_search_session(settings, gateway),
            settings=settings,
            callbacks=callbacks,
            cancel=cancel,
        )
    finally:
        await gateway.close()
        await citations.close()


def get_pipeline_runner() -> PipelineRunner:
    """Dependency: the pipeline runner (overridden in tests)"""
    return default_pipeline_runner


def format_sse(event: ProgressEvent) -> str:
    return f"data: {event.model_dump_json()}\n\n"


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return HealthResponse(
        status="healthy",
        version=__version__,
        backends_configured=settings.backends_configured,
        timestamp=datetime.now(),
    )


@app.post("/briefs/generate")
async def generate_brief(
    request: PipelineInput,
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    """
    Generate a brief and stream its progress events.

    Setup problems and backend failures arrive as `error` events; the HTTP
    status is 200 once streaming has started.
    """
    queue: "asyncio.Queue[Optional[ProgressEvent]]" = asyncio.Queue()
    cancel = asyncio.Event()

    async def on_event(event: ProgressEvent) -> None:
        await queue.put(event)

    async def drive() -> None:
        try:
            await runner(request, PipelineCallbacks(on_event=on_event), cancel)
        except SetupError as e:
            # The pipeline already emitted the error event
            logger.warning(f"Brief request rejected: {e} {e.problems}")
        except BackendError as e:
            logger.error(f"Brief generation aborted by backend: {e}")
        except BriefEngineError as e:
            logger.error(f"Brief generation failed: {type(e).__name__}: {e}")
            await queue.put(ProgressEvent(kind=ProgressEventKind.ERROR, message=str(e)))
        except Exception as e:
            logger.error(f"Brief generation crashed: {type(e).__name__}: {e}", exc_info=True)
            await queue.put(ProgressEvent(kind=ProgressEventKind.ERROR, message="Internal error during brief generation"))
        finally:
            await queue.put(None)

    async def stream():
        task = asyncio.create_task(drive())
        finished = False
        try:
            while True:
                event = await queue.get()
                if event is None:
                    finished = True
                    break
                yield format_sse(event)
        finally:
            if not finished and not task.done():
                logger.info("Client disconnected, cancelling brief generation")
                cancel.set()
                _orphaned_runs.add(task)
                task.add_done_callback(_orphaned_runs.discard)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
