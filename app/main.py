from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routes import conversation_routes
from app.config import load_settings
from app.database import SessionLocal, engine, init_db
from services.conversation_store import ConversationStore
from services.elevenlabs_service import ElevenLabsService
from services.evaluation_driver import EvaluationDriver
from services.evaluation_store import EvaluationStore
from services.evaluators import build_evaluator
from services.scheduler import PollingLoop
from services.sync_driver import SyncDriver
import logging

settings = load_settings()

# ------------------------------------------------------------------ #
#  Logging                                                            #
# ------------------------------------------------------------------ #
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
#  Background loops                                                   #
# ------------------------------------------------------------------ #

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(engine)
    logger.info("Database initialized (%s)", settings.database_url)

    conversation_store = ConversationStore(
        SessionLocal,
        detail_backoff_secs=settings.detail_backoff_secs,
        detail_backoff_max_secs=settings.detail_backoff_max_secs,
    )
    evaluation_store = EvaluationStore(
        SessionLocal,
        max_attempts=settings.evaluation_max_attempts,
        backoff_secs=settings.evaluation_backoff_secs,
        backoff_max_secs=settings.evaluation_backoff_max_secs,
    )
    conversation_routes._conversation_store = conversation_store
    conversation_routes._evaluation_store = evaluation_store

    source = ElevenLabsService(
        api_key=settings.elevenlabs_api_key,
        base_url=settings.elevenlabs_base_url,
        timeout=settings.http_timeout_secs,
        agent_id=settings.elevenlabs_agent_id,
    )
    sync_loop = PollingLoop(
        "Sync",
        SyncDriver(
            source,
            conversation_store,
            watermark_overlap_secs=settings.sync_watermark_overlap_secs,
        ).run_cycle,
        interval_secs=settings.poll_interval_ms / 1000,
    )
    evaluation_loop = PollingLoop(
        "Evaluator",
        EvaluationDriver(
            evaluation_store,
            build_evaluator(settings),
            timeout_secs=settings.evaluation_timeout_secs,
        ).run_cycle,
        interval_secs=settings.evaluation_interval_ms / 1000,
    )
    app.state.sync_loop = sync_loop
    app.state.evaluation_loop = evaluation_loop

    sync_loop.start()
    evaluation_loop.start()
    logger.info("All systems operational (evaluator=%s)", settings.evaluator)

    yield

    logger.info("Shutting down...")
    sync_loop.stop()
    evaluation_loop.stop()
    await sync_loop.wait()
    await evaluation_loop.wait()
    await source.aclose()
    logger.info("Cleanup complete")


# ------------------------------------------------------------------ #
#  App                                                                #
# ------------------------------------------------------------------ #
app = FastAPI(
    title="Conversation Evaluator",
    description=(
        "Syncs ElevenLabs voice-agent conversations into a local store and "
        "scores finished calls in the background."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ------------------------------------------------------------------ #
#  Routers                                                            #
# ------------------------------------------------------------------ #
app.include_router(conversation_routes.router)


# ------------------------------------------------------------------ #
#  Root & Config                                                      #
# ------------------------------------------------------------------ #

@app.get("/", tags=["Health"])
def root():
    return {
        "message": "Conversation Evaluator is running",
        "version": "1.0.0",
        "docs": "/docs",
        "endpoints": {
            "conversations": "GET /api/conversations?limit=50",
            "conversation":  "GET /api/conversations/{id}",
            "stats":         "GET /api/stats",
        },
    }


@app.get("/health", tags=["Health"])
def health():
    sync_loop = getattr(app.state, "sync_loop", None)
    evaluation_loop = getattr(app.state, "evaluation_loop", None)
    return {
        "status": "healthy",
        "sync_running": bool(sync_loop and sync_loop.is_running),
        "evaluator_running": bool(evaluation_loop and evaluation_loop.is_running),
    }


@app.get("/config/check", tags=["Health"])
def check_config():
    """Check that all required environment variables are loaded."""
    key = settings.elevenlabs_api_key
    return {
        "status": "ok",
        "elevenlabs_api_key_loaded": bool(key),
        "elevenlabs_api_key_prefix": key[:6] + "..." if key else None,
        "elevenlabs_base_url": settings.elevenlabs_base_url,
        "elevenlabs_agent_id": settings.elevenlabs_agent_id,
        "database_url": settings.database_url,
        "poll_interval_ms": settings.poll_interval_ms,
        "evaluation_interval_ms": settings.evaluation_interval_ms,
        "evaluator": settings.evaluator,
        "openai_api_key_loaded": bool(settings.openai_api_key),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.host, port=settings.port)
