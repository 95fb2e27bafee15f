"""
FastAPI Application — turn endpoint for the rules engine.

Provides:
- POST /api/v1/turn              process one channel event
- POST /api/v1/cache/invalidate  drop the cached rule sets and lookups
- GET  /health                   liveness and cache status
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import get_settings
from core.orchestrator import TurnProcessor, create_turn_processor
from database.session import close_db, init_db
from engine.errors import CollaboratorError, RuleConfigurationError, RulesEngineError, UnknownEventTypeError
from models.schemas import TurnRequest

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

processor: TurnProcessor = create_turn_processor()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.database.store_backend == "sql":
        await init_db()

    await processor.cache.get_or_load()
    logger.info("rules_engine_started",
                stage=settings.engine.stage,
                store_backend=settings.database.store_backend,
                config_provider=settings.config_provider.type)
    yield

    services = processor.services
    await services.nlu.close()
    await services.speech.close()
    await services.invoker.close()
    await processor.cache.provider.close()
    await services.store.close()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("rules_engine_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Rules Engine",
    description="Weighted rule-set dialogue engine for voice and chat channels",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RulesEngineError)
async def rules_engine_error_handler(request: Request, exc: RulesEngineError):
    if isinstance(exc, (RuleConfigurationError, UnknownEventTypeError)):
        status_code = 400
    elif isinstance(exc, CollaboratorError):
        status_code = 502
    else:
        status_code = 500
    logger.error("turn_failed", contact_id=exc.contact_id, error=str(exc),
                 error_type=type(exc).__name__, status_code=status_code)
    return JSONResponse(
        status_code=status_code,
        content={"contactId": exc.contact_id or None, "error": str(exc), "errorType": type(exc).__name__},
    )


# ──────────────────────────────────────────────────────────────
#  Routes
# ──────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": get_settings().app_name,
        "rule_sets_loaded": processor.cache.loaded,
    }


@app.post("/api/v1/turn")
async def process_turn(req: TurnRequest):
    response = await processor.process(req)
    return response.to_wire()


@app.post("/api/v1/cache/invalidate")
async def invalidate_cache():
    processor.cache.invalidate()
    return {"status": "invalidated"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
