import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .core import DecisionCore, build_core
from .services.context_service import close_context_service, get_context_service_async
from .settings import get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("shopassist")
    logger = logging.getLogger("shopassist.server")
    if root.handlers:
        return logger

    root.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    root.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect Redis if configured and build the decision core; close Redis on shutdown."""
    redis_crud = None
    try:
        context_service = await get_context_service_async()
        if context_service is not None:
            redis_crud = context_service.redis
            LOGGER.info("Session store (Redis) ready")
        else:
            LOGGER.info("Redis not configured; key rotation falls back to the first key")
    except Exception as e:
        LOGGER.debug("Session store not available: %s", e)

    app.state.core = build_core(get_settings(), redis_crud)
    LOGGER.info(
        "Decision core ready (grounding mode=%s, max iterations=%d)",
        app.state.core.grounding.mode,
        app.state.core.cycles.max_iterations,
    )

    yield

    LOGGER.info("Shutting down...")
    await close_context_service()


app = FastAPI(
    title="Shopping Assistant Decision Core",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _core(request: Request) -> DecisionCore:
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(status_code=503, detail="Decision core not initialised")
    return core


def _grounding_payload(core: DecisionCore) -> dict[str, Any]:
    stats = core.grounding.stats.snapshot()
    return {
        **stats,
        "grounding_percentage": f"{stats['grounding_percentage']:.1f}%",
        "average_confidence": f"{stats['average_confidence']:.2f}",
        "mode": core.grounding.mode,
        "config": {
            "enabled": core.grounding.enabled,
            "min_words": core.grounding.profile.min_words_for_product,
        },
    }


def _keys_payload(core: DecisionCore) -> dict[str, Any]:
    return {
        name: [s.to_dict() for s in rotator.all_stats()]
        for name, rotator in core.rotators.items()
    }


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.get("/stats/grounding")
async def grounding_stats(request: Request) -> dict[str, Any]:
    """Aggregate grounding decisions since process start."""
    return _grounding_payload(_core(request))


@app.get("/stats/keys")
async def key_stats(request: Request) -> dict[str, Any]:
    """Per-key usage for every configured credential pool."""
    return _keys_payload(_core(request))


@app.get("/stats/tokens")
async def token_stats(request: Request) -> dict[str, Any]:
    return {
        "token_usage": _core(request).token_stats.snapshot(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/stats/all")
async def all_stats(request: Request) -> dict[str, Any]:
    core = _core(request)
    return {
        "api_keys": _keys_payload(core),
        "grounding": _grounding_payload(core),
        "token_usage": core.token_stats.snapshot(),
        "prompt": {
            "prompt_id": core.prompts.prompt_id,
            "prompt_hash": core.prompts.prompt_hash_short,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
