"""FastAPI application wiring for the chat operations service.

- Configures logging, Prometheus metrics and rate limiting.
- Mounts the gateway webhook and ticket routes.
- Runs the hybrid-mode sweep in the background while the app is up, when a
  database is configured and ``HYBRID_SWEEP_ENABLED`` is not false.
"""

import logging
from collections.abc import Iterator
from contextlib import asynccontextmanager, contextmanager

import psycopg
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .agents.arbiter import ResponseArbiter
from .agents.sweep import HybridSweeper
from .app_logging import init_logging
from .conversations.repository import PostgresChatRepository
from .dependencies import build_arbiter
from .routers import tickets, webhooks
from .settings import get_settings

load_dotenv()

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Key the rate limiter on the first ``X-Forwarded-For`` hop or the peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@contextmanager
def _sweep_session() -> Iterator[tuple[PostgresChatRepository, ResponseArbiter]]:
    conn = psycopg.connect(get_settings().database_url)
    repository = PostgresChatRepository(conn)
    try:
        yield repository, build_arbiter(repository)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def build_sweeper() -> HybridSweeper | None:
    settings = get_settings()
    if not settings.hybrid_sweep_enabled:
        logger.info("Hybrid sweep disabled by configuration")
        return None
    if not settings.database_url:
        logger.warning("Hybrid sweep not started: DATABASE_URL not configured")
        return None
    return HybridSweeper(
        _sweep_session,
        interval_seconds=settings.hybrid_sweep_interval_seconds,
        initial_delay_seconds=settings.hybrid_sweep_initial_delay_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = build_sweeper()
    app.state.sweeper = sweeper
    if sweeper is not None:
        sweeper.start()
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop(wait=False)


limiter = Limiter(key_func=get_client_ip, default_limits=["600/minute"])

app = FastAPI(title="chatops", version=__version__, lifespan=lifespan)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.include_router(webhooks.router)
app.include_router(tickets.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
@limiter.exempt
async def health():
    """Liveness/readiness check with a minimal JSON body."""
    sweeper = getattr(app.state, "sweeper", None)
    return {"status": "ok", "hybrid_sweep": bool(sweeper and sweeper.running)}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
