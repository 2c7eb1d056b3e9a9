import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .routes.calendar import router as calendar_router
from .services.auth_client import get_cache_stats
from .services.cache import CalendarCaches


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
# httpx logs full request URLs, which carry user addresses for /users/{id} calls
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the caches shared by every request of this instance."""
    app.state.caches = CalendarCaches()
    logger.info("Calendar caches initialized")
    yield
    app.state.caches.clear()


app = FastAPI(title="Calendar Sync API", version="0.1.0", lifespan=lifespan)
app.include_router(calendar_router)


@app.get("/api/health")
def health():
    """Minimal liveness endpoint."""
    return {"status": "ok"}


@app.get("/api/cache/stats")
def cache_stats():
    """Token, timezone and room cache statistics for monitoring."""
    caches = getattr(app.state, "caches", None)
    return {
        "tokens": get_cache_stats(),
        "timezones": caches.timezones.stats() if caches else None,
        "rooms": caches.rooms.stats() if caches else None
    }
