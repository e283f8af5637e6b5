"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cardrelay.cache import build_cache
from cardrelay.config import settings
from cardrelay.errors import setup_exception_handlers
from cardrelay.routes import health, relay
from cardrelay.tenant_store import ContextFetcher, TenantStore
from cardrelay.upstream import create_http_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: HTTP client + read cache + tenant store. Shutdown: close them."""
    logging.getLogger("cardrelay").setLevel(settings.log_level.upper())
    if not settings.upstream_configured:
        logger.warning("OPENAI_API_KEY not set; /relay will answer 500")

    app.state.http_client = create_http_client(settings)
    app.state.cache = await build_cache(settings)
    app.state.tenant_store = TenantStore(settings)
    app.state.context_fetcher = ContextFetcher(
        app.state.tenant_store, app.state.cache, settings.cache_ttl_seconds
    )
    logger.info("Relay ready (model=%s)", settings.model_name)
    yield
    await app.state.http_client.aclose()
    await app.state.cache.close()


app = FastAPI(
    title="Card Relay",
    description="Business card chat — streaming relay API",
    version="0.1.0",
    lifespan=lifespan,
)

# open CORS headers are set on each /relay response, preflight included
setup_exception_handlers(app)

app.include_router(health.router)
app.include_router(relay.router)
