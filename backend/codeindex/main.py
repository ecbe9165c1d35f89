"""codeindex backend application.

Serves the index API for local projects:

    - index: session init/restore, sync, and semantic search
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from codeindex import __version__
from codeindex.config import get_config
from codeindex.embeddings import EmbeddingConfig, EmbeddingGateway
from codeindex.index.router import get_service, router as index_router, set_service
from codeindex.index.service import IndexService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "qdrant_client",
    "faiss",
    "faiss.loader",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in codeindex.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    emb_config = EmbeddingConfig.from_settings(config)
    if not emb_config.api_key:
        logger.warning(
            "No API key configured for embedding provider '%s'; requests will fail with an auth error",
            emb_config.provider,
        )
    gateway = EmbeddingGateway(emb_config, max_concurrency=config.sync.workers)
    set_service(IndexService(config, gateway))
    logger.info(
        "Index service ready: embedding=%s vector_store=%s",
        emb_config.provider_id,
        config.vector_store.backend,
    )

    yield  # Application runs here

    # Shutdown
    service = get_service()
    if service is not None:
        await service.aclose()
        set_service(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="codeindex API",
    description="Incremental semantic index of source code projects",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(index_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Start the API server with the configured host and port."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "codeindex.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )
