from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import httpx
import uvicorn
import logging

from image_vault.analysis.gemini import GeminiAnalyzer
from image_vault.analysis.heuristic import HeuristicAnalyzer
from image_vault.analysis.service import AnalysisService
from image_vault.exceptions import NotConfiguredException, add_exception_handlers
from image_vault.image_service.orchestrator import UploadOrchestrator, UploadTracker
from image_vault.image_service.proxy import RetrievalProxy
from image_vault.storage.dynamodb import DynamoDBService
from image_vault.storage.events import ChangeFeed
from image_vault.storage.s3 import S3Service
from image_vault.settings import settings
from image_vault.routers.images import router as images_router
from image_vault.routers.storage import router as storage_router
from image_vault.routers.uploads import router as uploads_router

logging.basicConfig(level=settings.log_level)
log = logging.getLogger("image-vault")

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
        Async context manager for FastAPI application lifecycle events.
        Builds every client once, injects them into the orchestrator and
        closes them on shutdown.
    """
    config = settings
    missing = config.missing_required()
    if missing:
        if config.deployment_mode == "server":
            raise NotConfiguredException(f"Missing required environment variables: {', '.join(missing)}")
        log.warning("Missing configuration %s; affected requests will fail", ", ".join(missing))

    # Initialize resources
    http = httpx.AsyncClient(timeout=config.proxy_timeout_seconds, follow_redirects=False)
    s3 = S3Service(config)
    db = DynamoDBService(config)
    feed = ChangeFeed()
    proxy = RetrievalProxy(http, storage_endpoint=config.external_endpoint or config.aws_endpoint_url)
    analysis = AnalysisService(
        primary=GeminiAnalyzer(
            client=http,
            api_key=config.gemini_api_key,
            model=config.gemini_model,
            api_base=config.gemini_api_base,
            timeout=config.analysis_timeout_seconds,
            max_attempts=config.analysis_attempts,
            backoff_seconds=config.analysis_backoff_seconds,
        ),
        fallback=HeuristicAnalyzer(),
    )
    if not config.gemini_api_key:
        log.warning("GEMINI_API_KEY is not set - will use fallback analysis only")

    app.state.settings = config
    app.state.http = http
    app.state.s3 = s3
    app.state.db = db
    app.state.feed = feed
    app.state.proxy = proxy
    app.state.analysis = analysis
    app.state.orchestrator = UploadOrchestrator(
        s3=s3,
        db=db,
        analysis=analysis,
        proxy=proxy,
        feed=feed,
        tracker=UploadTracker(
            ttl_seconds=config.upload_session_ttl_seconds,
            max_sessions=config.max_upload_sessions,
        ),
        max_upload_bytes=config.max_upload_bytes,
    )
    log.info("Image Vault started in %s mode", config.deployment_mode)
    yield
    # Cleanup resources
    await http.aclose()
    s3.close()
    db.close()

# Initialize App
app = FastAPI(
    title=settings.app_title,
    lifespan=lifespan,
    description="Image Vault upload and analysis pipeline",
)

# Add exception handlers
add_exception_handlers(app)

# CORS - Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add the routers
app.include_router(storage_router)
app.include_router(uploads_router)
app.include_router(images_router)

# Check Health
@app.get("/")
def read_root():
    """
        Default end point

    """
    return "Image Vault is running."

if __name__ == "__main__":
    uvicorn.run("image_vault.main:app", host="0.0.0.0", port=8000, reload=True)
