import os
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# Module-level config in the pipeline reads the environment at import time
load_dotenv()

from fastapi import FastAPI

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .pipeline import training_router, voice_router
from .pipeline import routes as pipeline_routes
from .pipeline import storage

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    if not os.environ.get("SUPABASE_URL"):
        logger.warning("SUPABASE_URL not set: backend function calls will fail")
    yield
    logger.info("Worker shutting down...")
    service = pipeline_routes._service
    if service is not None:
        await service.shutdown()


app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(training_router)
app.include_router(voice_router)


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    return {
        "status": "ok",
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "supabase_anon_key_set": bool(os.environ.get("SUPABASE_ANON_KEY")),
        "service_role_key_set": bool(os.environ.get("SUPABASE_SERVICE_ROLE_KEY")),
        "r2_configured": storage.is_configured(),
        "redis_url_set": bool(os.environ.get("REDIS_URL")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("talkinghead.main:app", host="0.0.0.0", port=port, reload=True)
