import os
import time
import logging
import uvicorn
from fastapi import FastAPI
from contextlib import asynccontextmanager
from dotenv import load_dotenv

load_dotenv()

from . import metrics
from .pipeline.generators import IMAGE_GEN_URL
from .pipeline.storage import R2_ACCOUNT_ID, R2_PUBLIC_URL
from .pipeline.routes import asset_router, slideshow_router, session_router, get_studio, set_studio

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Studio starting up...")
    metrics.set_gauge("start_time", time.time())
    studio = get_studio()
    yield
    logger.info("Studio shutting down...")
    await studio.close()
    set_studio(None)


app = FastAPI(lifespan=lifespan)
app.include_router(asset_router)
app.include_router(slideshow_router)
app.include_router(session_router)


@app.get("/health")
def health_check():
    """Verify the studio is running and env vars are configured."""
    return {
        "status": "ok",
        "image_gen_url": IMAGE_GEN_URL,
        "r2_configured": bool(R2_ACCOUNT_ID and R2_PUBLIC_URL),
        "supabase_configured": bool(os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY")),
    }


@app.get("/metrics")
def get_metrics():
    """Return a snapshot of all studio metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.getenv("PORT", 8000))
    uvicorn.run("studio.main:app", host="0.0.0.0", port=port, reload=True)
