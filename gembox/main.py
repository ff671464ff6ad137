import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.staticfiles import StaticFiles

from gembox.api.hostess import router as hostess_router
from gembox.api.web import router as web_router
from gembox.core.dependencies import get_repository
from gembox.domain.errors import IndexRebuildError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"


app = FastAPI(
    title="gembox",
    version="0.1.0",
    description="Private RubyGems repository with upload, indexing and on-demand documentation.",
)


# Static files (CSS)
app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")


@app.on_event("startup")
async def startup_event() -> None:
    """
    Make sure a usable index exists before the first request, building it
    from the stored archives if needed.
    """
    try:
        await run_in_threadpool(get_repository().ensure_index)
    except IndexRebuildError as e:
        # Keep serving; /reindex can be retried once the problem is fixed.
        logger.error(f"Initial index build failed: {e}")


@app.get("/health")
async def health() -> dict:
    """
    Lightweight health check endpoint.
    """
    return {"status": "ok"}


app.include_router(web_router, tags=["web"])
app.include_router(hostess_router, tags=["rubygems"])


if __name__ == "__main__":
    """
    Allow running `python gembox/main.py` to start the Uvicorn development
    server.
    """
    import uvicorn

    uvicorn.run(
        "gembox.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
