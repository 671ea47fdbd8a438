"""
FastAPI application entry point.
Initializes the FastAPI app, configures logging, and includes the Lightspeed
and match queue routes.
"""

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from posbridge.config import ensure_lightspeed_configured
from posbridge.routers import lightspeed_auth, lightspeed_sync, match_queue
from posbridge.utils.logger import configure_logging

# Configure logging first
configure_logging()
logger = structlog.get_logger()

app = FastAPI(
    title="posbridge",
    description="Lightspeed Retail integration and canonical product matching",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(lightspeed_auth.router)
app.include_router(lightspeed_sync.router)
app.include_router(match_queue.router)


@app.on_event("startup")
async def startup_event():
    """Fail fast on missing Lightspeed credentials or a malformed encryption key."""
    ensure_lightspeed_configured()
    logger.info("posbridge started")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("posbridge shutting down")


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("posbridge.main:app", host="0.0.0.0", port=8000, reload=True)
