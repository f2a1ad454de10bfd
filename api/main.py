"""
Integration Sync API

Single FastAPI application with route groups:
- /api/integrations: OAuth, sync, health, notifications, summaries, analytics
- /api/cron: Scheduled sync trigger and job monitoring
"""

import os
import asyncio
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging - ensure INFO level logs are visible
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from integrations.core.encryption import get_encryption_service
from integrations.core.rate_limit import all_rate_limit_stores
from integrations.core.state import get_state_manager
from integrations.core.store import run_periodic_sweep
from services.analytics import get_analytics_cache
from routes import integrations, cron

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tokens cannot be stored or read without a working master key
    if not get_encryption_service().validate():
        raise RuntimeError("Encryption self-test failed; check ENCRYPTION_MASTER_KEY")

    # OAuth state, rate-limit windows and cached analytics are in-process; sweep them periodically
    sweeper = asyncio.create_task(
        run_periodic_sweep([get_state_manager().store, *all_rate_limit_stores(), get_analytics_cache()])
    )
    try:
        yield
    finally:
        sweeper.cancel()


app = FastAPI(
    title="Integration Sync API",
    description="Activity sync for GitHub, Notion, Slack and Google Calendar",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    return {"status": "ok", "version": "1.0.0"}


# Mount routers
app.include_router(integrations.router, prefix="/api", tags=["integrations"])
app.include_router(cron.router, prefix="/api", tags=["cron"])
