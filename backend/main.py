import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import get_settings
from backend.database import init_models
from backend.app.routes import bank_connections

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    if not settings.provider_configured:
        logger.warning("Starting without TrueLayer credentials; /api/banks/truelayer endpoints return 503")
    yield


app = FastAPI(
    title="Bank Sync API",
    description="Open Banking connection and transaction synchronization",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(bank_connections.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
