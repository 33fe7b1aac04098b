import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from cryptotracker.config import get_settings
from cryptotracker.container import build_services
from cryptotracker.database import build_engine, build_session_factory, create_tables
from cryptotracker.routers import market_router, portfolio_router, transactions_router
from cryptotracker.services.storage import MemoryKeyValueStore, SQLKeyValueStore
from cryptotracker.tasks import shutdown_scheduler, start_scheduler

# Configure logging
settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    logger.info("Starting Crypto Tracker service...")
    engine = None
    if settings.storage_backend == "memory":
        store = MemoryKeyValueStore()
    else:
        engine = build_engine()
        await create_tables(engine)
        store = SQLKeyValueStore(build_session_factory(engine))

    services = build_services(store, settings=settings)
    app.state.services = services
    await services.initialize()
    start_scheduler(services)
    logger.info("Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Crypto Tracker service...")
    shutdown_scheduler()
    await services.close()
    if engine is not None:
        await engine.dispose()
    logger.info("Service shutdown complete")


app = FastAPI(
    title="Crypto Tracker",
    description="Crypto portfolio valuation and P&L tracking service",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(portfolio_router)
app.include_router(transactions_router)
app.include_router(market_router)


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint for uptime monitoring."""
    services = getattr(request.app.state, "services", None)
    return {
        "status": "healthy",
        "service": "cryptotracker",
        "version": "1.0.0",
        "storage": settings.storage_backend,
        "engine_state": services.portfolio.state.value if services else None,
    }


@app.get("/")
async def root():
    return {
        "service": "Crypto Tracker",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
