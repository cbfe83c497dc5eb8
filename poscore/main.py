import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from poscore.core.db import init_db, close_db
from poscore.api.v1.payments import router as payments_router
from poscore.api.v1.refunds import router as refunds_router
from poscore.api.v1.inventory import router as inventory_router
from poscore.api.v1.recipes import router as recipes_router
from poscore.api.v1.stock_counts import router as stock_counts_router
from poscore.core.config import PROJECT_NAME, VERSION, LOG_LEVEL, LOG_FORMAT
from poscore.core.exception_handlers import setup_exception_handlers

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
log = logging.getLogger("uvicorn")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db()  # Connect to DB and generate schemas
    yield
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    # Configure API documentation and paths
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers for modular API structure
app.include_router(payments_router, prefix="/api/v1/payments", tags=["Payment Settlement"])
app.include_router(refunds_router, prefix="/api/v1/refunds", tags=["Refunds"])
app.include_router(inventory_router, prefix="/api/v1/inventory", tags=["Inventory"])
app.include_router(recipes_router, prefix="/api/v1/recipes", tags=["Recipes"])
app.include_router(stock_counts_router, prefix="/api/v1/stock-counts", tags=["Stock Counts"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME, "version": VERSION}
