import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .deps import status_for
from .errors import BambooError
from .routers import exchange, expenses, identity, ocr, preferences, trips

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Create FastAPI app
app = FastAPI(
    title="Bamboo Budget API",
    description="Backend API for the Bamboo Budget travel expense tracker",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(trips.router)
app.include_router(expenses.router)
app.include_router(ocr.router)
app.include_router(exchange.router)
app.include_router(preferences.router)
app.include_router(identity.router)


@app.exception_handler(BambooError)
async def bamboo_error_handler(request: Request, exc: BambooError) -> JSONResponse:
    """Map service errors that escaped a router to their HTTP status."""
    return JSONResponse(status_code=status_for(exc), content={"detail": exc.message})


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy", "service": "bamboo-budget-api"}


@app.get("/")
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Bamboo Budget API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
