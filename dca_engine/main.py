from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import cycles, delegations, health
from .config import settings
from .logging_config import setup_logging

setup_logging(settings.log_level)

# Create FastAPI app
app = FastAPI(
    title="DCA Engine API",
    description="Sentiment-driven DCA execution engine for delegated smart accounts",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(cycles.router)
app.include_router(delegations.router)


@app.get("/")
async def root():
    """Root endpoint with basic info"""
    return {
        "name": "DCA Engine API",
        "version": __version__,
        "docs": "/docs",
        "health": "/healthz"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "dca_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
