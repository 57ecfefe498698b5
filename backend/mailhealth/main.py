"""Main FastAPI application."""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from mailhealth import __version__
from mailhealth.core.config import settings
from mailhealth.core.logging import configure_logging
from mailhealth.api.router import api_router
from mailhealth.services.health_check import HealthCheckEngine

configure_logging(settings.LOG_LEVEL)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application", app_name=settings.APP_NAME, env=settings.APP_ENV)
    # One engine per process: the DNS cache and blacklist verdicts are shared across requests.
    app.state.engine = HealthCheckEngine.from_settings(settings)
    logger.info(
        "Health check engine ready",
        nameservers=app.state.engine.resolver.nameservers,
        max_concurrent_queries=settings.DNS_MAX_CONCURRENT_QUERIES,
    )

    yield

    logger.info("Shutting down application")


app = FastAPI(
    title=settings.APP_NAME,
    description="Passive email deliverability and DNS health diagnostics",
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    return {"app": settings.APP_NAME, "version": __version__, "docs": "/api/docs"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "env": settings.APP_ENV}


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal Server Error"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
