from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Configure root logger so all virion.* module loggers emit to console
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

from virion.config import database_dsn_safe, running_in_hosted_env, settings
from virion.routes import analytics, bots, dashboard, health, links, referral, referrals
from virion.services.errors import VirionError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Database DSN: %s", database_dsn_safe())
    if running_in_hosted_env() and settings.database_url.startswith("sqlite"):
        logger.warning(
            "DATABASE_PRIVATE_URL/DATABASE_URL not set to Postgres in hosted env. "
            "Falling back to SQLite, data will NOT persist across deploys."
        )
    yield


app = FastAPI(
    title="Virion Labs API",
    description="Referral attribution, analytics and dashboards for Virion Labs",
    version=settings.api_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(VirionError)
async def virion_error_handler(request: Request, exc: VirionError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if not errors:
        return JSONResponse(status_code=400, content={"error": "Invalid request"})
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"error": f"{location}: {message}" if location else message},
    )


app.include_router(health.router, tags=["Health"])
app.include_router(referral.router, prefix="/api")
app.include_router(links.router, prefix="/api")
app.include_router(analytics.router, prefix="/api")
app.include_router(referrals.router, prefix="/api")
app.include_router(bots.router, prefix="/api")
app.include_router(dashboard.router, prefix="/api")


@app.get("/")
async def root() -> dict:
    return {"message": "Virion Labs API", "docs": "/docs"}
