from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from studyguide.config import settings
from studyguide.database import init_db
from studyguide.errors import ConfigurationError, QuotaExceededError, RequestValidationError
from studyguide.logging_utils import configure_logging
from studyguide.routes import exams, files, processing, videos
from studyguide.services.rate_limiter import RateLimiter


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging, create SQLite tables, and build the one rate limiter
    every generative call of this process goes through."""
    configure_logging(settings.log_level)
    await init_db()
    app.state.rate_limiter = RateLimiter()
    yield


app = FastAPI(
    title="studyguide",
    description="Turn lecture slides into study-guide topics with per-bullet video recommendations",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(exams.router)
app.include_router(processing.router)
app.include_router(videos.router)
app.include_router(files.router)


@app.exception_handler(ConfigurationError)
@app.exception_handler(RequestValidationError)
async def request_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(QuotaExceededError)
async def quota_error_handler(_request: Request, exc: QuotaExceededError) -> JSONResponse:
    return JSONResponse(status_code=429, content={"error": str(exc), "quota": exc.quota})


def run() -> None:
    """Console entry point: serve the API on the configured host and port."""
    import uvicorn

    uvicorn.run("studyguide.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
