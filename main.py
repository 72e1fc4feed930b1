"""
Relay: Multi-provider LLM gateway - routing, fallback, rate limiting and response caching.
"""

import logging
import time
import asyncio
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from cache import ResponseCache
from config import Settings
from download import build_attachment
from llm_provider import ProviderRegistry, initialize_providers, cleanup_providers
from models import (
    DownloadRequest,
    ErrorResponse,
    HealthResponse,
    QueryRequest,
    QueryResponse,
    StatusResponse,
)
from query_service import QueryService
from rate_limiter import RateLimiterService
from router import Router
from exceptions import ProviderError, RateLimitExceededError, RelayError
import metrics  # Prometheus instrumentation

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

# Initialized during startup; tests may assign their own instances.
settings: Optional[Settings] = None
registry: Optional[ProviderRegistry] = None
router: Optional[Router] = None
cache: Optional[ResponseCache] = None
rate_limiter: Optional[RateLimiterService] = None
query_service: Optional[QueryService] = None

# Graceful shutdown
active_requests = 0
shutdown_event: Optional[asyncio.Event] = None
shutdown_timeout_sec = 10


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load settings and wire the pipeline. Shutdown: drain requests and close the provider pool."""
    global settings, registry, router, cache, rate_limiter, query_service, shutdown_event, shutdown_timeout_sec

    shutdown_event = asyncio.Event()

    try:
        settings = Settings.from_env()
        logging.getLogger().setLevel(settings.log_level)
        shutdown_timeout_sec = settings.shutdown_timeout_seconds

        registry = await initialize_providers(settings)
        router = Router(registry, availability_ttl=settings.router_availability_ttl)
        cache = ResponseCache(
            enabled=settings.cache_enabled,
            ttl_seconds=settings.cache_ttl_seconds,
            max_items=settings.cache_max_items,
        )
        rate_limiter = RateLimiterService(
            requests_per_minute=settings.rate_limit_requests_per_minute,
            burst=settings.rate_limit_burst,
        )
        query_service = QueryService(
            rate_limiter=rate_limiter,
            cache=cache,
            router=router,
            registry=registry,
        )
        logger.info("Relay started")
    except (OSError, ValueError) as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    logger.info("Shutting down gracefully...")
    if shutdown_event:
        shutdown_event.set()

    start_shutdown = time.time()
    while active_requests > 0 and time.time() - start_shutdown < shutdown_timeout_sec:
        logger.info(f"Waiting for {active_requests} active request(s) to complete...")
        await asyncio.sleep(0.1)

    if active_requests > 0:
        logger.warning(f"Shutdown timeout: {active_requests} request(s) still active after {shutdown_timeout_sec}s")

    await cleanup_providers(registry)
    logger.info("Relay shut down")


app = FastAPI(
    title="Relay",
    description="Multi-provider LLM gateway with routing, fallback and response caching",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log request method, path, and response latency, and record Prometheus
    metrics for every request. New requests are rejected once shutdown starts.
    """
    global active_requests

    if shutdown_event and shutdown_event.is_set():
        logger.warning(f"Rejecting request during shutdown: {request.method} {request.url.path}")
        return _error_response(503, ErrorResponse(
            error="Server is shutting down",
            error_type="server_shutting_down",
            timestamp=datetime.now(timezone.utc),
        ))

    active_requests += 1
    start_time = time.time()
    endpoint = request.url.path

    logger.info(f"→ {request.method} {endpoint}")

    try:
        response = await call_next(request)
    finally:
        active_requests -= 1

    latency_ms = (time.time() - start_time) * 1000

    logger.info(f"← {response.status_code} | {latency_ms:.1f}ms")

    metrics.record_request(
        endpoint=endpoint,
        status=response.status_code,
        duration_seconds=latency_ms / 1000
    )

    return response


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop if present, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _check_rate_limit(request: Request) -> None:
    client_ip = get_client_ip(request)
    if not rate_limiter.allow_client(client_ip):
        logger.warning(f"Rate limit exceeded for {request.url.path} from client: {client_ip}")
        metrics.record_rate_limited()
        raise RateLimitExceededError()


def _error_response(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


# EXCEPTION HANDLERS: Map service exceptions to HTTP status codes.
# The service layer stays transport-agnostic.

@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    """
    Upstream provider failed and fallback could not recover.

    Status: 401/408/429/503 pass through, anything else is 500.
    """
    logger.error(f"Provider error: {exc!r}")
    return _error_response(exc.http_status, ErrorResponse(
        error=exc.message,
        error_type=exc.error_type,
        model=exc.tag,
        request_id=exc.request_id,
        timestamp=datetime.now(timezone.utc),
    ))


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    """Validation (400), rate limit (429) and internal (500) failures."""
    if exc.status_code >= 500:
        logger.error(f"Request failed: {exc.message}")
    return _error_response(exc.status_code, ErrorResponse(
        error=exc.message,
        error_type=exc.error_type,
        request_id=exc.request_id,
        timestamp=datetime.now(timezone.utc),
    ))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """
    Malformed request bodies (wrong JSON types, unparseable JSON).

    Status: 400 validation_error, after the client's rate limit check.
    """
    try:
        _check_rate_limit(request)
    except RateLimitExceededError as e:
        return await relay_error_handler(request, e)

    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request: {field}: {first.get('msg')}" if field else f"Invalid request: {first.get('msg')}"
    else:
        message = "Invalid request"

    body = exc.body if isinstance(exc.body, dict) else {}
    request_id = body.get("requestId")
    logger.warning(f"Rejected malformed request to {request.url.path}: {message}")
    return _error_response(400, ErrorResponse(
        error=message,
        error_type="validation_error",
        request_id=request_id if isinstance(request_id, str) else None,
        timestamp=datetime.now(timezone.utc),
    ))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions (last resort)."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(500, ErrorResponse(
        error=f"Internal server error: {exc}",
        error_type="internal_error",
        timestamp=datetime.now(timezone.utc),
    ))


@app.post(
    "/api/query",
    response_model=QueryResponse,
    response_model_exclude_none=True,
    tags=["query"],
)
async def query(request: QueryRequest, http_request: Request) -> QueryResponse:
    """Route a prompt to a provider. Identical requests are served from the cache."""
    return await query_service.execute_query(request, get_client_ip(http_request))


@app.get("/api/status", response_model=StatusResponse, tags=["health"])
async def status(http_request: Request) -> StatusResponse:
    """Current availability of each provider."""
    _check_rate_limit(http_request)
    return await router.get_availability()


@app.get("/api/health", response_model=HealthResponse, tags=["health"])
async def health_check(http_request: Request) -> HealthResponse:
    """Health check for load balancers."""
    _check_rate_limit(http_request)
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc))


@app.post("/api/download", tags=["query"])
async def download(request: DownloadRequest, http_request: Request) -> Response:
    """Return response text as a txt, pdf or docx attachment."""
    _check_rate_limit(http_request)
    attachment = build_attachment(request.response, request.format)
    return Response(
        content=attachment.content,
        media_type=attachment.media_type,
        headers={"Content-Disposition": attachment.content_disposition},
    )


@app.get("/metrics", tags=["monitoring"])
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint (text format, Prometheus scraping standard)."""
    return Response(
        content=generate_latest(metrics.REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
