from fastapi import FastAPI, Response, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import logging
import os
import time
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from .exceptions import (
    AlreadyInTargetState,
    EntityNotFound,
    InvalidStateTransition,
    LabTrackError,
    NotAuthorized,
    ScopeMismatch,
    StoreUnavailable,
)
from .routes import (
    auth,
    users,
    labs,
    asset_types,
    equipment,
    transfers,
    issues,
    transitions,
    guards,
    notifications,
    activity,
    realtime,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("labtrack")

dsn = os.getenv("SENTRY_DSN")
if dsn:
    sentry_sdk.init(dsn=dsn, integrations=[FastApiIntegration()])

REQUEST_COUNT = Counter("request_count", "Total requests", ["method", "endpoint"])
REQUEST_LATENCY = Histogram(
    "request_latency_seconds", "Request latency", ["endpoint"]
)

app = FastAPI(title="LabTrack API")

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, lambda r, e: Response("Too Many Requests", status_code=429))
if os.getenv("TESTING") != "1":
    app.add_middleware(SlowAPIMiddleware)

ERROR_STATUS = (
    (NotAuthorized, 403),
    (ScopeMismatch, 403),
    (InvalidStateTransition, 409),
    (AlreadyInTargetState, 409),
    (EntityNotFound, 404),
    (StoreUnavailable, 503),
)


def status_for(exc: LabTrackError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


@app.exception_handler(LabTrackError)
async def labtrack_error_handler(request: Request, exc: LabTrackError):
    status_code = status_for(exc)
    detail = exc.to_dict()
    if isinstance(exc, StoreUnavailable):
        detail["retryable"] = True
        logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    endpoint = request.url.path
    REQUEST_COUNT.labels(request.method, endpoint).inc()
    REQUEST_LATENCY.labels(endpoint).observe(time.time() - start)
    return response

@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(labs.router)
app.include_router(asset_types.router)
app.include_router(equipment.router)
app.include_router(transfers.router)
app.include_router(issues.router)
app.include_router(transitions.router)
app.include_router(guards.router)
app.include_router(notifications.router)
app.include_router(activity.router)
app.include_router(realtime.router)


def audit_routes():
    from fastapi.routing import APIRoute
    from .auth import get_current_actor, get_current_user, require_hod

    auth_dependencies = {get_current_user, get_current_actor, require_hod}
    public_paths = {
        "/api/auth/login",
        "/metrics",
    }
    for route in app.routes:
        if isinstance(route, APIRoute) and route.path.startswith("/api") and route.path not in public_paths:
            calls = {dep.call for dep in route.dependant.dependencies}
            if not calls & auth_dependencies:
                raise RuntimeError(f"Route {route.path} missing authentication")


audit_routes()
