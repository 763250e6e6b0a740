"""
FastAPI WebServer - Main Application
Fingerprint background service: REST API, WebSocket event channel, API keys
and rate limiting in front of the scan session engine.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
import time

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import HEARTBEAT_INTERVAL_S
from ..devices import DeviceManager
from ..errors import ErrorCode, FingerprintError
from ..events import EventBroadcaster
from ..logger import get_logger, log_access, log_error, log_shutdown, log_startup
from ..sessions import FingerprintService
from ..simulator import SimulatedEngine, SimulatedReader, Touch
from .auth import cleanup_rate_limit_storage, get_client_ip, set_database
from .config import (
    BACKGROUND_TASKS, CLEANUP_INTERVAL_S, CORS_ALLOW_CREDENTIALS, CORS_ORIGINS, DB_PATH, HOST,
    LEASE_SWEEP_INTERVAL_S, MAX_WORKERS, PORT_HTTP, PORT_HTTPS, SCOPE_ADMIN, SESSION_RETENTION_S,
    SIMULATED_DEVICES, SIMULATOR_AUTO_FINGER, SIMULATOR_AUTO_QUALITY, VERBOSE, get_admin_api_key,
)
from .database import BiometricDatabase
from .jobs import SessionJobManager
from . import websocket

# Import routes
from .routes import admin_router, device_router, fingerprint_router, user_router
from .routes import admin_routes, device_routes, fingerprint_routes, user_routes


# Create FastAPI app
app = FastAPI(
    title="Fingerprint Service",
    version=__version__,
    description="Background fingerprint service: enroll, verify and identify over REST and WebSocket"
)


# Global resources
db = None
device_manager = None
service = None
executor = None
job_manager = None
simulated_readers = {}
background_tasks = []

logger = get_logger("server")


# Error code -> HTTP status
HTTP_STATUS = {
    ErrorCode.DEVICE_NOT_FOUND: 404,
    ErrorCode.DEVICE_BUSY: 409,
    ErrorCode.DEVICE_DISCONNECTED: 503,
    ErrorCode.DEVICE_INIT_FAILED: 503,
    ErrorCode.DEVICE_TIMEOUT: 504,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.USER_ALREADY_EXISTS: 409,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.OPERATION_TIMEOUT: 504,
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.INVALID_REQUEST: 400,
}


def http_status_for(code: ErrorCode) -> int:
    """HTTP status for an error code (2xxx capture/match failures -> 422)."""
    if code in HTTP_STATUS:
        return HTTP_STATUS[code]
    if 2000 <= int(code) < 3000:
        return 422
    return 500


def _code_for_status(status_code: int) -> ErrorCode:
    if status_code == 401:
        return ErrorCode.UNAUTHORIZED
    if status_code == 403:
        return ErrorCode.FORBIDDEN
    if status_code == 429:
        return ErrorCode.RATE_LIMIT_EXCEEDED
    if status_code < 500:
        return ErrorCode.INVALID_REQUEST
    return ErrorCode.INTERNAL_ERROR


# ==================== Lifecycle ====================

@app.on_event("startup")
async def startup():
    """Initialize server resources on startup."""
    global db, device_manager, service, executor, job_manager, simulated_readers

    logger.info("Starting fingerprint service...")

    # Initialize database and bootstrap admin key
    db = BiometricDatabase(DB_PATH)
    db.ensure_api_key("admin", get_admin_api_key(), [SCOPE_ADMIN])
    set_database(db)
    logger.info("✓ Database initialized")

    # Scan engine (listeners are attached before readers appear)
    device_manager = DeviceManager()
    service = FingerprintService(device_manager, SimulatedEngine(), db, EventBroadcaster())

    auto_touch = Touch(SIMULATOR_AUTO_FINGER, SIMULATOR_AUTO_QUALITY) if SIMULATOR_AUTO_FINGER else None
    simulated_readers = {}
    for index in range(1, SIMULATED_DEVICES + 1):
        device_id = f"sim-{index}"
        reader = SimulatedReader(serial_number=f"SIM-{index:04d}", auto_touch=auto_touch)
        simulated_readers[device_id] = reader
        device_manager.register(device_id, reader)
    logger.info(f"✓ {len(simulated_readers)} simulated reader(s) registered")

    # Thread pool for blocking scan sessions
    executor = ThreadPoolExecutor(max_workers=MAX_WORKERS, thread_name_prefix="scan")
    job_manager = SessionJobManager(service, db, executor)
    logger.info(f"✓ Session workers initialized ({MAX_WORKERS} threads)")

    # Set global references in route modules
    device_routes.set_globals(device_manager, simulated_readers)
    fingerprint_routes.set_globals(service, job_manager)
    user_routes.set_globals(db)
    admin_routes.set_globals(db, service, job_manager)
    websocket.set_globals(service, job_manager)

    if BACKGROUND_TASKS:
        background_tasks.extend([
            asyncio.create_task(heartbeat_loop()),
            asyncio.create_task(lease_sweep_loop()),
            asyncio.create_task(periodic_cleanup()),
        ])

    # Log startup info
    log_startup({
        'host': HOST,
        'port_https': PORT_HTTPS,
        'port_http': PORT_HTTP,
        'devices': len(simulated_readers),
        'templates': db.get_stats()['num_users'],
        'max_workers': MAX_WORKERS,
    })

    logger.info("=" * 70)
    logger.info("FINGERPRINT SERVICE READY")
    logger.info("=" * 70)


@app.on_event("shutdown")
async def shutdown():
    """Cleanup resources on shutdown."""
    global db, executor

    logger.info("Shutting down fingerprint service...")

    log_shutdown()

    for task in background_tasks:
        task.cancel()
    background_tasks.clear()

    # Stop active sessions, then the worker threads
    if job_manager:
        await job_manager.shutdown()

    if executor:
        executor.shutdown(wait=True)
        executor = None
        logger.info("✓ Session workers shut down")

    if device_manager:
        for device in device_manager.list_devices():
            device_manager.remove(device.device_id)

    # Close database
    if db:
        set_database(None)
        db.close()
        db = None
        logger.info("✓ Database closed")

    logger.info("Shutdown complete")


# ==================== Middleware ====================

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start = time.time()

    # Get client IP
    ip = get_client_ip(request)

    # Process request
    response = await call_next(request)

    # Calculate duration
    duration = (time.time() - start) * 1000

    # Get key name from request state (if authenticated)
    key = getattr(request.state, 'api_key', None)

    # Log access
    log_access(
        ip=ip,
        method=request.method,
        endpoint=request.url.path,
        status_code=response.status_code,
        duration_ms=duration,
        key_name=key['name'] if key else None
    )

    return response


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== Error envelope ====================

@app.exception_handler(FingerprintError)
async def fingerprint_error_handler(request: Request, exc: FingerprintError):
    status_code = http_status_for(exc.code)
    if status_code >= 500:
        log_error(exc, context=f"{request.method} {request.url.path}", ip=get_client_ip(request))
    return JSONResponse(status_code=status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        error = exc.detail
    else:
        error = FingerprintError(_code_for_status(exc.status_code), str(exc.detail)).to_dict()
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = FingerprintError(
        ErrorCode.INVALID_REQUEST,
        "Request validation failed",
        {"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(status_code=400, content={"success": False, "error": error.to_dict()})


# Include routers
app.include_router(device_router, prefix="/api/devices", tags=["Devices"])
app.include_router(fingerprint_router, prefix="/api", tags=["Fingerprint"])
app.include_router(user_router, prefix="/api/users", tags=["Users"])
app.include_router(admin_router, prefix="/api/admin", tags=["Admin"])
app.include_router(websocket.router)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "devices": len(device_manager.list_devices()) if device_manager else 0,
        "active_sessions": len(service.list_sessions(active_only=True)) if service else 0,
        "subscribers": service.broadcaster.subscriber_count if service else 0,
        "running_jobs": len(job_manager.running_jobs) if job_manager else 0,
    }


# ==================== Periodic tasks ====================

async def heartbeat_loop():
    """Ping WebSocket subscribers and evict the silent ones."""
    while True:
        await asyncio.sleep(HEARTBEAT_INTERVAL_S)
        try:
            evicted = service.broadcaster.heartbeat()
            if evicted:
                logger.info(f"Heartbeat evicted {len(evicted)} subscriber(s)")
        except Exception as e:
            log_error(e, context="heartbeat_loop")


async def lease_sweep_loop():
    """Revoke leases whose hardware operation overran the device timeout."""
    while True:
        await asyncio.sleep(LEASE_SWEEP_INTERVAL_S)
        try:
            device_manager.revoke_expired()
        except Exception as e:
            log_error(e, context="lease_sweep_loop")


async def periodic_cleanup():
    """Periodic cleanup of rate limit storage and ended sessions."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_S)
        try:
            cleanup_rate_limit_storage()
            removed = service.cleanup_sessions(SESSION_RETENTION_S)
            logger.info(f"Cleanup: rate limits pruned, {removed} session(s) archived")
        except Exception as e:
            log_error(e, context="periodic_cleanup")


# Export app
__all__ = ['app']


if __name__ == "__main__":
    import uvicorn

    # Run with uvicorn
    uvicorn.run(
        "fpservice.webserver.server:app",
        host=HOST,
        port=PORT_HTTP,
        reload=False,
        log_level="info" if VERBOSE else "warning"
    )
