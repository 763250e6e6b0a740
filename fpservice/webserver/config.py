"""WebServer Configuration

Centralized configuration for the fingerprint web service.
All settings can be adjusted here (or through ``FP_*`` environment variables)
without modifying the source code.

"""

import os
from pathlib import Path
from typing import Dict, Tuple

from ..config import DATA_DIR, LOG_DIR, VERBOSE, _env_bool, _env_float, _env_int

# ============================================================================
# PATHS
# ============================================================================

# Database
DB_PATH = Path(os.getenv("FP_DB_PATH", str(DATA_DIR / "fingerprint_service.db")))

# SSL Certificates
SSL_CERT_DIR = DATA_DIR / "certs"
SSL_CERT_FILE = SSL_CERT_DIR / "cert.pem"
SSL_KEY_FILE = SSL_CERT_DIR / "key.pem"

# Bootstrap admin API key (generated on first run)
ADMIN_KEY_FILE = DATA_DIR / ".admin_api_key"

# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

# Network
HOST = os.getenv("FP_HOST", "127.0.0.1")
PORT_HTTPS = _env_int("FP_PORT_HTTPS", 8443)
PORT_HTTP = _env_int("FP_PORT_HTTP", 8080)

# CORS
CORS_ORIGINS = ["*"]
CORS_ALLOW_CREDENTIALS = True

# ============================================================================
# AUTHENTICATION & SECURITY
# ============================================================================

API_KEY_HEADER = "X-API-Key"
API_KEY_PREFIX = "fp_"
API_KEY_CACHE_TTL_S: float = _env_float("FP_API_KEY_CACHE_TTL_S", 60.0)
BCRYPT_ROUNDS: int = _env_int("FP_BCRYPT_ROUNDS", 12)

# Permission scopes. "admin" implies every other scope.
SCOPE_ADMIN = "admin"
SCOPES: Tuple[str, ...] = (
    "device:read",
    "scan",
    "enroll",
    "verify",
    "identify",
    "templates:read",
    "templates:write",
    SCOPE_ADMIN,
)

# Scope needed to start a session of each purpose
PURPOSE_SCOPES: Dict[str, str] = {
    "enroll": "enroll",
    "verify": "verify",
    "identify": "identify",
}

# Rate Limiting (requests, seconds)
# Format: (max_requests, time_window_seconds)
RATE_LIMITS: Dict[str, Tuple[int, int]] = {
    "auth_failure": (10, 300),  # 10 bad keys per 5 minutes per IP
    "scan": (60, 60),           # 60 session starts per minute
    "verify": (30, 60),         # 30 verifications per minute
    "identify": (20, 60),       # 20 identifications per minute
    "enroll": (20, 3600),       # 20 enrollments per hour
    "delete": (30, 3600),       # 30 deletes per hour
    "list_users": (60, 60),     # 60 lists per minute
    "admin": (120, 60),         # 120 admin calls per minute
}

# ============================================================================
# DEVICES
# ============================================================================

# Number of simulated readers registered at startup ("sim-1", "sim-2", ...)
SIMULATED_DEVICES: int = _env_int("FP_SIMULATED_DEVICES", 1)

# When set, simulated readers auto-present this finger id if nothing was placed
SIMULATOR_AUTO_FINGER = os.getenv("FP_SIMULATOR_AUTO_FINGER") or None
SIMULATOR_AUTO_QUALITY: int = _env_int("FP_SIMULATOR_AUTO_QUALITY", 90)

# ============================================================================
# WORKERS & BACKGROUND TASKS
# ============================================================================

# Thread pool for blocking scan sessions (one per busy reader is enough)
MAX_WORKERS: int = _env_int("FP_MAX_WORKERS", 4)

# Terminal sessions stay queryable this long
SESSION_RETENTION_S: float = _env_float("FP_SESSION_RETENTION_S", 300.0)

# Events queued per WebSocket client before it is dropped as too slow
WS_OUTBOX_SIZE: int = _env_int("FP_WS_OUTBOX_SIZE", 256)

# Periodic tasks
LEASE_SWEEP_INTERVAL_S: float = _env_float("FP_LEASE_SWEEP_INTERVAL_S", 1.0)
CLEANUP_INTERVAL_S: float = _env_float("FP_CLEANUP_INTERVAL_S", 300.0)

# Run the periodic tasks at all (tests switch them off)
BACKGROUND_TASKS: bool = _env_bool("FP_BACKGROUND_TASKS", True)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def get_admin_api_key() -> str:
    """Get or generate the bootstrap admin API key."""
    configured = os.getenv("FP_ADMIN_API_KEY")
    if configured:
        return configured.strip()

    if ADMIN_KEY_FILE.exists():
        return ADMIN_KEY_FILE.read_text().strip()

    # Generate new key
    import secrets
    key = API_KEY_PREFIX + secrets.token_urlsafe(32)

    # Save key
    ADMIN_KEY_FILE.parent.mkdir(parents=True, exist_ok=True)
    ADMIN_KEY_FILE.write_text(key)
    ADMIN_KEY_FILE.chmod(0o600)  # Read/write for owner only

    return key


def ensure_directories():
    """Ensure all required directories exist."""
    dirs = [
        DATA_DIR,
        LOG_DIR,
        SSL_CERT_DIR,
        DB_PATH.parent,
    ]

    for directory in dirs:
        directory.mkdir(parents=True, exist_ok=True)


# Auto-initialize on import
ensure_directories()
