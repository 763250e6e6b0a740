"""
Fingerprint Service Logging

One rotating file per concern under LOG_DIR:
- access.log: HTTP / WebSocket requests (IP, endpoint, status, duration)
- auth.log: API key checks (accepted, rejected, rate limited)
- biometric.log: Enroll, verify and identify outcomes, session transitions
- device.log: Reader lifecycle and lease events
- error.log: Exceptions with tracebacks, plus get_logger() output
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import json

from .config import LOG_DIR, LOG_MAX_BYTES, LOG_BACKUP_COUNT, VERBOSE


LOG_DIR.mkdir(parents=True, exist_ok=True)

ACCESS_LOG = LOG_DIR / "access.log"
AUTH_LOG = LOG_DIR / "auth.log"
BIOMETRIC_LOG = LOG_DIR / "biometric.log"
DEVICE_LOG = LOG_DIR / "device.log"
ERROR_LOG = LOG_DIR / "error.log"

LINE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def _rotating_handler(log_file: Path) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        log_file,
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding='utf-8'
    )
    handler.setFormatter(logging.Formatter(LINE_FORMAT))
    return handler


def _build_logger(name: str, log_file: Path, level: int = logging.INFO) -> logging.Logger:
    """Return the named logger, attaching its file handler the first time only."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    logger.propagate = False
    logger.addHandler(_rotating_handler(log_file))

    if VERBOSE:
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter(LINE_FORMAT))
        logger.addHandler(stream)

    return logger


access_logger = _build_logger("fpservice.access", ACCESS_LOG)
auth_logger = _build_logger("fpservice.auth", AUTH_LOG)
biometric_logger = _build_logger("fpservice.biometric", BIOMETRIC_LOG)
device_logger = _build_logger("fpservice.device", DEVICE_LOG)
error_logger = _build_logger("fpservice.error", ERROR_LOG, level=logging.ERROR)


def _format_details(details: Optional[Dict[str, Any]]) -> str:
    if not details:
        return ""
    return " - " + ", ".join(f"{k}={v}" for k, v in details.items())


def log_access(
    ip: str,
    method: str,
    endpoint: str,
    status_code: int,
    duration_ms: float,
    key_name: Optional[str] = None
):
    """One line per request: `ip - METHOD path - status - 12.34ms key=name`."""
    key_part = f" key={key_name}" if key_name else ""
    access_logger.info(
        f"{ip} - {method} {endpoint} - {status_code} - {duration_ms:.2f}ms{key_part}"
    )


def log_auth(
    event: str,
    key_name: str,
    ip: str,
    success: bool = True,
    details: Optional[str] = None
):
    """
    Record an API key event.

    Args:
        event: API_KEY, KEY_CREATED, KEY_REVOKED, RATE_LIMIT, WS_CONNECT, ...
        key_name: Key name, or its prefix when the key is unknown
        ip: Remote address
        success: False for rejected or throttled requests
        details: Free-form reason
    """
    outcome = "OK" if success else "DENIED"
    reason = f" - {details}" if details else ""
    auth_logger.info(f"{event} {outcome} - key={key_name} ip={ip}{reason}")


def log_biometric(
    operation: str,
    user_id: Optional[str],
    result: str,
    details: Optional[Dict[str, Any]] = None,
    device_id: Optional[str] = None
):
    """
    Record the outcome of a capture, enrollment or match.

    Args:
        operation: ENROLL, VERIFY, IDENTIFY, CAPTURE
        user_id: Subject of the operation; None for identify without a match
        result: SUCCESS, FAILURE, MATCH, NO_MATCH, RETRY, ...
        details: Scores, qualities, retry counts
        device_id: Reader that produced the scan
    """
    subject = f"user={user_id}" if user_id else "user=-"
    reader = f" device={device_id}" if device_id else ""
    biometric_logger.info(
        f"{operation} {result} - {subject}{reader}{_format_details(details)}"
    )


def log_device(
    device_id: str,
    event: str,
    details: Optional[Dict[str, Any]] = None,
    level: int = logging.INFO
):
    """Reader lifecycle and lease events (REGISTERED, ACQUIRED, REVOKED, ...)."""
    device_logger.log(level, f"{event} - device={device_id}{_format_details(details)}")


def log_session(
    session_id: str,
    purpose: str,
    status: str,
    details: Optional[Dict[str, Any]] = None
):
    biometric_logger.info(
        f"SESSION {status} - purpose={purpose} id={session_id}{_format_details(details)}"
    )


def log_error(
    error: Exception,
    context: Optional[str] = None,
    key_name: Optional[str] = None,
    ip: Optional[str] = None
):
    """
    Write an exception with its traceback to error.log.

    Args:
        error: The exception being handled
        context: Where it happened (endpoint, session id, loop name)
        key_name: API key involved, if any
        ip: Remote address, if any
    """
    where = f" in {context}" if context else ""
    who = f" key={key_name}" if key_name else ""
    remote = f" ip={ip}" if ip else ""

    error_logger.error(
        f"{type(error).__name__}: {error}{where}{who}{remote}",
        exc_info=True
    )


def _banner(title: str):
    access_logger.info("=" * 70)
    access_logger.info(title)
    access_logger.info("=" * 70)


def log_startup(info: Dict[str, Any]):
    """Banner plus one `key: value` line per startup setting."""
    _banner("FINGERPRINT SERVICE STARTING")
    for name, value in info.items():
        access_logger.info(f"{name}: {value}")
    access_logger.info("=" * 70)


def log_shutdown():
    _banner("FINGERPRINT SERVICE SHUTTING DOWN")


_LOGGERS = {
    'access': access_logger,
    'auth': auth_logger,
    'biometric': biometric_logger,
    'device': device_logger,
    'error': error_logger,
}


def log_json(logger_type: str, data: Dict[str, Any]):
    """Emit `data` as a single timestamped JSON line on the named logger."""
    target = _LOGGERS.get(logger_type, access_logger)
    payload = dict(data)
    payload['timestamp'] = datetime.now(timezone.utc).isoformat()
    target.info(json.dumps(payload, default=str))


def get_logger(name: str) -> logging.Logger:
    """Module logger under `fpservice.<name>`, written to error.log at INFO and above."""
    return _build_logger(f"fpservice.{name}", ERROR_LOG, level=logging.INFO)
