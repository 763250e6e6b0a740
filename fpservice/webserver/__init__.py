"""
Webserver Package - Fingerprint Background Service
FastAPI REST API and WebSocket event channel with API key authentication and
thread-pool scan sessions.
"""

from .server import app
from .database import BiometricDatabase
from .auth import require_permission

__all__ = ['app', 'BiometricDatabase', 'require_permission']
