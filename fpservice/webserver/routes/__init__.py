"""Routes package - API endpoint modules"""

from .device_routes import router as device_router
from .fingerprint_routes import router as fingerprint_router
from .user_routes import router as user_router
from .admin_routes import router as admin_router

__all__ = ['device_router', 'fingerprint_router', 'user_router', 'admin_router']
