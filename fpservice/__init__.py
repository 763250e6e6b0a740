"""Fingerprint background service.

Device leasing, scan capture, three-scan enrollment, 1:1 / 1:N matching and
session events for USB fingerprint readers. ``fpservice.webserver`` exposes
the engine over REST and WebSocket.
"""

__version__ = "1.0.0"
