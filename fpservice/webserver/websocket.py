"""
WebSocket Event Channel
Pushes broadcaster events to clients and accepts scan commands.

Server -> client:
    every event as {"type", "sessionId", "sequence", "timestamp", "data"},
    plus {"type": "ack", ...} / {"type": "error", ...} replies to commands

Client -> server:
    {"type": "pong"}                          liveness acknowledgement
    {"type": "subscribe", "sessionId": ...}   only receive these sessions
    {"type": "scan:start", ...}               same fields as POST /api/scan/start
    {"type": "scan:stop", "sessionId": ...}

Events are published from scan worker threads; ``call_soon_threadsafe`` moves
them onto the connection's bounded queue on the event loop. A client that
falls WS_OUTBOX_SIZE events behind is closed with code 4429.
"""

import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..errors import ErrorCode, FingerprintError
from ..logger import get_logger, log_access, log_auth, log_error
from ..models_serialization import event_to_message, session_to_dict
from .auth import authenticate_key, check_rate_limit, ensure_scope, get_client_ip
from .config import API_KEY_HEADER, WS_OUTBOX_SIZE
from .routes.fingerprint_routes import ScanStartRequest, open_session


router = APIRouter()

logger = get_logger("websocket")

# Close codes
WS_UNAUTHORIZED = 4401
WS_EVICTED = 4408
WS_TOO_SLOW = 4429

# Global references (set by server.py)
service = None
job_manager = None


def set_globals(svc, jobs):
    """Set global scan service and job manager references."""
    global service, job_manager
    service = svc
    job_manager = jobs


class Outbox:
    """Bounded per-connection event queue.

    Only touched from the event loop. Once an event does not fit, the client
    is marked ``overflowed`` and everything after it is dropped until the
    connection is closed.
    """

    def __init__(self, maxsize: int = WS_OUTBOX_SIZE):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.overflowed = asyncio.Event()
        self.dropped = 0

    def offer(self, message: Dict[str, Any]) -> bool:
        if not self.overflowed.is_set():
            try:
                self.queue.put_nowait(message)
                return True
            except asyncio.QueueFull:
                self.overflowed.set()
        self.dropped += 1
        return False


def _error_message(error: FingerprintError, request_type: Optional[str] = None) -> Dict[str, Any]:
    return {"type": "error", "request": request_type, "error": error.to_dict()}


async def _handle_message(message: Dict[str, Any], key: Dict[str, Any], subscription_id: int) -> Optional[Dict[str, Any]]:
    """
    Execute one client command.

    Returns:
        Reply to send, or None
    """
    msg_type = message.get("type")
    broadcaster = service.broadcaster

    if msg_type == "pong":
        broadcaster.acknowledge(subscription_id)
        return None

    if msg_type == "subscribe":
        session_id = message.get("sessionId")
        if not session_id:
            raise FingerprintError(ErrorCode.INVALID_REQUEST, "subscribe requires a sessionId")
        broadcaster.follow(subscription_id, session_id)
        return {"type": "ack", "request": msg_type, "sessionId": session_id}

    if msg_type == "scan:start":
        try:
            req = ScanStartRequest(**{k: v for k, v in message.items() if k != "type"})
        except ValidationError as e:
            raise FingerprintError(ErrorCode.INVALID_REQUEST, "Invalid scan:start message",
                                   {"errors": e.errors(include_url=False)}) from e

        allowed, retry_after = check_rate_limit(f"key:{key['id']}", "scan")
        if not allowed:
            raise FingerprintError(ErrorCode.RATE_LIMIT_EXCEEDED, details={"retryAfter": retry_after})

        session = open_session(req, key)
        broadcaster.follow(subscription_id, session.session_id)
        job_manager.start(session, replace=req.replace, actor=key["name"])
        return {"type": "ack", "request": msg_type, "session": session_to_dict(session)}

    if msg_type == "scan:stop":
        session_id = message.get("sessionId")
        if not session_id:
            raise FingerprintError(ErrorCode.INVALID_REQUEST, "scan:stop requires a sessionId")
        ensure_scope(key, "scan")
        stopped = job_manager.stop(session_id)
        return {"type": "ack", "request": msg_type, "sessionId": session_id, "stopped": stopped}

    raise FingerprintError(ErrorCode.INVALID_REQUEST, f"Unknown message type: {msg_type}")


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, api_key: Optional[str] = Query(None)):
    """Event stream plus scan commands for one client."""
    ip = get_client_ip(websocket)
    key = authenticate_key(websocket.headers.get(API_KEY_HEADER) or api_key)
    if key is None:
        log_auth("WEBSOCKET", "-", ip, success=False)
        await websocket.close(code=WS_UNAUTHORIZED)
        return

    await websocket.accept()
    log_access(ip, "WS", "/ws", 101, 0.0, key_name=key["name"])

    loop = asyncio.get_running_loop()
    outbox = Outbox()
    evicted = asyncio.Event()

    def deliver(event):
        loop.call_soon_threadsafe(outbox.offer, event_to_message(event))

    def on_close(reason: str):
        logger.info(f"WebSocket subscriber for {key['name']} evicted: {reason}")
        loop.call_soon_threadsafe(evicted.set)

    subscription = service.broadcaster.subscribe(deliver, on_close=on_close)

    async def sender():
        while True:
            message = await outbox.queue.get()
            await websocket.send_json(message)

    async def receiver():
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                outbox.offer(_error_message(FingerprintError(ErrorCode.INVALID_REQUEST, "Expected a JSON object")))
                continue
            try:
                reply = await _handle_message(message, key, subscription.subscription_id)
            except FingerprintError as e:
                reply = _error_message(e, message.get("type"))
            if reply is not None:
                outbox.offer(reply)

    tasks = [
        asyncio.create_task(sender()),
        asyncio.create_task(receiver()),
        asyncio.create_task(evicted.wait()),
        asyncio.create_task(outbox.overflowed.wait()),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                log_error(exc, context="websocket", key_name=key["name"], ip=ip)
    finally:
        for task in tasks:
            task.cancel()
        service.broadcaster.unsubscribe(subscription.subscription_id)

    close_code = None
    if evicted.is_set():
        close_code = WS_EVICTED
    elif outbox.overflowed.is_set():
        logger.warning(f"WebSocket for {key['name']} dropped: {outbox.dropped} event(s) did not fit "
                       f"the {outbox.queue.maxsize}-event outbox")
        close_code = WS_TOO_SLOW

    if close_code is not None:
        try:
            await websocket.close(code=close_code)
        except RuntimeError as e:
            logger.info(f"WebSocket for {key['name']} already closed: {e}")
