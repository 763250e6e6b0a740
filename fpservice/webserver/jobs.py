"""
Scan Session Job Management
Runs blocking scan sessions on a thread pool and persists completed enrollments.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Set

from ..errors import ErrorCode, FingerprintError
from ..logger import get_logger, log_error, log_json
from ..models import EnrollmentTemplate, ScanSession
from ..sessions import FingerprintService
from .database import BiometricDatabase


logger = get_logger("jobs")


class SessionJobManager:
    """Drives started sessions in the background and tracks their futures."""

    def __init__(self, service: FingerprintService, db: BiometricDatabase,
                 executor: ThreadPoolExecutor):
        """
        Initialize job manager.

        Args:
            service: Scan session coordinator
            db: Database receiving completed enrollments
            executor: Thread pool the blocking sessions run on
        """
        self.service = service
        self.db = db
        self.executor = executor
        self.running_jobs: Dict[str, asyncio.Future] = {}
        self._trackers: Set[asyncio.Task] = set()

    def _persist_hook(self, replace: bool, actor: str):
        """Store an enrollment before its ``scan:complete`` event goes out."""
        def persist(session: ScanSession, result: Any):
            if not isinstance(result, EnrollmentTemplate):
                return
            if not self.db.add_fingerprint(result, username=actor, replace=replace):
                raise FingerprintError(ErrorCode.USER_ALREADY_EXISTS, details={"userId": result.user_id})
        return persist

    def start(self, session: ScanSession, replace: bool = False, actor: str = "system") -> asyncio.Future:
        """
        Run a started session in the background.

        Progress and the outcome reach clients through the event broadcaster;
        the returned future resolves with the session result.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self.executor,
            self.service.run_session,
            session.session_id,
            self._persist_hook(replace, actor),
        )
        self.running_jobs[session.session_id] = future

        # Track job completion asynchronously
        tracker = asyncio.create_task(self._track(session, future))
        self._trackers.add(tracker)
        tracker.add_done_callback(self._trackers.discard)

        logger.info(f"Session {session.session_id} ({session.purpose.value}) started by {actor}")
        return future

    async def _track(self, session: ScanSession, future: asyncio.Future):
        try:
            await future
        except FingerprintError as e:
            # Already published as the session's terminal event
            logger.info(f"Session {session.session_id} ended with {e.name}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log_error(e, context=f"session_job:{session.session_id}")
        finally:
            self.running_jobs.pop(session.session_id, None)

        log_json("biometric", {
            "event": "session_end",
            "sessionId": session.session_id,
            "purpose": session.purpose.value,
            "deviceId": session.device_id,
            "state": session.state.value,
            "scans": session.scans_completed,
            "retries": session.retries,
            "durationMs": round(((session.finished_at or session.created_at) - session.created_at) * 1000, 1),
        })

    async def run(self, session: ScanSession, replace: bool = False, actor: str = "system") -> Any:
        """
        Run a session and wait for its result (blocking REST endpoints).

        If the waiting request is cancelled (client went away) the session is
        stopped so the reader is freed.

        Raises:
            FingerprintError: The session's terminal error
        """
        future = self.start(session, replace=replace, actor=actor)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            self.service.stop_session(session.session_id)
            raise

    def stop(self, session_id: str) -> bool:
        return self.service.stop_session(session_id)

    async def shutdown(self):
        """Stop every active session and wait for the workers to return."""
        for session in self.service.list_sessions(active_only=True):
            self.service.stop_session(session.session_id)

        pending = list(self.running_jobs.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info(f"Job manager stopped ({len(pending)} sessions drained)")
