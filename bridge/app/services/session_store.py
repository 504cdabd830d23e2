"""Time-boxed sessions for stateful clients.

A session is created after a successful credential check and proves that
the caller authenticated earlier. Sessions end explicitly or are removed by
a periodic sweep once idle for longer than the configured timeout.
"""

import asyncio
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from bridge.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)


@dataclass
class Session:
    """Server-held proof of a previous authentication."""
    id: str
    source: str
    created_at: float
    last_activity: float

    def touch(self, now: float) -> None:
        # Concurrent validations may race; never move the timestamp backwards
        if now > self.last_activity:
            self.last_activity = now


def generate_session_id() -> str:
    """Return a new opaque 128-bit session token."""
    return secrets.token_hex(16)


class SessionStore:
    """Session table with a background expiry sweep.

    Usage:
        store = SessionStore(timeout_seconds=30 * 60)
        await store.start()

        session_id = await store.create("10.0.0.5")
        if await store.validate(session_id):
            ...

        await store.stop()
    """

    def __init__(
        self,
        timeout_seconds: float = 30 * 60,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the session store.

        Args:
            timeout_seconds: Idle time after which a session expires (0 = never)
            sweep_interval: Seconds between expiry sweeps
            clock: Wall-clock source, injectable for tests
        """
        self.timeout_seconds = timeout_seconds
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def count(self) -> int:
        return len(self._sessions)

    @property
    def running(self) -> bool:
        return self._task is not None

    async def create(self, source: str) -> str:
        now = self._clock()
        session = Session(id=generate_session_id(), source=source, created_at=now, last_activity=now)
        async with self._lock:
            self._sessions[session.id] = session
        logger.info(
            f"Created new session for {source}",
            extra=get_log_context(source=source, session_id=session.id),
        )
        return session.id

    async def validate(self, session_id: Optional[str]) -> bool:
        """Return True if the session exists, and record the activity."""
        if not session_id:
            return False
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.touch(self._clock())
            return True

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def end(self, session_id: str) -> bool:
        """Remove a session. Ending an unknown session is not an error."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info(
            f"Ended session for {session.source}",
            extra=get_log_context(source=session.source, session_id=session_id),
        )
        return True

    async def sweep(self) -> int:
        """Remove every session idle for longer than the timeout.

        Returns:
            Number of sessions removed
        """
        if self.timeout_seconds <= 0:
            return 0
        async with self._lock:
            now = self._clock()
            expired = [
                session_id
                for session_id, session in self._sessions.items()
                if now - session.last_activity > self.timeout_seconds
            ]
            for session_id in expired:
                del self._sessions[session_id]
        if expired:
            logger.info(f"Expired {len(expired)} idle sessions")
        return len(expired)

    async def clear(self) -> None:
        async with self._lock:
            self._sessions.clear()

    async def start(self) -> None:
        """Start the background sweep task.

        Nothing is started when sessions never expire.
        """
        if self._task is not None:
            logger.debug("Session sweeper already running")
            return
        if self.timeout_seconds <= 0:
            logger.info("Session timeout is 0, sessions never expire")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_sweeps())
        logger.info(f"Started session sweeper (interval: {self._sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Session sweeper did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            self._stop_event = None
            logger.info("Stopped session sweeper")

    async def _run_sweeps(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._sweep_interval)
            except asyncio.TimeoutError:
                # Normal case: interval elapsed
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error during session sweep: {e}")
