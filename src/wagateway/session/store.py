"""
SessionStore - in-memory registry of tracked sessions.

The single source of truth for which sessions exist and in what state while
the process runs. Credential directories on disk remain the durable record;
the store is rebuilt from them at startup.
"""

import threading
from typing import Dict, List, Optional, Tuple

import structlog

from wagateway.session.models import SessionRecord, SessionStatus

logger = structlog.get_logger("session")


class SessionStore:
    """
    Thread-safe mapping of session_id -> SessionRecord.

    Callbacks for different sessions may interleave on the event loop and
    HTTP handlers may run in worker threads, so every access takes the lock.
    """

    def __init__(self) -> None:
        # RLock allows get() to be called from within locked contexts
        self._lock = threading.RLock()
        self._sessions: Dict[str, SessionRecord] = {}

    def put(self, record: SessionRecord) -> None:
        with self._lock:
            self._sessions[record.session_id] = record
        logger.debug("store_put", session_id=record.session_id, status=record.status.value)

    def insert_if_below(self, record: SessionRecord, limit: int) -> Tuple[bool, int]:
        """Insert ``record`` only while fewer than ``limit`` sessions are tracked.

        Check and insert happen under one lock acquisition.

        Returns:
            (accepted, current count before the attempt)

        Raises:
            ValueError: If the session_id is already tracked.
        """
        with self._lock:
            current = len(self._sessions)
            if record.session_id in self._sessions:
                raise ValueError(f"Session {record.session_id} already tracked")
            if current >= limit:
                return False, current
            self._sessions[record.session_id] = record
        logger.debug("store_inserted", session_id=record.session_id, count=current + 1)
        return True, current

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            record = self._sessions.pop(session_id, None)
        if record is not None:
            logger.debug("store_removed", session_id=session_id)
        return record

    def list_all(self) -> List[SessionRecord]:
        with self._lock:
            return list(self._sessions.values())

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def count_by_status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in SessionStatus}
        for record in self.list_all():
            counts[record.status.value] += 1
        return counts

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        return self.count()
