"""
SessionLifecycleManager - owns every live connection of the gateway.

Opens connections through the transport, wires their events, reacts to
open/close updates (bounded reconnect, terminal cleanup on logout), and
runs the periodic sweeps. Per-session work is serialized with one
asyncio.Lock per session id; handles that are no longer attached to their
record are treated as stale and their events are dropped.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog

from wagateway.session.credentials import CredentialStore
from wagateway.session.exceptions import AuthTerminated, PersistenceError, TransportError
from wagateway.session.models import SESSION_ID_RE, SessionRecord, SessionStatus, from_millis
from wagateway.session.pairing import PairingOrchestrator
from wagateway.session.phone import normalize_phone
from wagateway.session.status import transition
from wagateway.session.store import SessionStore
from wagateway.transport.base import (
    CONNECTION_UPDATE,
    CREDS_UPDATE,
    INBOUND_EVENTS,
    ConnectionHandle,
    ConnectionUpdate,
    FileAuthState,
    Transport,
)

logger = structlog.get_logger("session")

MessageHandler = Callable[[ConnectionHandle, str, Any], Awaitable[None]]


class SessionLifecycleManager:
    """Connection lifecycle for all tracked sessions."""

    def __init__(
        self,
        store: SessionStore,
        credentials: CredentialStore,
        transport: Transport,
        pairing: PairingOrchestrator,
        notifier: Any = None,
        message_handler: Optional[MessageHandler] = None,
        max_retries: int = 3,
        reconnect_delay: float = 5.0,
        max_sessions: Optional[int] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.transport = transport
        self.pairing = pairing
        self.notifier = notifier
        if message_handler is None and notifier is not None:
            message_handler = notifier.forward_event
        self.message_handler = message_handler
        self.max_retries = max_retries
        self.reconnect_delay = reconnect_delay
        self.max_sessions = max_sessions

        self._locks: Dict[str, asyncio.Lock] = {}
        self._reconnects: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(partial(self._background_done, name))
        return task

    def _background_done(self, name: str, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", task=name, error=str(exc))

    async def drain(self) -> None:
        """Wait for follow-up actions already spawned."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def is_reconnecting(self, session_id: str) -> bool:
        task = self._reconnects.get(session_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, phone_number: str, session_id: str) -> ConnectionHandle:
        """Open (or re-open) the connection for ``session_id``.

        Creates the record when it is not tracked yet, loads auth state from
        the credential directory, wires event listeners and schedules a
        pairing code when the credentials are not registered.

        Raises:
            PhoneValidationError: ``phone_number`` is not a valid number.
            TransportError: The connection could not be opened.
        """
        phone = normalize_phone(phone_number)
        async with self._lock_for(session_id):
            return await self._start_locked(phone, session_id)

    async def _start_locked(self, phone: str, session_id: str) -> ConnectionHandle:
        record = self.store.get(session_id)
        if record is not None and record.handle is not None:
            logger.info("session_already_active", session_id=session_id)
            return record.handle

        if record is None:
            record = SessionRecord(session_id=session_id, phone_number=phone)
            self.store.put(record)
        elif record.status != SessionStatus.PENDING:
            transition(record, SessionStatus.PENDING)

        try:
            folder = self.credentials.ensure_dir(session_id)
            auth_state = self.transport.load_auth_state(folder)
            handle = await self.transport.open_connection(session_id, phone, auth_state)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("session_start_failed", session_id=session_id, error=message)
            record.error = message
            transition(record, SessionStatus.ERROR)
            try:
                self.credentials.write_start_error(session_id, phone, message)
            except PersistenceError as perr:
                logger.error("session_error_not_persisted", session_id=session_id, error=str(perr))
            if isinstance(exc, AuthTerminated):
                raise
            raise TransportError(f"Failed to start session: {message}") from exc

        self._wire(session_id, handle, auth_state)
        record.handle = handle
        record.error = None

        if not auth_state.registered:
            self.pairing.schedule(record, handle)

        logger.info(
            "session_started",
            session_id=session_id,
            phone=phone,
            registered=auth_state.registered,
            retry_count=record.retry_count,
        )
        return handle

    def _wire(self, session_id: str, handle: ConnectionHandle, auth_state: FileAuthState) -> None:
        handle.on(CONNECTION_UPDATE, partial(self._on_connection_update, session_id, handle))
        handle.on(CREDS_UPDATE, partial(self._on_creds_update, session_id, auth_state))
        for event in INBOUND_EVENTS:
            handle.on(event, partial(self._on_inbound, session_id, handle, event))

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_creds_update(self, session_id: str, auth_state: FileAuthState, creds: Any) -> None:
        try:
            auth_state.save(creds if isinstance(creds, dict) else None)
        except OSError as exc:
            logger.error("creds_save_failed", session_id=session_id, error=str(exc))

    async def _on_inbound(self, session_id: str, handle: ConnectionHandle, event: str, payload: Any) -> None:
        record = self.store.get(session_id)
        if record is None or record.handle is not handle or self.message_handler is None:
            return
        try:
            await self.message_handler(handle, event, payload)
        except Exception as exc:
            logger.error("inbound_handler_failed", session_id=session_id, event_name=event, error=str(exc))

    async def _on_connection_update(self, session_id: str, handle: ConnectionHandle, payload: Any) -> None:
        update = ConnectionUpdate.from_payload(payload)
        async with self._lock_for(session_id):
            record = self.store.get(session_id)
            if record is None or record.handle is not handle:
                logger.debug(
                    "stale_connection_event_ignored",
                    session_id=session_id,
                    connection=update.connection,
                )
                return

            if update.connection == "open":
                self._handle_open(record, handle)
            elif update.connection == "close":
                await self._handle_close(record, update)
            elif update.connection == "connecting":
                logger.debug("session_connecting", session_id=session_id)

    def _handle_open(self, record: SessionRecord, handle: ConnectionHandle) -> None:
        now = datetime.now(timezone.utc)
        transition(record, SessionStatus.CONNECTED)
        record.connected_at = now
        record.retry_count = 0
        record.error = None
        self.pairing.cancel_task(record.session_id)
        try:
            self.credentials.mark_connected(record.session_id, record.phone_number, now)
        except PersistenceError as exc:
            logger.error("connected_status_not_persisted", session_id=record.session_id, error=str(exc))

        logger.info("session_connected", session_id=record.session_id, phone=record.phone_number)
        if self.notifier is not None:
            self._spawn(self.notifier.on_session_connected(record, handle), "on_session_connected")

    async def _handle_close(self, record: SessionRecord, update: ConnectionUpdate) -> None:
        session_id = record.session_id
        record.handle = None
        self.pairing.cancel_task(session_id)
        logger.info(
            "session_connection_closed",
            session_id=session_id,
            status_code=update.status_code,
            error=update.error,
            retry_count=record.retry_count,
        )

        if update.is_logged_out:
            self._terminate(record, "logged_out")
            return
        self._transient_failure(record, update.error)

    def _transient_failure(self, record: SessionRecord, error: Optional[str] = None) -> None:
        if record.retry_count >= self.max_retries:
            logger.warning(
                "session_retries_exhausted",
                session_id=record.session_id,
                max_retries=self.max_retries,
            )
            self._terminate(record, "retries_exhausted")
            return

        record.retry_count += 1
        if error:
            record.error = error
        transition(record, SessionStatus.PENDING)
        self._schedule_reconnect(record)

    def _terminate(self, record: SessionRecord, reason: str) -> None:
        """Drop ``record`` for good and delete its credential directory."""
        session_id = record.session_id
        self._cancel_reconnect(session_id)
        self.pairing.abort(session_id, "Session closed")
        record.handle = None
        transition(record, SessionStatus.CLOSED)
        self.store.remove(session_id)
        self._locks.pop(session_id, None)
        try:
            self.credentials.delete(session_id)
        except PersistenceError as exc:
            logger.error("session_dir_delete_failed", session_id=session_id, error=str(exc))

        logger.info("session_terminated", session_id=session_id, reason=reason)
        if self.notifier is not None:
            self._spawn(self.notifier.on_session_closed(record, reason), "on_session_closed")

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _schedule_reconnect(self, record: SessionRecord, delay: Optional[float] = None) -> None:
        session_id = record.session_id
        self._cancel_reconnect(session_id)
        delay = self.reconnect_delay if delay is None else delay
        task = asyncio.create_task(self._reconnect(session_id, record.phone_number, delay))
        self._reconnects[session_id] = task
        task.add_done_callback(partial(self._reconnect_done, session_id))
        logger.info(
            "session_reconnect_scheduled",
            session_id=session_id,
            attempt=record.retry_count,
            delay=delay,
        )

    def _reconnect_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._reconnects.get(session_id) is task:
            del self._reconnects[session_id]

    def _cancel_reconnect(self, session_id: str) -> None:
        task = self._reconnects.pop(session_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect(self, session_id: str, phone: str, delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)

        record = self.store.get(session_id)
        if record is None:
            logger.info("session_reconnect_skipped", session_id=session_id, reason="session_gone")
            return

        try:
            await self.start(phone, session_id)
        except AuthTerminated as exc:
            logger.warning("session_reconnect_rejected", session_id=session_id, error=str(exc))
            async with self._lock_for(session_id):
                record = self.store.get(session_id)
                if record is not None and record.handle is None:
                    self._terminate(record, "logged_out")
        except TransportError as exc:
            logger.warning("session_reconnect_failed", session_id=session_id, error=str(exc))
            async with self._lock_for(session_id):
                record = self.store.get(session_id)
                if record is not None and record.handle is None:
                    self._transient_failure(record, str(exc))

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def close(self, session_id: str, delete_credentials: bool = False) -> bool:
        """Close ``session_id`` and stop tracking it.

        Returns False when the session is not tracked. The credential
        directory is kept unless ``delete_credentials`` is set.

        Raises:
            PersistenceError: ``delete_credentials`` was set and the
                directory could not be removed.
        """
        async with self._lock_for(session_id):
            record = self.store.get(session_id)
            if record is None:
                return False
            self._cancel_reconnect(session_id)
            self.pairing.abort(session_id, "Session deleted")
            handle = record.handle
            record.handle = None
            transition(record, SessionStatus.CLOSED)
            self.store.remove(session_id)
            self._locks.pop(session_id, None)

        # Outside the lock: a close() that emits a final update must not wait on us
        if handle is not None:
            try:
                await handle.close()
            except Exception as exc:
                logger.warning("session_handle_close_failed", session_id=session_id, error=str(exc))

        logger.info("session_closed", session_id=session_id)
        if delete_credentials:
            self.credentials.delete(session_id)
        return True

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def cleanup_stale(self, max_age_hours: float = 24) -> List[str]:
        """Delete credential directories older than ``max_age_hours``.

        Tracked sessions whose directory was removed are closed too.
        """
        removed = self.credentials.cleanup_stale(max_age_hours)
        for session_id in removed:
            if session_id in self.store:
                await self.close(session_id)
        if removed:
            logger.info("stale_sessions_cleaned", count=len(removed))
        return removed

    async def expire_pending(self, max_age_minutes: float = 10) -> List[str]:
        """Drop sessions that never connected within ``max_age_minutes``."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)
        expired = [
            record.session_id
            for record in self.store.list_all()
            if record.connected_at is None
            and record.status != SessionStatus.CONNECTED
            and record.created_at < cutoff
        ]
        for session_id in expired:
            if await self.close(session_id):
                try:
                    self.credentials.delete(session_id)
                except PersistenceError as exc:
                    logger.error("session_dir_delete_failed", session_id=session_id, error=str(exc))
                logger.info("pending_session_expired", session_id=session_id)
        return expired

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    def reconcile(self, resume: bool = True) -> List[str]:
        """Rebuild records from status files left by a previous run.

        Sessions recorded as connected are re-opened in the background when
        ``resume`` is set and left untracked otherwise. Restoring stops at
        ``max_sessions``. Returns the ids that were restored.
        """
        restored: List[str] = []
        for session_id in self.credentials.list_session_ids():
            if session_id in self.store:
                continue
            try:
                status = self.credentials.read_status(session_id)
            except PersistenceError as exc:
                logger.warning("reconcile_status_unreadable", session_id=session_id, error=str(exc))
                continue
            if not status:
                continue

            state = status.get("status")
            if state == "connected" and not resume:
                # Left on disk, GET falls back to the status file
                logger.info("reconcile_connected_skipped", session_id=session_id)
                continue

            match = SESSION_ID_RE.match(session_id)
            phone = status.get("phoneNumber") or match.group(1)
            created_at = from_millis(int(match.group(2)))
            record = SessionRecord(session_id=session_id, phone_number=phone, created_at=created_at)

            if state == "connected":
                record.connected_at = from_millis(status.get("connectedAt")) or created_at
            elif state == "pending" and status.get("code"):
                record.status = SessionStatus.AWAITING_LINK
                record.pairing_code = status.get("code")
            else:
                record.status = SessionStatus.ERROR
                record.error = status.get("error")

            if self.max_sessions is None:
                self.store.put(record)
            else:
                accepted, current = self.store.insert_if_below(record, self.max_sessions)
                if not accepted:
                    logger.warning(
                        "reconcile_session_limit_reached",
                        session_id=session_id,
                        current=current,
                        limit=self.max_sessions,
                    )
                    continue
            restored.append(session_id)
            if state == "connected":
                self._schedule_reconnect(record, delay=0)

        if restored:
            logger.info("sessions_reconciled", count=len(restored))
        return restored

    async def shutdown(self) -> None:
        """Close every live handle. Credential directories are kept."""
        for session_id in list(self._reconnects):
            self._cancel_reconnect(session_id)
        self.pairing.shutdown()

        for record in self.store.list_all():
            handle = record.handle
            record.handle = None
            if handle is None:
                continue
            try:
                await handle.close()
            except Exception as exc:
                logger.warning("session_handle_close_failed", session_id=record.session_id, error=str(exc))

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        logger.info("session_lifecycle_shutdown", sessions=self.store.count())
