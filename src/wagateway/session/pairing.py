"""
PairingOrchestrator - turns "a socket was opened for an unregistered phone"
into "a pairing code is available to the HTTP request that asked for it".

Code generation happens out-of-band: the socket needs a few seconds to reach
a state where it accepts a pairing-code request, so the request is deferred
by ``pairing_delay``. The HTTP handler registers a single-consumer future
before starting the session and races it against a timeout.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog

from wagateway.session.credentials import CredentialStore
from wagateway.session.exceptions import PairingError, PairingTimeoutError, PersistenceError
from wagateway.session.models import SessionRecord, SessionStatus
from wagateway.session.status import transition
from wagateway.session.store import SessionStore

logger = structlog.get_logger("pairing")

CODE_GROUP = 4

CODE_MESSAGE = (
    "*WhatsApp Pairing Code*\n\n"
    "Code: *{code}*\n\n"
    "Enter this code in WhatsApp: Settings → Linked Devices → Link a Device\n\n"
    "This code expires in 20 seconds."
)


def format_pairing_code(raw: Optional[str]) -> Optional[str]:
    """Split a raw code into groups of four joined by ``-``.

    ``"ABCD1234"`` -> ``"ABCD-1234"``; a short final group is kept as-is.
    """
    if not raw:
        return raw
    compact = "".join(str(raw).split()).replace("-", "")
    return "-".join(compact[i:i + CODE_GROUP] for i in range(0, len(compact), CODE_GROUP))


class PairingOrchestrator:
    """Schedules pairing-code requests and hands results to waiting requests."""

    def __init__(
        self,
        store: SessionStore,
        credentials: CredentialStore,
        pairing_delay: float = 3.0,
        send_code_message: bool = False,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.pairing_delay = pairing_delay
        self.send_code_message = send_code_message
        self._waiters: Dict[str, asyncio.Future] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Waiters (HTTP side)
    # ------------------------------------------------------------------

    def register(self, session_id: str) -> asyncio.Future:
        """Install the single-consumer channel for ``session_id``."""
        loop = asyncio.get_running_loop()
        previous = self._waiters.pop(session_id, None)
        if previous is not None and not previous.done():
            previous.cancel()
        future = loop.create_future()
        self._waiters[session_id] = future
        return future

    def has_waiter(self, session_id: str) -> bool:
        return session_id in self._waiters

    def discard(self, session_id: str) -> None:
        future = self._waiters.pop(session_id, None)
        if future is not None and not future.done():
            future.cancel()

    async def wait_for_code(self, session_id: str, timeout: float = 15.0) -> str:
        """Wait for the code of ``session_id``.

        Raises:
            PairingTimeoutError: No code within ``timeout`` seconds.
            PairingError: Code generation failed.
        """
        future = self._waiters.get(session_id)
        if future is None:
            raise PairingError("No pairing request registered for this session")
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("pairing_code_timeout", session_id=session_id, timeout=timeout)
            raise PairingTimeoutError("Pairing code generation timeout") from exc
        finally:
            # Removed exactly once, whichever side finished first
            if self._waiters.get(session_id) is future:
                del self._waiters[session_id]

    def _resolve(self, session_id: str, code: str) -> None:
        future = self._waiters.get(session_id)
        if future is not None and not future.done():
            future.set_result(code)

    def _reject(self, session_id: str, message: str) -> None:
        future = self._waiters.get(session_id)
        if future is not None and not future.done():
            future.set_exception(PairingError(message))

    # ------------------------------------------------------------------
    # Deferred code request (connection side)
    # ------------------------------------------------------------------

    def is_scheduled(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def schedule(self, record: SessionRecord, handle: Any) -> asyncio.Task:
        """Request a code for ``record`` on ``handle`` after ``pairing_delay``."""
        transition(record, SessionStatus.AWAITING_CODE)
        self.cancel_task(record.session_id)
        task = asyncio.create_task(self._request_code(record, handle))
        self._tasks[record.session_id] = task
        task.add_done_callback(lambda t, sid=record.session_id: self._task_done(sid, t))
        logger.info(
            "pairing_code_scheduled",
            session_id=record.session_id,
            delay=self.pairing_delay,
        )
        return task

    def _task_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]

    def _is_current(self, record: SessionRecord, handle: Any) -> bool:
        return self.store.get(record.session_id) is record and record.handle is handle

    async def _request_code(self, record: SessionRecord, handle: Any) -> None:
        session_id = record.session_id
        if self.pairing_delay:
            await asyncio.sleep(self.pairing_delay)

        if not self._is_current(record, handle):
            logger.info("pairing_request_skipped", session_id=session_id, reason="session_gone")
            return

        logger.info("pairing_code_requested", session_id=session_id, phone=record.phone_number)
        try:
            raw = await handle.request_pairing_code(record.phone_number)
            code = format_pairing_code(raw)
            if not code:
                raise PairingError("Empty pairing code")
        except Exception as exc:
            if self._is_current(record, handle):
                self._fail(record, str(exc) or type(exc).__name__)
            return

        if not self._is_current(record, handle):
            # Late result after deletion or reconnect
            logger.info("pairing_code_discarded", session_id=session_id)
            return

        if record.status != SessionStatus.AWAITING_CODE:
            logger.info("pairing_code_unused", session_id=session_id, status=record.status.value)
            self._resolve(session_id, code)
            return

        try:
            self.credentials.write_pairing(session_id, record.phone_number, code)
        except PersistenceError as exc:
            self._fail(record, f"Failed to persist pairing code: {exc}")
            return

        transition(record, SessionStatus.AWAITING_LINK)
        record.pairing_code = code
        record.error = None
        logger.info("pairing_code_generated", session_id=session_id, code=code)
        self._resolve(session_id, code)

        if self.send_code_message:
            try:
                await handle.send_text(
                    f"{record.phone_number}@s.whatsapp.net",
                    CODE_MESSAGE.format(code=code),
                )
                logger.info("pairing_code_message_sent", session_id=session_id)
            except Exception as exc:
                # Normal for sockets that are not linked yet
                logger.info("pairing_code_message_failed", session_id=session_id, error=str(exc))

    def _fail(self, record: SessionRecord, message: str) -> None:
        session_id = record.session_id
        logger.error("pairing_code_failed", session_id=session_id, error=message)
        record.error = message
        transition(record, SessionStatus.ERROR)
        try:
            self.credentials.write_error(session_id, record.phone_number, message)
        except PersistenceError as exc:
            logger.error("pairing_error_not_persisted", session_id=session_id, error=str(exc))
        self._reject(session_id, message)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_task(self, session_id: str) -> None:
        task = self._tasks.pop(session_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def cancel(self, session_id: str) -> None:
        """Cancel the scheduled request and drop the waiter unresolved."""
        self.cancel_task(session_id)
        self.discard(session_id)

    def abort(self, session_id: str, reason: str) -> None:
        """Cancel the scheduled request and fail any waiter with ``reason``."""
        self.cancel_task(session_id)
        self._reject(session_id, reason)

    def shutdown(self) -> None:
        for session_id in list(self._tasks):
            self.cancel_task(session_id)
        for session_id in list(self._waiters):
            self.discard(session_id)
