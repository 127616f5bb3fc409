"""
Transport contract consumed by the session core.

The WhatsApp protocol itself lives in an external library. The core only
needs: load auth state from a credential directory, open a connection for a
phone number, subscribe to its events, ask for a pairing code, and close it.
"""

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from wagateway.jsonfile import atomic_write_json

logger = structlog.get_logger("transport")

Listener = Callable[[Any], Union[Awaitable[None], None]]

# Event names emitted by connection handles
CONNECTION_UPDATE = "connection.update"
CREDS_UPDATE = "creds.update"
MESSAGES_UPSERT = "messages.upsert"
GROUP_PARTICIPANTS_UPDATE = "group-participants.update"
STATUS_UPDATE = "status.update"

INBOUND_EVENTS = (MESSAGES_UPSERT, GROUP_PARTICIPANTS_UPDATE, STATUS_UPDATE)

CREDS_FILE = "creds.json"


class DisconnectReason(IntEnum):
    """Status codes reported with a ``close`` update."""
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    FORBIDDEN = 403
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    UNAVAILABLE_SERVICE = 503


AUTH_TERMINATED_CODES = {DisconnectReason.LOGGED_OUT, DisconnectReason.FORBIDDEN}


@dataclass
class ConnectionUpdate:
    """Payload of a ``connection.update`` event."""

    connection: Optional[str] = None  # connecting | open | close
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_logged_out(self) -> bool:
        return self.status_code in AUTH_TERMINATED_CODES

    @classmethod
    def from_payload(cls, payload: Any) -> "ConnectionUpdate":
        if isinstance(payload, cls):
            return payload
        if not isinstance(payload, dict):
            # Unusable update, carries no connection state
            payload = {}
        status_code = payload.get("statusCode", payload.get("status_code"))
        last = payload.get("lastDisconnect") or {}
        if status_code is None and isinstance(last, dict):
            status_code = last.get("statusCode")
        error = payload.get("error")
        if error is None and isinstance(last, dict):
            error = last.get("error")
        return cls(
            connection=payload.get("connection"),
            status_code=int(status_code) if status_code is not None else None,
            error=error,
        )


class EventEmitter:
    """Sequential async event emitter.

    Listeners run one after another in registration order, so a single
    connection's events are processed in the order they were emitted.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = asyncio.Lock()

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    async def emit(self, event: str, payload: Any = None) -> None:
        async with self._lock:
            for listener in list(self._listeners.get(event, [])):
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result


class FileAuthState:
    """Credentials kept as ``creds.json`` in a session's credential directory."""

    def __init__(self, folder: Path, creds: Optional[Dict[str, Any]] = None) -> None:
        self.folder = Path(folder)
        self.creds: Dict[str, Any] = creds or {}

    @classmethod
    def load(cls, folder: Union[str, Path]) -> "FileAuthState":
        folder = Path(folder)
        path = folder / CREDS_FILE
        creds: Dict[str, Any] = {}
        if path.exists():
            with open(path, "r", encoding="utf-8") as fh:
                creds = json.load(fh)
        return cls(folder, creds)

    @property
    def registered(self) -> bool:
        return bool(self.creds.get("registered"))

    def save(self, creds: Optional[Dict[str, Any]] = None) -> None:
        if creds:
            self.creds.update(creds)
        atomic_write_json(self.folder / CREDS_FILE, self.creds)


class ConnectionHandle(ABC):
    """One live protocol connection."""

    def __init__(self, session_id: str, phone_number: str) -> None:
        self.session_id = session_id
        self.phone_number = phone_number
        self.events = EventEmitter()
        self.closed = False

    def on(self, event: str, listener: Listener) -> None:
        self.events.on(event, listener)

    @abstractmethod
    async def request_pairing_code(self, phone_number: str) -> str:
        """Ask the server for a pairing code. Returns the raw code."""

    @abstractmethod
    async def send_text(self, jid: str, text: str) -> None:
        ...

    @abstractmethod
    async def follow_newsletter(self, jid: str) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class Transport(ABC):
    """Factory for connection handles."""

    def load_auth_state(self, folder: Union[str, Path]) -> FileAuthState:
        return FileAuthState.load(folder)

    @abstractmethod
    async def open_connection(
        self,
        session_id: str,
        phone_number: str,
        auth_state: FileAuthState,
    ) -> ConnectionHandle:
        ...

    async def aclose(self) -> None:
        """Release transport-wide resources."""
