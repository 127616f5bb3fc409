"""
Shared fixtures for gateway tests.

FakeTransport stands in for the WhatsApp protocol library: it hands out
FakeHandle objects whose events the tests emit by hand.
"""

import asyncio
import time
from types import SimpleNamespace
from typing import List, Optional

import pytest

from wagateway.config.models import GatewayConfig, SessionsConfig
from wagateway.notifications.manager import NotificationManager
from wagateway.session.credentials import CredentialStore
from wagateway.session.exceptions import TransportError
from wagateway.session.lifecycle import SessionLifecycleManager
from wagateway.session.pairing import PairingOrchestrator
from wagateway.session.store import SessionStore
from wagateway.transport.base import (
    CONNECTION_UPDATE,
    CREDS_UPDATE,
    ConnectionHandle,
    FileAuthState,
    Transport,
)

PHONE = "919876543210"


# ============ FAKE TRANSPORT ============


class FakeHandle(ConnectionHandle):
    """Connection handle driven by the test."""

    def __init__(self, session_id: str, phone_number: str, code: str = "ABCD1234") -> None:
        super().__init__(session_id, phone_number)
        self.code = code
        self.code_error: Optional[str] = None
        self.code_delay = 0.0
        self.pairing_requests: List[str] = []
        self.sent: List[tuple] = []
        self.followed: List[str] = []

    async def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        if self.code_delay:
            await asyncio.sleep(self.code_delay)
        if self.code_error:
            raise TransportError(self.code_error)
        return self.code

    async def send_text(self, jid: str, text: str) -> None:
        self.sent.append((jid, text))

    async def follow_newsletter(self, jid: str) -> None:
        self.followed.append(jid)

    async def close(self) -> None:
        self.closed = True

    # Helpers for tests

    async def open(self) -> None:
        await self.events.emit(CONNECTION_UPDATE, {"connection": "open"})

    async def drop(self, status_code: int = 428, error: str = "Connection Closed") -> None:
        await self.events.emit(
            CONNECTION_UPDATE,
            {"connection": "close", "lastDisconnect": {"statusCode": status_code, "error": error}},
        )

    async def register(self) -> None:
        await self.events.emit(CREDS_UPDATE, {"registered": True, "me": {"id": self.phone_number}})


class FakeTransport(Transport):
    """Opens FakeHandles; ``fail_open`` makes the next opens raise."""

    def __init__(self, code: str = "ABCD1234") -> None:
        self.code = code
        self.code_error: Optional[str] = None
        self.code_delay = 0.0
        self.fail_open: Optional[Exception] = None
        self.handles: List[FakeHandle] = []
        self.closed = False

    async def open_connection(self, session_id: str, phone_number: str, auth_state: FileAuthState) -> FakeHandle:
        if self.fail_open is not None:
            raise self.fail_open
        handle = FakeHandle(session_id, phone_number, code=self.code)
        handle.code_error = self.code_error
        handle.code_delay = self.code_delay
        self.handles.append(handle)
        return handle

    def handles_for(self, session_id: str) -> List[FakeHandle]:
        return [h for h in self.handles if h.session_id == session_id]

    def latest(self, session_id: str) -> FakeHandle:
        return self.handles_for(session_id)[-1]

    async def aclose(self) -> None:
        self.closed = True


# ============ HELPERS ============


async def settle_reconnect(lifecycle: SessionLifecycleManager, session_id: str) -> None:
    """Wait for the scheduled reconnect of ``session_id`` to finish."""
    task = lifecycle._reconnects.get(session_id)
    if task is not None:
        await task


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` from a sync test until it holds."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# ============ FIXTURES ============


@pytest.fixture
def phone():
    return PHONE


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def credentials(tmp_path):
    return CredentialStore(str(tmp_path / "sessions"))


@pytest.fixture
def gateway(tmp_path, fake_transport):
    """Lifecycle manager wired to a FakeTransport, with zero delays."""
    store = SessionStore()
    credentials = CredentialStore(str(tmp_path / "sessions"))
    pairing = PairingOrchestrator(store, credentials, pairing_delay=0)
    notifier = NotificationManager(newsletters=["120363000000000000@newsletter"])
    lifecycle = SessionLifecycleManager(
        store,
        credentials,
        fake_transport,
        pairing,
        notifier=notifier,
        max_retries=3,
        reconnect_delay=0,
    )
    return SimpleNamespace(
        store=store,
        credentials=credentials,
        transport=fake_transport,
        pairing=pairing,
        notifier=notifier,
        lifecycle=lifecycle,
    )


@pytest.fixture
def gateway_config(tmp_path):
    """Config with short delays for HTTP-level tests."""
    return GatewayConfig(
        sessions=SessionsConfig(
            root=str(tmp_path / "sessions"),
            reconnect_delay=0.01,
            pairing_delay=0.01,
            pairing_timeout=2.0,
            initial_cleanup_delay=3600,
        ),
    )
