"""
GatewayContext - the one object that owns the gateway's runtime state.

Built once at process start and handed to the HTTP layer. Holds the session
store, credential store, admission controller, transport, pairing
orchestrator, notifier and lifecycle manager, and runs the periodic sweeps.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import structlog

from wagateway.config.models import GatewayConfig
from wagateway.notifications.manager import NotificationManager
from wagateway.session.admission import AdmissionController
from wagateway.session.credentials import CredentialStore
from wagateway.session.lifecycle import MessageHandler, SessionLifecycleManager
from wagateway.session.models import make_session_id
from wagateway.session.pairing import PairingOrchestrator
from wagateway.session.store import SessionStore
from wagateway.transport.base import Transport
from wagateway.transport.bridge import BridgeTransport

logger = structlog.get_logger("server")


class GatewayContext:
    """Explicitly owned runtime state, torn down by ``shutdown()``."""

    def __init__(
        self,
        config: GatewayConfig,
        store: SessionStore,
        credentials: CredentialStore,
        admission: AdmissionController,
        transport: Transport,
        pairing: PairingOrchestrator,
        notifier: NotificationManager,
        lifecycle: SessionLifecycleManager,
    ) -> None:
        self.config = config
        self.store = store
        self.credentials = credentials
        self.admission = admission
        self.transport = transport
        self.pairing = pairing
        self.notifier = notifier
        self.lifecycle = lifecycle
        self.started_at = time.monotonic()
        self._loops: List[asyncio.Task] = []

    @classmethod
    def build(
        cls,
        config: Optional[GatewayConfig] = None,
        transport: Optional[Transport] = None,
        message_handler: Optional[MessageHandler] = None,
    ) -> "GatewayContext":
        """Wire every component from ``config``.

        Args:
            config: Gateway configuration (defaults when None).
            transport: Protocol transport. Defaults to the sidecar bridge.
            message_handler: Receives inbound WhatsApp events. Defaults to
                forwarding them to the ``on_message`` webhook.
        """
        config = config or GatewayConfig()
        sessions_cfg = config.sessions

        store = SessionStore()
        credentials = CredentialStore(sessions_cfg.root)
        admission = AdmissionController(store, sessions_cfg.max_sessions)
        if transport is None:
            transport = BridgeTransport(
                config.transport.bridge_url,
                token=config.transport.bridge_token,
                timeout_seconds=config.transport.timeout_seconds,
            )
        pairing = PairingOrchestrator(
            store,
            credentials,
            pairing_delay=sessions_cfg.pairing_delay,
            send_code_message=sessions_cfg.send_code_message,
        )
        notifier = NotificationManager(
            config.webhooks,
            config.newsletters,
            send_connected_message=sessions_cfg.send_connected_message,
        )
        lifecycle = SessionLifecycleManager(
            store,
            credentials,
            transport,
            pairing,
            notifier=notifier,
            message_handler=message_handler,
            max_retries=sessions_cfg.max_retries,
            reconnect_delay=sessions_cfg.reconnect_delay,
            max_sessions=sessions_cfg.max_sessions,
        )
        logger.info(
            "gateway_context_built",
            transport=type(transport).__name__,
            max_sessions=sessions_cfg.max_sessions,
        )
        return cls(config, store, credentials, admission, transport, pairing, notifier, lifecycle)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    def allocate_session_id(self, phone_number: str) -> str:
        """``session_<phone>_<millis>``, bumping the millis until unused."""
        moment = datetime.now(timezone.utc)
        session_id = make_session_id(phone_number, moment)
        while session_id in self.store or self.credentials.exists(session_id):
            moment += timedelta(milliseconds=1)
            session_id = make_session_id(phone_number, moment)
        return session_id

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    def start_background(self) -> None:
        """Reconcile disk state and start the periodic sweeps."""
        sessions_cfg = self.config.sessions
        self.lifecycle.reconcile(resume=sessions_cfg.resume_on_startup)
        self._loops = [
            asyncio.create_task(self._cleanup_loop()),
            asyncio.create_task(self._pending_loop()),
        ]
        logger.info("background_loops_started", count=len(self._loops))

    async def _cleanup_loop(self) -> None:
        sessions_cfg = self.config.sessions
        try:
            await asyncio.sleep(sessions_cfg.initial_cleanup_delay)
            while True:
                try:
                    await self.lifecycle.cleanup_stale(sessions_cfg.stale_after_hours)
                except Exception as exc:
                    logger.error("stale_cleanup_failed", error=str(exc))
                await asyncio.sleep(sessions_cfg.cleanup_interval)
        except asyncio.CancelledError:
            pass  # Graceful shutdown

    async def _pending_loop(self) -> None:
        sessions_cfg = self.config.sessions
        try:
            while True:
                await asyncio.sleep(sessions_cfg.pending_sweep_interval)
                try:
                    await self.lifecycle.expire_pending(sessions_cfg.pending_ttl_minutes)
                except Exception as exc:
                    logger.error("pending_sweep_failed", error=str(exc))
        except asyncio.CancelledError:
            pass  # Graceful shutdown

    async def shutdown(self) -> None:
        for task in self._loops:
            if not task.done():
                task.cancel()
        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

        await self.lifecycle.shutdown()
        try:
            await self.transport.aclose()
        except Exception as exc:
            logger.warning("transport_close_failed", error=str(exc))
        logger.info("gateway_context_shutdown")
