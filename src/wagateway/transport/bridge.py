"""
Bridge transport: drives a Baileys sidecar process over HTTP.

The sidecar owns the WhatsApp sockets. We call it to open/close sockets and
to request pairing codes; it calls us back at ``POST /api/bridge/events``
with ``{sessionId, event, data}`` which :meth:`BridgeTransport.dispatch`
routes to the matching handle.

Sidecar endpoints:
    POST   /sessions                              - open a socket
    POST   /sessions/{id}/pairing-code            - request a pairing code
    POST   /sessions/{id}/messages                - send a text message
    POST   /sessions/{id}/newsletters/follow      - follow a newsletter
    DELETE /sessions/{id}                         - close the socket

A 410 answer means the stored credentials were logged out remotely.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from wagateway.session.exceptions import AuthTerminated, TransportError
from wagateway.transport.base import ConnectionHandle, FileAuthState, Transport

logger = structlog.get_logger("transport")

# Sidecar answer when the stored credentials were logged out remotely
LOGGED_OUT_STATUS = 410


class BridgeConnection(ConnectionHandle):
    """Handle for one sidecar socket."""

    def __init__(self, transport: "BridgeTransport", session_id: str, phone_number: str) -> None:
        super().__init__(session_id, phone_number)
        self._transport = transport

    async def request_pairing_code(self, phone_number: str) -> str:
        data = await self._transport._call(
            "POST",
            f"/sessions/{self.session_id}/pairing-code",
            json={"phoneNumber": phone_number},
        )
        code = (data or {}).get("code")
        if not code:
            raise TransportError("Bridge returned no pairing code")
        return str(code)

    async def send_text(self, jid: str, text: str) -> None:
        await self._transport._call(
            "POST",
            f"/sessions/{self.session_id}/messages",
            json={"jid": jid, "text": text},
        )

    async def follow_newsletter(self, jid: str) -> None:
        await self._transport._call(
            "POST",
            f"/sessions/{self.session_id}/newsletters/follow",
            json={"jid": jid},
        )

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._transport._forget(self)
        await self._transport._call("DELETE", f"/sessions/{self.session_id}")


class BridgeTransport(Transport):
    """httpx client for the sidecar plus the inbound event router."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        headers = {"X-Bridge-Token": token} if token else {}
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout_seconds,
        )
        self._connections: Dict[str, BridgeConnection] = {}

    async def open_connection(
        self,
        session_id: str,
        phone_number: str,
        auth_state: FileAuthState,
    ) -> ConnectionHandle:
        previous = self._connections.get(session_id)
        if previous is not None and not previous.closed:
            # Only one socket per session on the sidecar
            await previous.close()

        handle = BridgeConnection(self, session_id, phone_number)
        self._connections[session_id] = handle
        try:
            await self._call(
                "POST",
                "/sessions",
                json={
                    "sessionId": session_id,
                    "phoneNumber": phone_number,
                    "authDir": str(auth_state.folder.resolve()),
                },
            )
        except TransportError:
            self._forget(handle)
            raise
        logger.info("bridge_connection_opened", session_id=session_id)
        return handle

    def get(self, session_id: str) -> Optional[BridgeConnection]:
        return self._connections.get(session_id)

    async def dispatch(self, session_id: str, event: str, data: Any) -> bool:
        """Deliver a sidecar event to its handle. False if nobody is listening."""
        handle = self._connections.get(session_id)
        if handle is None or handle.closed:
            logger.debug("bridge_event_unrouted", session_id=session_id, event_name=event)
            return False
        await handle.events.emit(event, data)
        return True

    def _forget(self, handle: BridgeConnection) -> None:
        if self._connections.get(handle.session_id) is handle:
            del self._connections[handle.session_id]

    async def _call(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        try:
            resp = await self._client.request(method, path, json=json)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == LOGGED_OUT_STATUS:
                logger.warning("bridge_session_logged_out", method=method, path=path)
                raise AuthTerminated(f"Bridge reports credentials logged out for {path}") from exc
            logger.warning(
                "bridge_call_failed",
                method=method,
                path=path,
                status=exc.response.status_code,
            )
            raise TransportError(
                f"Bridge {method} {path} failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("bridge_unreachable", method=method, path=path, error=str(exc))
            raise TransportError(f"Bridge unreachable: {exc}") from exc

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    async def aclose(self) -> None:
        await self._client.aclose()
        self._connections.clear()
        logger.info("bridge_transport_closed")
