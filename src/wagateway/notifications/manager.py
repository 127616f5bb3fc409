"""
Notification Manager for the WhatsApp pairing gateway.

Runs the follow-up actions of a session's life: newsletter follows after a
connect, webhooks when a session connects or is dropped, and forwarding of
inbound WhatsApp events to the message-handling service.

All notification methods are async and designed to be fire-and-forget:
they log success/failure but never raise exceptions to the caller.
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from wagateway.config.models import WebhookConfig

logger = structlog.get_logger("notifications")

CONNECTED_MESSAGE = (
    "*Bot Connected Successfully!*\n\n"
    "Time: {time}\n"
    "Status: Online and Ready!\n\n"
    "Session ID: {session_id}"
)


class NotificationManager:
    """Manages newsletter follows and webhook notifications for sessions.

    Usage::

        notifier = NotificationManager(config.webhooks, config.newsletters)
        await notifier.on_session_connected(record, handle)
    """

    def __init__(
        self,
        webhooks: Optional[WebhookConfig] = None,
        newsletters: Optional[List[str]] = None,
        send_connected_message: bool = False,
    ) -> None:
        self.webhooks = webhooks or WebhookConfig()
        self.newsletters = list(newsletters or [])
        self.send_connected_message = send_connected_message

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def on_session_connected(self, record: Any, handle: Any) -> None:
        """Called after a session reaches ``connected``."""
        logger.info("notification_session_connected", session_id=record.session_id)
        if self.send_connected_message:
            await self.notify_own_chat(record, handle)
        await self.follow_newsletters(record.session_id, handle)
        await self.trigger_webhook("on_connected", self._session_payload(record))

    async def on_session_closed(self, record: Any, reason: str) -> None:
        """Called after a session is dropped for good."""
        logger.info("notification_session_closed", session_id=record.session_id, reason=reason)
        payload = self._session_payload(record)
        payload["reason"] = reason
        await self.trigger_webhook("on_closed", payload)

    async def forward_event(self, handle: Any, event: str, payload: Any) -> None:
        """Default inbound handler: relay WhatsApp events to ``on_message``."""
        await self.trigger_webhook(
            "on_message",
            {
                "sessionId": getattr(handle, "session_id", None),
                "phoneNumber": getattr(handle, "phone_number", None),
                "event": event,
                "data": payload,
            },
        )

    async def notify_own_chat(self, record: Any, handle: Any) -> bool:
        """Tell the linked account it is connected. Best effort."""
        jid = f"{record.phone_number}@s.whatsapp.net"
        text = CONNECTED_MESSAGE.format(
            time=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
            session_id=record.session_id,
        )
        try:
            await handle.send_text(jid, text)
        except Exception as exc:
            logger.warning("connected_message_failed", session_id=record.session_id, error=str(exc))
            return False
        logger.info("connected_message_sent", session_id=record.session_id)
        return True

    async def follow_newsletters(self, session_id: str, handle: Any) -> int:
        """Follow every configured newsletter. Returns how many succeeded."""
        followed = 0
        for jid in self.newsletters:
            try:
                await handle.follow_newsletter(jid)
                followed += 1
                logger.info("newsletter_followed", session_id=session_id, newsletter=jid)
            except Exception as exc:
                logger.warning(
                    "newsletter_follow_failed",
                    session_id=session_id,
                    newsletter=jid,
                    error=str(exc),
                )
        return followed

    async def trigger_webhook(self, event_type: str, payload: Dict[str, Any]) -> None:
        """POST ``payload`` to the webhook configured for ``event_type``.

        Includes ``X-Webhook-Signature`` header (HMAC-SHA256 of body).
        """
        wh_cfg = self.webhooks
        if not wh_cfg.enabled:
            logger.debug("webhook_skipped", reason="webhooks_disabled", event_type=event_type)
            return

        url = getattr(wh_cfg, event_type, "")
        if not url:
            logger.debug("webhook_skipped", reason="no_url", event_type=event_type)
            return

        try:
            body = {
                "event": event_type,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "payload": payload,
            }
            body_bytes = json.dumps(body, ensure_ascii=False, default=str).encode("utf-8")
            headers: Dict[str, str] = {"Content-Type": "application/json"}

            if wh_cfg.secret:
                headers["X-Webhook-Signature"] = self.sign(wh_cfg.secret, body_bytes)

            timeout = aiohttp.ClientTimeout(total=wh_cfg.timeout_seconds)

            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.post(url, data=body_bytes, headers=headers) as resp:
                    logger.info(
                        "webhook_triggered",
                        event_type=event_type,
                        url=url,
                        status=resp.status,
                        session_id=payload.get("sessionId"),
                    )
        except Exception as exc:
            logger.error(
                "webhook_failed",
                event_type=event_type,
                url=url,
                error=str(exc),
                session_id=payload.get("sessionId"),
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def sign(secret: str, body: bytes) -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    @staticmethod
    def _session_payload(record: Any) -> Dict[str, Any]:
        return {
            "sessionId": record.session_id,
            "phoneNumber": record.phone_number,
            "status": record.status.value,
            "createdAt": record.created_at.isoformat(),
            "connectedAt": record.connected_at.isoformat() if record.connected_at else None,
        }
