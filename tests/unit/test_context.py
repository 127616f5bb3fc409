"""
Unit tests for GatewayContext wiring (wagateway/context.py).
"""

from datetime import datetime, timezone

import pytest

from wagateway.context import GatewayContext
from wagateway.session.models import SESSION_ID_RE, SessionRecord, make_session_id
from wagateway.transport.bridge import BridgeTransport

from tests.conftest import PHONE

FIXED = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class _FrozenDatetime(datetime):
    @classmethod
    def now(cls, tz=None):
        return FIXED


class TestBuild:

    def test_defaults_to_bridge_transport(self, gateway_config):
        ctx = GatewayContext.build(gateway_config)
        assert isinstance(ctx.transport, BridgeTransport)
        assert ctx.admission.max_sessions == 50
        assert ctx.lifecycle.max_retries == gateway_config.sessions.max_retries

    def test_connected_message_flag_reaches_notifier(self, gateway_config, fake_transport):
        gateway_config.sessions.send_connected_message = True
        ctx = GatewayContext.build(gateway_config, transport=fake_transport)
        assert ctx.notifier.send_connected_message is True
        assert ctx.lifecycle.max_sessions == gateway_config.sessions.max_sessions

    def test_uses_given_transport(self, gateway_config, fake_transport):
        ctx = GatewayContext.build(gateway_config, transport=fake_transport)
        assert ctx.transport is fake_transport
        assert ctx.uptime >= 0


class TestAllocateSessionId:

    def test_format(self, gateway_config, fake_transport):
        ctx = GatewayContext.build(gateway_config, transport=fake_transport)
        match = SESSION_ID_RE.match(ctx.allocate_session_id(PHONE))
        assert match is not None
        assert match.group(1) == PHONE

    def test_skips_ids_in_store_and_on_disk(self, gateway_config, fake_transport, monkeypatch):
        monkeypatch.setattr("wagateway.context.datetime", _FrozenDatetime)
        ctx = GatewayContext.build(gateway_config, transport=fake_transport)
        millis = int(FIXED.timestamp() * 1000)
        ctx.store.put(SessionRecord(session_id=make_session_id(PHONE, FIXED), phone_number=PHONE))
        ctx.credentials.ensure_dir(f"session_{PHONE}_{millis + 1}")

        assert ctx.allocate_session_id(PHONE) == f"session_{PHONE}_{millis + 2}"


class TestBackground:

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, gateway_config, fake_transport):
        ctx = GatewayContext.build(gateway_config, transport=fake_transport)
        ctx.start_background()
        assert len(ctx._loops) == 2

        await ctx.shutdown()

        assert ctx._loops == []
        assert fake_transport.closed is True
