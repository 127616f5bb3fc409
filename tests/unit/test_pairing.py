"""
Unit tests for the pairing code orchestrator.
"""

import asyncio

import pytest

from wagateway.session.exceptions import PairingError, PairingTimeoutError
from wagateway.session.models import SessionRecord, SessionStatus
from wagateway.session.pairing import format_pairing_code

from tests.conftest import FakeHandle, PHONE

SID = "session_919876543210_1700000000000"


def _attach(gateway):
    """Track a record with a live handle, as the lifecycle manager would."""
    record = SessionRecord(session_id=SID, phone_number=PHONE)
    handle = FakeHandle(SID, PHONE)
    record.handle = handle
    gateway.store.put(record)
    return record, handle


class TestFormatPairingCode:

    def test_eight_chars(self):
        assert format_pairing_code("ABCD1234") == "ABCD-1234"

    def test_short_tail_kept(self):
        assert format_pairing_code("ABCD12345") == "ABCD-1234-5"

    def test_shorter_than_group(self):
        assert format_pairing_code("ABC") == "ABC"

    def test_already_grouped(self):
        assert format_pairing_code("ABCD-1234") == "ABCD-1234"

    def test_empty_unchanged(self):
        assert format_pairing_code("") == ""
        assert format_pairing_code(None) is None


class TestWaiters:

    @pytest.mark.asyncio
    async def test_wait_without_register_raises(self, gateway):
        with pytest.raises(PairingError):
            await gateway.pairing.wait_for_code(SID, timeout=0.1)

    @pytest.mark.asyncio
    async def test_timeout_removes_waiter(self, gateway):
        gateway.pairing.register(SID)
        with pytest.raises(PairingTimeoutError):
            await gateway.pairing.wait_for_code(SID, timeout=0.05)
        assert not gateway.pairing.has_waiter(SID)

    @pytest.mark.asyncio
    async def test_timeout_is_a_timeout_error(self, gateway):
        gateway.pairing.register(SID)
        with pytest.raises(TimeoutError):
            await gateway.pairing.wait_for_code(SID, timeout=0.01)

    @pytest.mark.asyncio
    async def test_discard_drops_waiter(self, gateway):
        gateway.pairing.register(SID)
        gateway.pairing.discard(SID)
        assert not gateway.pairing.has_waiter(SID)

    @pytest.mark.asyncio
    async def test_abort_fails_waiter(self, gateway):
        gateway.pairing.register(SID)
        gateway.pairing.abort(SID, "Session deleted")
        with pytest.raises(PairingError, match="Session deleted"):
            await gateway.pairing.wait_for_code(SID, timeout=1)
        assert not gateway.pairing.has_waiter(SID)


class TestSchedule:

    @pytest.mark.asyncio
    async def test_success_resolves_waiter_and_writes_file(self, gateway):
        record, handle = _attach(gateway)
        gateway.pairing.register(SID)

        gateway.pairing.schedule(record, handle)
        assert record.status == SessionStatus.AWAITING_CODE

        code = await gateway.pairing.wait_for_code(SID, timeout=1)

        assert code == "ABCD-1234"
        assert handle.pairing_requests == [PHONE]
        assert record.status == SessionStatus.AWAITING_LINK
        assert record.pairing_code == "ABCD-1234"
        status = gateway.credentials.read_status(SID)
        assert status["status"] == "pending"
        assert status["code"] == "ABCD-1234"
        assert status["phoneNumber"] == PHONE

    @pytest.mark.asyncio
    async def test_failure_writes_error_file(self, gateway):
        record, handle = _attach(gateway)
        handle.code_error = "rate-overlimit"
        gateway.pairing.register(SID)

        gateway.pairing.schedule(record, handle)
        with pytest.raises(PairingError, match="rate-overlimit"):
            await gateway.pairing.wait_for_code(SID, timeout=1)

        assert record.status == SessionStatus.ERROR
        assert record.error == "rate-overlimit"
        assert gateway.credentials.status_files(SID) == ["error.json"]

    @pytest.mark.asyncio
    async def test_late_code_after_timeout_is_harmless(self, gateway):
        record, handle = _attach(gateway)
        handle.code_delay = 0.1
        gateway.pairing.register(SID)

        task = gateway.pairing.schedule(record, handle)
        with pytest.raises(PairingTimeoutError):
            await gateway.pairing.wait_for_code(SID, timeout=0.01)
        await task

        # The background attempt still completes and is visible by polling
        assert record.status == SessionStatus.AWAITING_LINK
        assert gateway.credentials.read_status(SID)["code"] == "ABCD-1234"

    @pytest.mark.asyncio
    async def test_removed_session_is_not_touched(self, gateway):
        record, handle = _attach(gateway)
        gateway.pairing.pairing_delay = 0.05
        task = gateway.pairing.schedule(record, handle)
        gateway.store.remove(SID)
        await task

        assert handle.pairing_requests == []
        assert gateway.credentials.read_status(SID) is None

    @pytest.mark.asyncio
    async def test_cancel_stops_request(self, gateway):
        record, handle = _attach(gateway)
        gateway.pairing.pairing_delay = 1
        gateway.pairing.register(SID)
        task = gateway.pairing.schedule(record, handle)
        assert gateway.pairing.is_scheduled(SID)

        gateway.pairing.cancel(SID)
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not gateway.pairing.has_waiter(SID)
        assert handle.pairing_requests == []

    @pytest.mark.asyncio
    async def test_code_message_sent_when_enabled(self, gateway):
        record, handle = _attach(gateway)
        gateway.pairing.send_code_message = True
        gateway.pairing.register(SID)

        task = gateway.pairing.schedule(record, handle)
        await gateway.pairing.wait_for_code(SID, timeout=1)
        await task

        assert len(handle.sent) == 1
        jid, text = handle.sent[0]
        assert jid == f"{PHONE}@s.whatsapp.net"
        assert "ABCD-1234" in text
