"""
Unit tests for the session status state machine.
"""

import pytest

from wagateway.session.exceptions import InvalidTransitionError
from wagateway.session.models import SessionRecord, SessionStatus
from wagateway.session.status import ALLOWED_TRANSITIONS, is_terminal, transition, validate_transition


class TestSessionStatusEnum:

    def test_all_statuses_defined(self):
        assert SessionStatus.PENDING.value == "pending"
        assert SessionStatus.AWAITING_CODE.value == "awaiting_code"
        assert SessionStatus.AWAITING_LINK.value == "awaiting_link"
        assert SessionStatus.CONNECTED.value == "connected"
        assert SessionStatus.ERROR.value == "error"
        assert SessionStatus.CLOSED.value == "closed"

    def test_enum_count(self):
        assert len(SessionStatus) == 6

    def test_every_status_has_transition_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(SessionStatus)


class TestStateMachine:

    def test_pairing_path_allowed(self):
        validate_transition(SessionStatus.PENDING, SessionStatus.AWAITING_CODE)
        validate_transition(SessionStatus.AWAITING_CODE, SessionStatus.AWAITING_LINK)
        validate_transition(SessionStatus.AWAITING_LINK, SessionStatus.CONNECTED)

    def test_reconnect_path_allowed(self):
        """Connected → Pending when the transport drops."""
        validate_transition(SessionStatus.CONNECTED, SessionStatus.PENDING)

    @pytest.mark.parametrize("status", [s for s in SessionStatus if s != SessionStatus.CLOSED])
    def test_any_live_status_can_close(self, status):
        validate_transition(status, SessionStatus.CLOSED)

    def test_closed_is_terminal(self):
        assert is_terminal(SessionStatus.CLOSED)
        assert not is_terminal(SessionStatus.CONNECTED)

    def test_closed_to_pending_raises(self):
        with pytest.raises(InvalidTransitionError, match="closed → pending"):
            validate_transition(SessionStatus.CLOSED, SessionStatus.PENDING)

    def test_connected_to_awaiting_code_raises(self):
        with pytest.raises(InvalidTransitionError):
            validate_transition(SessionStatus.CONNECTED, SessionStatus.AWAITING_CODE)


class TestTransition:

    def _record(self, status=SessionStatus.AWAITING_LINK, code="ABCD-1234"):
        record = SessionRecord(session_id="session_919876543210_1700000000000", phone_number="919876543210")
        record.status = status
        record.pairing_code = code
        return record

    def test_connected_clears_code(self):
        record = self._record()
        transition(record, SessionStatus.CONNECTED)
        assert record.status == SessionStatus.CONNECTED
        assert record.pairing_code is None

    def test_pending_keeps_code(self):
        record = self._record()
        transition(record, SessionStatus.PENDING)
        assert record.pairing_code == "ABCD-1234"

    def test_same_status_is_noop(self):
        record = self._record(status=SessionStatus.CLOSED)
        transition(record, SessionStatus.CLOSED)
        assert record.status == SessionStatus.CLOSED

    def test_invalid_transition_leaves_record_untouched(self):
        record = self._record(status=SessionStatus.CLOSED, code=None)
        with pytest.raises(InvalidTransitionError):
            transition(record, SessionStatus.CONNECTED)
        assert record.status == SessionStatus.CLOSED
