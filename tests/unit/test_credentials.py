"""
Unit tests for CredentialStore: session directories and status files.
"""

import json
import os
import time
from datetime import datetime, timezone

import pytest

from wagateway.session.credentials import ERROR_FILE, PAIRING_FILE, STARTUP_ERROR_FILE
from wagateway.session.exceptions import PersistenceError

SID = "session_919876543210_1700000000000"
PHONE = "919876543210"


class TestDirectories:

    def test_root_created(self, credentials):
        assert credentials.root.is_dir()

    def test_ensure_and_delete(self, credentials):
        path = credentials.ensure_dir(SID)
        assert path.is_dir()
        assert credentials.exists(SID)
        assert credentials.delete(SID) is True
        assert not path.exists()
        assert credentials.delete(SID) is False

    def test_invalid_session_id_rejected(self, credentials):
        with pytest.raises(PersistenceError):
            credentials.session_dir("../etc")
        assert credentials.exists("../etc") is False

    def test_list_session_ids_skips_foreign_entries(self, credentials):
        credentials.ensure_dir(SID)
        (credentials.root / "not-a-session").mkdir()
        (credentials.root / "session_1_2.txt").write_text("x")
        assert credentials.list_session_ids() == [SID]


class TestStatusFiles:

    def test_write_pairing(self, credentials):
        credentials.write_pairing(SID, PHONE, "ABCD-1234")
        data = credentials.read_status(SID)
        assert data["sessionId"] == SID
        assert data["phoneNumber"] == PHONE
        assert data["code"] == "ABCD-1234"
        assert data["status"] == "pending"
        assert isinstance(data["timestamp"], int)

    def test_write_error(self, credentials):
        credentials.write_error(SID, PHONE, "rate-overlimit")
        data = credentials.read_status(SID)
        assert data["status"] == "error"
        assert data["error"] == "rate-overlimit"

    def test_files_are_mutually_exclusive(self, credentials):
        credentials.write_pairing(SID, PHONE, "ABCD-1234")
        credentials.write_error(SID, PHONE, "boom")
        assert credentials.status_files(SID) == [ERROR_FILE]
        credentials.write_pairing(SID, PHONE, "WXYZ-9876")
        assert credentials.status_files(SID) == [PAIRING_FILE]

    def test_mark_connected_preserves_code(self, credentials):
        credentials.write_pairing(SID, PHONE, "ABCD-1234")
        connected_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        credentials.mark_connected(SID, PHONE, connected_at)
        data = credentials.read_status(SID)
        assert data["status"] == "connected"
        assert data["code"] == "ABCD-1234"
        assert data["connectedAt"] == int(connected_at.timestamp() * 1000)

    def test_mark_connected_replaces_error_file(self, credentials):
        credentials.write_error(SID, PHONE, "boom")
        credentials.mark_connected(SID, PHONE, datetime.now(timezone.utc))
        assert credentials.status_files(SID) == [PAIRING_FILE]
        assert credentials.read_status(SID)["code"] is None

    def test_start_error_without_pairing_file(self, credentials):
        credentials.write_start_error(SID, PHONE, "bridge down")
        assert credentials.status_files(SID) == [ERROR_FILE]
        data = credentials.read_status(SID)
        assert data["status"] == "failed"
        assert data["error"] == "bridge down"

    def test_start_error_keeps_pairing_file(self, credentials):
        credentials.write_pairing(SID, PHONE, "ABCD-1234")
        credentials.mark_connected(SID, PHONE, datetime.now(timezone.utc))

        credentials.write_start_error(SID, PHONE, "bridge down")

        assert credentials.status_files(SID) == [PAIRING_FILE]
        assert (credentials.session_dir(SID) / STARTUP_ERROR_FILE).exists()
        assert credentials.read_status(SID)["code"] == "ABCD-1234"

        credentials.mark_connected(SID, PHONE, datetime.now(timezone.utc))
        assert not (credentials.session_dir(SID) / STARTUP_ERROR_FILE).exists()
        assert credentials.read_status(SID)["code"] == "ABCD-1234"

    def test_no_temp_files_left(self, credentials):
        credentials.write_pairing(SID, PHONE, "ABCD-1234")
        credentials.mark_connected(SID, PHONE, datetime.now(timezone.utc))
        names = sorted(p.name for p in credentials.session_dir(SID).iterdir())
        assert names == [PAIRING_FILE]

    def test_read_status_missing(self, credentials):
        assert credentials.read_status(SID) is None

    def test_corrupt_file_raises_persistence_error(self, credentials):
        path = credentials.ensure_dir(SID) / PAIRING_FILE
        path.write_text("{not json")
        with pytest.raises(PersistenceError):
            credentials.read_status(SID)

    def test_written_file_is_plain_json(self, credentials):
        credentials.write_pairing(SID, PHONE, "ABCD-1234")
        with open(credentials.session_dir(SID) / PAIRING_FILE, encoding="utf-8") as fh:
            assert json.load(fh)["code"] == "ABCD-1234"


class TestCleanupStale:

    def _age(self, path, hours):
        old = time.time() - hours * 3600
        os.utime(path, (old, old))

    def test_removes_only_old_directories(self, credentials):
        old_sid = "session_919876543210_1600000000000"
        credentials.ensure_dir(old_sid)
        credentials.ensure_dir(SID)
        self._age(credentials.session_dir(old_sid), 25)

        removed = credentials.cleanup_stale(max_age_hours=24)

        assert removed == [old_sid]
        assert not credentials.exists(old_sid)
        assert credentials.exists(SID)

    def test_nothing_to_remove(self, credentials):
        credentials.ensure_dir(SID)
        assert credentials.cleanup_stale(24) == []
