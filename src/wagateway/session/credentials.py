"""
CredentialStore - per-session credential directories and status files.

Each session owns ``<root>/<session_id>/``. The transport keeps its auth
material there (opaque to us) and this module keeps exactly one status file
next to it:

    pairing.json   {sessionId, phoneNumber, code, timestamp, status, connectedAt?}
    error.json     {sessionId, phoneNumber, error, timestamp, status}

A failed connection start of a session that already has ``pairing.json``
is written to ``startup-error.json`` beside it instead of replacing it.

The status file is the durable record that survives a restart. Writes go to
a temp file in the same directory and are swapped in with ``os.replace`` so a
poller never reads a half-written file.
"""

import json
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from wagateway.jsonfile import atomic_write_json
from wagateway.session.exceptions import PersistenceError
from wagateway.session.models import SESSION_ID_RE, to_millis

logger = structlog.get_logger("storage")

PAIRING_FILE = "pairing.json"
ERROR_FILE = "error.json"
STARTUP_ERROR_FILE = "startup-error.json"


def _now_millis() -> int:
    return int(time.time() * 1000)


class CredentialStore:
    """Owns the sessions root directory."""

    def __init__(self, root: str = "sessions") -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("credential_store_initialized", root=str(self.root))

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def session_dir(self, session_id: str) -> Path:
        if not SESSION_ID_RE.match(session_id):
            # Keeps ids from escaping the root (no separators, no dots)
            raise PersistenceError(f"Invalid session id: {session_id!r}")
        return self.root / session_id

    def ensure_dir(self, session_id: str) -> Path:
        path = self.session_dir(session_id)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("session_dir_create_failed", session_id=session_id, error=str(exc))
            raise PersistenceError(str(exc)) from exc
        return path

    def exists(self, session_id: str) -> bool:
        try:
            return self.session_dir(session_id).is_dir()
        except PersistenceError:
            return False

    def delete(self, session_id: str) -> bool:
        """Remove the session directory. Returns False if it did not exist."""
        path = self.session_dir(session_id)
        if not path.exists():
            return False
        try:
            shutil.rmtree(path)
        except OSError as exc:
            logger.error("session_dir_delete_failed", session_id=session_id, error=str(exc))
            raise PersistenceError(str(exc)) from exc
        logger.info("session_dir_deleted", session_id=session_id)
        return True

    def list_session_ids(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and SESSION_ID_RE.match(entry.name)
        )

    # ------------------------------------------------------------------
    # Status files
    # ------------------------------------------------------------------

    def _write_exclusive(self, session_id: str, filename: str, other: str, data: Dict[str, Any]) -> None:
        path = self.ensure_dir(session_id)
        try:
            # Drop the other shape first so both never coexist
            (path / other).unlink(missing_ok=True)
            atomic_write_json(path / filename, data)
        except OSError as exc:
            logger.error("status_file_write_failed", session_id=session_id, file=filename, error=str(exc))
            raise PersistenceError(str(exc)) from exc

    def write_pairing(self, session_id: str, phone_number: str, code: Optional[str]) -> Dict[str, Any]:
        data = {
            "sessionId": session_id,
            "phoneNumber": phone_number,
            "code": code,
            "timestamp": _now_millis(),
            "status": "pending",
        }
        self._write_exclusive(session_id, PAIRING_FILE, ERROR_FILE, data)
        logger.info("pairing_file_written", session_id=session_id)
        return data

    def write_error(self, session_id: str, phone_number: str, error: str, status: str = "error") -> Dict[str, Any]:
        data = {
            "sessionId": session_id,
            "phoneNumber": phone_number,
            "error": error,
            "timestamp": _now_millis(),
            "status": status,
        }
        self._write_exclusive(session_id, ERROR_FILE, PAIRING_FILE, data)
        logger.info("error_file_written", session_id=session_id, status=status)
        return data

    def write_start_error(self, session_id: str, phone_number: str, error: str) -> Dict[str, Any]:
        """Record a failed connection start.

        A session that already has ``pairing.json`` keeps it, so a later
        connect still finds the issued code. The failure goes to
        ``startup-error.json`` instead. Otherwise this is ``write_error``
        with status ``failed``.
        """
        path = self.ensure_dir(session_id)
        if not (path / PAIRING_FILE).exists():
            return self.write_error(session_id, phone_number, error, status="failed")

        data = {
            "sessionId": session_id,
            "phoneNumber": phone_number,
            "error": error,
            "timestamp": _now_millis(),
            "status": "failed",
        }
        try:
            atomic_write_json(path / STARTUP_ERROR_FILE, data)
        except OSError as exc:
            logger.error("status_file_write_failed", session_id=session_id, file=STARTUP_ERROR_FILE, error=str(exc))
            raise PersistenceError(str(exc)) from exc
        logger.info("startup_error_written", session_id=session_id)
        return data

    def mark_connected(self, session_id: str, phone_number: str, connected_at: datetime) -> Dict[str, Any]:
        """Flip ``pairing.json`` to connected, keeping the issued code."""
        existing = self._read_json(self.session_dir(session_id) / PAIRING_FILE)
        if existing is None:
            existing = {
                "sessionId": session_id,
                "phoneNumber": phone_number,
                "code": None,
                "timestamp": _now_millis(),
            }
        existing["status"] = "connected"
        existing["connectedAt"] = to_millis(connected_at)
        self._write_exclusive(session_id, PAIRING_FILE, ERROR_FILE, existing)
        try:
            (self.session_dir(session_id) / STARTUP_ERROR_FILE).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("startup_error_clear_failed", session_id=session_id, error=str(exc))
        logger.info("pairing_file_connected", session_id=session_id)
        return existing

    def read_status(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Return whichever status file exists, or None."""
        path = self.session_dir(session_id)
        for name in (PAIRING_FILE, ERROR_FILE):
            data = self._read_json(path / name)
            if data is not None:
                return data
        return None

    def status_files(self, session_id: str) -> List[str]:
        path = self.session_dir(session_id)
        return [name for name in (PAIRING_FILE, ERROR_FILE) if (path / name).exists()]

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("status_file_read_failed", path=str(path), error=str(exc))
            raise PersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def cleanup_stale(self, max_age_hours: float = 24) -> List[str]:
        """Delete session directories last modified more than ``max_age_hours`` ago.

        Runs independently of in-memory state so directories orphaned by a
        restart are collected too.
        """
        cutoff = time.time() - max_age_hours * 3600
        removed: List[str] = []
        for session_id in self.list_session_ids():
            path = self.root / session_id
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                shutil.rmtree(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error("stale_cleanup_failed", session_id=session_id, error=str(exc))
                continue
            removed.append(session_id)
            logger.info("stale_session_dir_removed", session_id=session_id)
        if removed:
            logger.info("stale_cleanup_done", removed=len(removed), max_age_hours=max_age_hours)
        return removed
