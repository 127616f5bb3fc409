"""
Pydantic models for tracked pairing sessions.

SessionRecord is the in-memory view of one linkage attempt. The live
connection handle rides along on the record but is never serialized.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    """Externally visible session statuses."""
    PENDING = "pending"                # Connection being opened or re-opened
    AWAITING_CODE = "awaiting_code"    # Pairing code request scheduled
    AWAITING_LINK = "awaiting_link"    # Code issued, waiting for the user to link
    CONNECTED = "connected"            # Socket open and authenticated
    ERROR = "error"                    # Last attempt failed
    CLOSED = "closed"                  # Terminal


VALID_STATUSES = {s.value for s in SessionStatus}

SESSION_ID_RE = re.compile(r"^session_(\d+)_(\d+)$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def make_session_id(phone_number: str, created_at: Optional[datetime] = None) -> str:
    """Build ``session_<phone>_<unix millis>``."""
    moment = created_at or _now()
    return f"session_{phone_number}_{int(moment.timestamp() * 1000)}"


def to_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def from_millis(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class SessionRecord(BaseModel):
    """
    One tracked session.

    Only the lifecycle manager and pairing orchestrator mutate ``status``,
    ``handle``, ``retry_count`` and ``pairing_code``. HTTP handlers read.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=False)

    session_id: str = Field(..., description="session_<phone>_<unix millis>")
    phone_number: str = Field(..., description="Normalized digits, country code first")
    status: SessionStatus = Field(default=SessionStatus.PENDING)
    created_at: datetime = Field(default_factory=_now)
    connected_at: Optional[datetime] = Field(default=None)
    retry_count: int = Field(default=0, ge=0)
    pairing_code: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None)

    # Live protocol connection, opaque to the core
    handle: Optional[Any] = Field(default=None, exclude=True, repr=False)

    @property
    def is_live(self) -> bool:
        return self.handle is not None

    def to_status(self) -> Dict[str, Any]:
        """Polling view served by ``GET /api/session/{id}``."""
        data: Dict[str, Any] = {
            "status": self.status.value,
            "sessionId": self.session_id,
            "phoneNumber": self.phone_number,
            "createdAt": self.created_at.isoformat(),
            "retryCount": self.retry_count,
        }
        if self.pairing_code:
            data["code"] = self.pairing_code
        if self.connected_at:
            data["connectedAt"] = self.connected_at.isoformat()
        if self.error:
            data["error"] = self.error
        return data

    def to_summary(self) -> Dict[str, Any]:
        """Listing view served by ``GET /api/sessions``."""
        return {
            "sessionId": self.session_id,
            "phoneNumber": self.phone_number,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "connectedAt": self.connected_at.isoformat() if self.connected_at else None,
            "active": self.is_live,
        }
