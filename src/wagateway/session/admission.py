"""Admission control: the global cap on concurrently tracked sessions."""

from dataclasses import dataclass

import structlog

from wagateway.session.exceptions import AdmissionRejected
from wagateway.session.models import SessionRecord
from wagateway.session.store import SessionStore

logger = structlog.get_logger("session")

DEFAULT_MAX_SESSIONS = 50


@dataclass(frozen=True)
class AdmissionDecision:
    accepted: bool
    current: int
    limit: int

    def raise_for_rejection(self) -> None:
        if not self.accepted:
            raise AdmissionRejected(self.current, self.limit)


class AdmissionController:
    """
    Compares the number of tracked sessions against a fixed maximum.

    Every tracked session counts, including ones that are still waiting for
    a pairing code.
    """

    def __init__(self, store: SessionStore, max_sessions: int = DEFAULT_MAX_SESSIONS):
        self.store = store
        self.max_sessions = max_sessions

    def try_admit(self) -> AdmissionDecision:
        """Check capacity without reserving a slot."""
        current = self.store.count()
        return AdmissionDecision(current < self.max_sessions, current, self.max_sessions)

    def admit(self, record: SessionRecord) -> AdmissionDecision:
        """Check capacity and insert ``record`` in one step."""
        accepted, current = self.store.insert_if_below(record, self.max_sessions)
        if not accepted:
            # Rejection is an expected outcome, not a failure
            logger.info(
                "admission_rejected",
                session_id=record.session_id,
                current=current,
                limit=self.max_sessions,
            )
            return AdmissionDecision(False, current, self.max_sessions)
        logger.info(
            "admission_accepted",
            session_id=record.session_id,
            current=current + 1,
            limit=self.max_sessions,
        )
        return AdmissionDecision(True, current + 1, self.max_sessions)
