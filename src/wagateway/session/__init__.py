"""
Session management for the WhatsApp pairing gateway.

Tracks every linkage attempt in memory, persists per-session status files,
enforces the session cap and drives connections through their lifecycle.

Usage:
    from wagateway.session import SessionStore, AdmissionController

    store = SessionStore()
    admission = AdmissionController(store, max_sessions=50)
    decision = admission.admit(SessionRecord(session_id=sid, phone_number=phone))
"""

from wagateway.session.models import SessionRecord, SessionStatus, VALID_STATUSES, make_session_id
from wagateway.session.store import SessionStore
from wagateway.session.admission import AdmissionController, AdmissionDecision
from wagateway.session.credentials import CredentialStore
from wagateway.session.pairing import PairingOrchestrator, format_pairing_code
from wagateway.session.lifecycle import SessionLifecycleManager

__all__ = [
    "SessionRecord",
    "SessionStatus",
    "VALID_STATUSES",
    "make_session_id",
    "SessionStore",
    "AdmissionController",
    "AdmissionDecision",
    "CredentialStore",
    "PairingOrchestrator",
    "format_pairing_code",
    "SessionLifecycleManager",
]
