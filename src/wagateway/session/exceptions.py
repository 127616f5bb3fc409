"""
Error taxonomy for the session core.

Validation and admission failures are handled in the request path. Transport
and auth failures stay inside the lifecycle callbacks. Only pairing failures
and timeouts travel back to the HTTP caller that is waiting for a code.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""


class InvalidTransitionError(ValueError):
    """
    Raised when attempting an illegal session status transition.

    Example:
        >>> from wagateway.session.models import SessionStatus
        >>> from wagateway.session.status import validate_transition
        >>> validate_transition(SessionStatus.CLOSED, SessionStatus.PENDING)
        InvalidTransitionError: Invalid transition: closed → pending
    """
    pass


class PhoneValidationError(GatewayError, ValueError):
    """Phone number failed normalization. No side effects were performed."""


class AdmissionRejected(GatewayError):
    """The global session cap is reached."""

    def __init__(self, current: int, limit: int):
        super().__init__(f"Session limit reached. Maximum {limit} sessions allowed.")
        self.current = current
        self.limit = limit


class TransportError(GatewayError):
    """Opening or talking to a protocol connection failed."""


class AuthTerminated(TransportError):
    """The remote side invalidated the credentials (logged out)."""


class PairingError(GatewayError):
    """Requesting a pairing code failed."""


class PairingTimeoutError(PairingError, TimeoutError):
    """No pairing code was produced within the wait window."""


class PersistenceError(GatewayError, OSError):
    """Reading or writing a credential directory or status file failed."""
