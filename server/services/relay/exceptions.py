"""Relay session exception hierarchy."""


class RelayError(Exception):
    """Base exception for all relay-related errors."""


class RelayConfigError(RelayError):
    """Relay origin missing or invalid. Needs an operator fix, never retried."""


class AuthError(RelayError):
    """Challenge/issue exchange failed or returned a malformed response."""


class UnauthorizedError(AuthError):
    """The relay explicitly rejected our credentials."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Unauthorized: {reason}")


class ProtocolError(RelayError):
    """Malformed or unexpected relay message. Logged; the session continues."""


class RegistrationTimeoutError(RelayError, TimeoutError):
    """No register_ok arrived within the registration window."""

    def __init__(self, message: str = "Registration timeout: expected register_ok from relay"):
        super().__init__(message)


class RelayConnectionError(RelayError):
    """Socket-level failure opening or holding the relay connection."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)
