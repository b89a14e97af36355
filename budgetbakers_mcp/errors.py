"""Error taxonomy for the BudgetBakers bridge.

Everything raised by this package derives from ``BudgetBakersError`` so the
tool layer can tell domain failures apart from programming errors. "Not
found" is deliberately absent: repositories return ``None`` for it.
"""

from typing import List, Optional


class BudgetBakersError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(BudgetBakersError, ValueError):
    """Required configuration (usually credentials) is missing or invalid."""


# Handshake failures

class AuthError(BudgetBakersError):
    """The BudgetBakers login handshake could not be completed."""


class TokenMissing(AuthError):
    """The anti-forgery endpoint did not return a CSRF token."""

    def __init__(self, message: str = "CSRF token missing from auth/csrf response") -> None:
        super().__init__(message)


class LoginRejected(AuthError):
    """The sign-in endpoint answered with a non-success status."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"BudgetBakers login rejected (status {status}): {body[:200]}")


class SessionDataMissing(AuthError):
    """The session endpoint did not carry usable replication credentials."""

    def __init__(self, message: str = "Replication credentials missing from auth/session response") -> None:
        super().__init__(message)


class SessionCookieMissing(AuthError):
    """Login succeeded upstream but no session-token cookie was issued."""

    def __init__(self, message: str = "Session token cookie not found after login") -> None:
        super().__init__(message)


class IncompleteSession(BudgetBakersError):
    """A session descriptor is missing one or more connection fields."""

    def __init__(self, missing: List[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Session descriptor incomplete, missing: {', '.join(self.missing)}")


class ValidationError(BudgetBakersError, ValueError):
    """A business field is missing or breaks a kind-specific rule.

    Raised before any store mutation is attempted.
    """

    def __init__(self, field: str, rule: str, message: Optional[str] = None) -> None:
        self.field = field
        self.rule = rule
        super().__init__(message or f"Invalid field '{field}': {rule}")


class TransportError(BudgetBakersError):
    """Network failure or timeout talking to BudgetBakers or the store."""

    retryable = True


# Document store failures

class StoreError(BudgetBakersError):
    """The document store answered with an unexpected status."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class ConflictError(StoreError):
    """Revision mismatch reported by the store (HTTP 409)."""


class StoreWriteError(StoreError):
    """A write was not acknowledged by the store."""


class StoreAuthError(StoreError):
    """The store rejected the session's login/token (HTTP 401/403)."""
