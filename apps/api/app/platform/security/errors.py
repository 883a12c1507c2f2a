from __future__ import annotations


class SessionInvalid(Exception):
    """Raised when a session descriptor is missing or malformed; callers treat it as unauthenticated."""

    def __init__(self, reason: str = "session invalid") -> None:
        self.reason = reason
        super().__init__(reason)


class AuthorizationError(Exception):
    """Base authorization error for guard and projection failures."""


class ForbiddenError(AuthorizationError):
    """Raised by a guard deny. The reason is safe to show to the caller."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class AnonymizationLeakError(AuthorizationError):
    """Raised when a projected row still carries an identity-bearing value."""

    def __init__(self, resource: str, fields: list[str]) -> None:
        self.resource = resource
        self.fields = sorted(set(fields))
        super().__init__(f"Unmasked identity fields for resource '{resource}': {', '.join(self.fields)}")
