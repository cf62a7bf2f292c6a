"""
Error taxonomy for the session subsystem.

Every error carries a machine-readable `error` code and the HTTP
status the app factory renders it with.  Services raise these; the
controllers never translate them by hand.

- InputValidationError  → rejected before any side effect, not retried
- AuthorizationError    → acting identity may not touch the target
- SessionRevokedError   → the calling device's own session was revoked
                          under its current token; sign in again
- NotFoundError         → the identifier does not exist (an already
                          revoked session is *not* this)
- StorageError          → database unreachable; always surfaced
- IdPUnavailableError   → IdP network failure / timeout; revocation
                          logs it and carries on locally
- IdPCredentialError    → management credential could not be obtained
                          after retries; fatal to the calling operation

Device-limit denial is deliberately absent: it is an outcome
(`AdmissionDecision`), not an error.
"""

from typing import Any


class SessionControlError(Exception):
    error: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        self.message = message
        self.detail = detail
        super().__init__(message)


class InputValidationError(SessionControlError):
    error = "validation_error"
    status_code = 400


class AuthorizationError(SessionControlError):
    error = "forbidden"
    status_code = 403


class SessionRevokedError(AuthorizationError):
    error = "session_revoked"


class NotFoundError(SessionControlError):
    error = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class InfrastructureError(SessionControlError):
    error = "infrastructure_error"
    status_code = 503


class StorageError(InfrastructureError):
    error = "storage_unavailable"
    status_code = 503


class IdPError(InfrastructureError):
    error = "idp_error"
    status_code = 502


class IdPUnavailableError(IdPError):
    error = "idp_unavailable"


class IdPCredentialError(IdPError):
    error = "idp_credentials_unavailable"
