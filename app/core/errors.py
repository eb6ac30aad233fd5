"""
Claim registration errors.

Every failure of the registration protocol is one of these kinds. The HTTP
layer renders them as ``{"error": ..., "field": ...}`` with ``status_code``;
the client flow turns them into a rejected ``RegistrationOutcome``.
"""

from typing import Optional

from app.core.config import settings


class ClaimError(Exception):
    """Base exception for all claim registration errors."""

    kind: str = "claim_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(self.message)

    @property
    def retry_after(self) -> Optional[int]:
        if not self.retryable:
            return None
        return settings.RETRY_COOLDOWN_SECONDS

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.kind}
        if self.field:
            body["field"] = self.field
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


class UserCancelled(ClaimError):
    """User rejected the wallet request. Not an error, the attempt is aborted silently."""

    kind = "user_cancelled"
    status_code = 499

    def __init__(self, message: str = "User rejected the request"):
        super().__init__(message)


class StorageUnavailable(ClaimError):
    kind = "storage_unavailable"
    retryable = True

    def __init__(self, message: str = "Storage is unavailable. Please try again."):
        super().__init__(message)


class SigningFailed(ClaimError):
    kind = "signing_failed"
    status_code = 400

    def __init__(self, message: str = "Wallet could not sign the message"):
        super().__init__(message)


class VerificationFailed(ClaimError):
    kind = "verification_failed"
    status_code = 403

    def __init__(self, message: str = "Signature does not match wallet address"):
        super().__init__(message)


class DuplicateField(ClaimError):
    kind = "duplicate_field"
    status_code = 409

    MESSAGES = {
        "email": "This email is already registered.",
        "discord": "This Discord handle is already registered.",
    }

    def __init__(self, field: str):
        super().__init__(self.MESSAGES.get(field, f"This {field} is already registered."), field=field)


class PersistFailed(ClaimError):
    kind = "persist_failed"
    retryable = True

    def __init__(self, message: str = "Could not save to database."):
        super().__init__(message)


class MalformedInput(ClaimError):
    kind = "malformed_input"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, field=field)


class RetryThrottled(ClaimError):
    """Raised client-side when a new attempt starts inside the retry cooldown."""

    kind = "retry_throttled"
    status_code = 429

    def __init__(self, seconds_left: int):
        self.seconds_left = seconds_left
        super().__init__(f"Please wait {seconds_left}s before trying again.")

    @property
    def retry_after(self) -> Optional[int]:
        return self.seconds_left
