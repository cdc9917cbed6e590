from typing import Optional


class NutriPlanError(Exception):
    """Base class for every error raised by NutriPlan components."""


class ValidationError(NutriPlanError):
    """Credential or form invariant violation. The message is shown to the user as-is."""

    message = "Invalid input."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class DuplicateEmail(ValidationError):
    message = "This email is already linked to a Clinical Registry. Please sign in."


class PasswordMismatch(ValidationError):
    message = "Security Passkeys do not match."


class PasswordTooShort(ValidationError):
    message = "Passkey must be at least 6 characters."


class InvalidCredentials(ValidationError):
    message = "Invalid Clinical Credentials. Access Denied."


class EmailNotFound(ValidationError):
    message = "Email identifier not found in clinical database."


class ResetNotIssued(ValidationError):
    message = "No passkey reset is pending for this email. Request a new reset link."


class UpstreamError(NutriPlanError):
    pass


class UpstreamEmptyResponse(UpstreamError):
    pass


class UpstreamMalformedResponse(UpstreamError):
    pass


class ImageSynthesisFailure(UpstreamError):
    pass


class GatewayRequestError(UpstreamError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class StorageParseFailure(NutriPlanError):
    def __init__(self, key: str, detail: str):
        super().__init__(f"Corrupted record {key}: {detail}")
        self.key = key
