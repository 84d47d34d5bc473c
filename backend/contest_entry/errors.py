class ContestEntryError(Exception):
    """Base class for errors surfaced to HTTP clients."""

    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class MissingField(ContestEntryError):
    status_code = 400
    default_message = "Missing required field."


class MissingSession(MissingField):
    default_message = "Missing payment session ID."


class InvalidPayload(ContestEntryError):
    status_code = 400
    default_message = "Invalid submission data."


class Unauthorized(ContestEntryError):
    status_code = 403
    default_message = "Invalid or unpaid session."


class Conflict(ContestEntryError):
    status_code = 409
    default_message = "This payment session has already been used."


class SignatureInvalid(ContestEntryError):
    status_code = 400
    default_message = "Webhook signature verification failed."


class StorageUnavailable(ContestEntryError):
    status_code = 500
    default_message = "Storage is unavailable."


class UpstreamProviderError(ContestEntryError):
    status_code = 500
    default_message = "Payment provider request failed."
