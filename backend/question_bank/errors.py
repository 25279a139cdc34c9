from __future__ import annotations

from fastapi import status


class SubmissionError(Exception):
    """Base for failures surfaced to API callers.

    ``kind`` is stable and machine readable; ``message`` is safe to show to
    users. The wrapped exception, if any, is only exposed as debug detail.
    """

    kind = "server_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Something went wrong on the server."

    def __init__(self, message: str | None = None, *, debug: str | None = None) -> None:
        self.message = message or self.default_message
        self.debug = debug
        super().__init__(self.message)


class InvalidInput(SubmissionError):
    kind = "invalid_input"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Room, question and answer must not be empty."


class ValidationUnavailable(SubmissionError):
    kind = "validation_unavailable"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "The AI validator did not respond. Please try again."


class StoreUnavailable(SubmissionError):
    kind = "store_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "The question store is unavailable. Please try again."


class RateLimited(SubmissionError):
    kind = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many submissions from this device. Please wait a minute and try again."


class InvalidCode(SubmissionError):
    kind = "invalid_code"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invite code is not valid."
