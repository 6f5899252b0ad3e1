"""Chat-level failures and the user-facing text they turn into."""

from __future__ import annotations

from typing import Optional


class ChatError(RuntimeError):
    """Base class: a failure that ends a send as an assistant message."""

    user_message = "Sorry, I ran into a problem. Please try again later."

    def __init__(self, detail: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(detail or self.user_message)
        self.status_code = status_code


class RateLimitError(ChatError):
    user_message = "Too many requests, please try again later."


class QuotaExhaustedError(ChatError):
    user_message = "The API quota is used up, please top up your account."


class InvalidCredentialsError(ChatError):
    user_message = "The API key is invalid, please check your settings."


class ChatRequestError(ChatError):
    """Any other non-success HTTP status."""

    user_message = "The AI failed to reply."


class UnreadableResponseError(ChatError):
    """The response arrived without a readable body."""

    user_message = "Unable to read the response."


class ChatTransportError(ChatError):
    """No response at all: connection refused, DNS failure, reset."""


_STATUS_ERRORS: dict[int, type[ChatError]] = {
    429: RateLimitError,
    402: QuotaExhaustedError,
    401: InvalidCredentialsError,
}


def classify_status(status_code: int, detail: str = "") -> ChatError:
    """Map a non-success HTTP status to the matching ChatError."""
    error_cls = _STATUS_ERRORS.get(status_code, ChatRequestError)
    return error_cls(detail or f"HTTP {status_code}", status_code=status_code)
