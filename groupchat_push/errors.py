from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID_TOKEN = "invalid_token"
    INVALID_MESSAGE = "invalid_message"
    INVALID_PRIORITY = "invalid_priority"
    MESSAGE_TOO_BIG = "message_too_big"
    NOT_REGISTERED = "not_registered"
    AUTHENTICATION_ERROR = "authentication_error"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    CONTEXT_TIMEOUT = "context_timeout"
    UNEXPECTED = "unexpected"


class PushError(Exception):
    """
    Base class for every delivery error raised by the push engine.

    Subclasses are split into RetryableFailure and FatalFailure; the retry
    controller only ever retries the former.
    """

    kind: ErrorKind = ErrorKind.UNEXPECTED
    retryable: bool = False

    def __init__(self, detail: str = "", status_code: Optional[int] = None):
        self.detail = detail
        self.status_code = status_code
        message = self.kind.value
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class RetryableFailure(PushError):
    retryable = True


class FatalFailure(PushError):
    retryable = False


class InvalidTokenError(FatalFailure):
    kind = ErrorKind.INVALID_TOKEN


class InvalidMessageError(FatalFailure):
    kind = ErrorKind.INVALID_MESSAGE


class InvalidPriorityError(FatalFailure):
    kind = ErrorKind.INVALID_PRIORITY


class MessageTooBigError(FatalFailure):
    kind = ErrorKind.MESSAGE_TOO_BIG


class NotRegisteredError(FatalFailure):
    """The token is no longer registered with the gateway; the caller should prune it."""
    kind = ErrorKind.NOT_REGISTERED


class AuthenticationError(FatalFailure):
    kind = ErrorKind.AUTHENTICATION_ERROR


class UnexpectedStatusError(FatalFailure):
    kind = ErrorKind.UNEXPECTED


class ContextTimeout(FatalFailure):
    """Raised when a call has no deadline or its deadline elapsed."""
    kind = ErrorKind.CONTEXT_TIMEOUT


class ServerError(RetryableFailure):
    kind = ErrorKind.SERVER_ERROR


class NetworkError(RetryableFailure):
    kind = ErrorKind.NETWORK_ERROR
