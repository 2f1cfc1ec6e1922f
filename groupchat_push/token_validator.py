import re
from typing import Iterable, List, Tuple

from .errors import InvalidTokenError

# FCM registration tokens are at most 163 characters
MAX_TOKEN_LENGTH = 163

_TOKEN_CHARS = re.compile(r"[A-Za-z0-9_-]+")


def validate(token: str) -> None:
    """
    Check a device token before any network call is made.

    Raises:
        InvalidTokenError: If the token is empty, too long, or contains
            characters outside [A-Za-z0-9_-]
    """
    if not isinstance(token, str) or not token:
        raise InvalidTokenError("token is empty")
    if len(token) > MAX_TOKEN_LENGTH:
        raise InvalidTokenError("token exceeds maximum length")
    if not _TOKEN_CHARS.fullmatch(token):
        raise InvalidTokenError("invalid characters in token")


def is_valid(token: str) -> bool:
    try:
        validate(token)
    except InvalidTokenError:
        return False
    return True


def partition(tokens: Iterable[str]) -> Tuple[List[str], List[str]]:
    """Split tokens into (valid, invalid), preserving input order."""
    valid, invalid = [], []
    for token in tokens:
        if is_valid(token):
            valid.append(token)
        else:
            invalid.append(token)
    return valid, invalid
