"""
Bounded constant-delay retry for transient backend errors.

Several processes sharing one database can make each other's writes and
index builds fail in ways that succeed when simply tried again:

- two upserts of the same key racing (a "duplicate key" error on
  MongoDB 4.0 / DocumentDB 4.0)
- two index builds on the same collection racing

Which errors count as transient is decided by an ErrorClassifier, so other
backends (or newer server versions with different wording) can supply their
own rules without touching the retry loop.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol, TypeVar, runtime_checkable

from .errors import BackendError, RetriesExhaustedError, TagStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 2.0  # seconds

# Concurrent upserts of one key (MongoDB 4.0, DocumentDB 4.0)
DUPLICATE_KEY_MESSAGES: tuple[str, ...] = (
    "duplicate key error collection",
)
# DuplicateKey, whatever the wording
DUPLICATE_KEY_CODES: tuple[int, ...] = (11000,)

# Concurrent index creation
INDEX_CONFLICT_MESSAGES: tuple[str, ...] = (
    # DocumentDB
    "Non-unique",
    "Existing index build in progress on the same collection. "
    "Collection is limited to a single index build at a time.",
    "EOF",
    # MongoDB 5.0
    "incomplete read of message header",
)


@runtime_checkable
class ErrorClassifier(Protocol):
    """Decides whether an error is worth retrying."""

    def is_transient(self, exc: BaseException) -> bool: ...


def error_codes(exc: BaseException) -> set:
    """Server error codes of exc and of each failed bulk operation."""
    codes = set()
    code = getattr(exc, "code", None)
    if code is not None:
        codes.add(code)
    details = getattr(exc, "details", None)
    if isinstance(details, dict):
        for write_error in details.get("writeErrors") or ():
            if write_error.get("code") is not None:
                codes.add(write_error["code"])
    return codes


def error_text(exc: BaseException) -> str:
    """
    All human-readable text carried by an exception.

    Bulk write errors report per-operation messages in their details
    rather than in str(exc), so those are appended.
    """
    parts = [str(exc)]
    details = getattr(exc, "details", None)
    if isinstance(details, dict):
        for write_error in details.get("writeErrors") or ():
            message = write_error.get("errmsg")
            if message:
                parts.append(str(message))
        message = details.get("errmsg")
        if message:
            parts.append(str(message))
    return "\n".join(parts)


class SubstringClassifier:
    """Transient if the error text contains any known substring, or its code matches."""

    def __init__(self, substrings: Iterable[str], codes: Iterable[int] = ()):
        self.substrings = tuple(s for s in substrings if s)
        self.codes = frozenset(codes)

    def is_transient(self, exc: BaseException) -> bool:
        if self.codes and self.codes & error_codes(exc):
            return True
        text = error_text(exc)
        return any(s in text for s in self.substrings)

    def __repr__(self) -> str:
        return f"SubstringClassifier({list(self.substrings)!r}, codes={sorted(self.codes)!r})"


@dataclass(frozen=True)
class RetryPolicy:
    """Total attempts and the fixed pause between them."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay: float = DEFAULT_RETRY_DELAY

    def __post_init__(self):
        if self.max_attempts < 1:
            object.__setattr__(self, "max_attempts", DEFAULT_MAX_ATTEMPTS)
        if self.delay < 0:
            object.__setattr__(self, "delay", 0.0)


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    classifier: ErrorClassifier,
    *,
    description: str,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run operation, retrying transient failures.

    Args:
        operation: Zero-argument callable doing one backend attempt
        policy: Attempt limit and delay
        classifier: Separates transient from permanent errors
        description: What the operation does, e.g. "store data"; used in
            error messages ("failed to store data ...")
        on_retry: Called with (attempt number, error) after each transient
            failure, before sleeping
        sleep: Replaceable for tests

    Returns:
        Whatever operation returns

    Raises:
        TagStoreError: re-raised unchanged if operation raises one
        BackendError: on the first permanent error
        RetriesExhaustedError: after max_attempts transient errors
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except TagStoreError:
            raise
        except Exception as e:
            if not classifier.is_transient(e):
                raise BackendError(f"failed to {description}: {e}") from e

            if on_retry is not None:
                on_retry(attempt, e)

            if attempt >= policy.max_attempts:
                raise RetriesExhaustedError(description, attempt, e) from e

            logger.debug(
                "Transient error on attempt %d/%d to %s, retrying in %.1fs",
                attempt, policy.max_attempts, description, policy.delay,
            )
            sleep(policy.delay)
