"""
Error types for tagstore, plus the CLI error log helper.

Callers branch on the class, never on message text:

- ValidationError: bad input, rejected before any backend call
- NotFoundError: the key or store is absent
- BackendError: the database failed (RetriesExhaustedError when a
  transient failure outlived the retry budget)
- DataCorruptionError: a stored record could not be decoded
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class TagStoreError(Exception):
    """Base class for all tagstore errors."""


class ValidationError(TagStoreError, ValueError):
    """Input was rejected before touching the backend."""


class InvalidQueryExpressionError(ValidationError):
    """A query expression did not match the supported grammar."""

    MESSAGE = (
        "invalid expression format. It must be in the following format: "
        "TagName:TagValue or TagName1:TagValue1&&TagName2:TagValue2. "
        "Tag values are optional"
    )

    def __init__(self, expression: Optional[str] = None):
        self.expression = expression
        super().__init__(self.MESSAGE)


class NotFoundError(TagStoreError, LookupError):
    """The requested data or store does not exist."""


class DataNotFoundError(NotFoundError):
    """No record is stored under the requested key."""

    def __init__(self, key: str, store_name: str = ""):
        self.key = key
        self.store_name = store_name
        where = f" in store {store_name!r}" if store_name else ""
        super().__init__(f"data not found for key {key!r}{where}")


class StoreNotFoundError(NotFoundError):
    """The store is not open in this provider, or its database does not exist."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"store not found: {name!r}")


class BackendError(TagStoreError):
    """A backend call failed and was not (or no longer) retried."""


class RetriesExhaustedError(BackendError):
    """A transient backend error persisted through every allowed attempt."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"failed to {description} after {attempts} attempts. This storage "
            "provider may need to be started with a higher max retry limit "
            "and/or higher time between retries. "
            f"Underlying error message: {last_error}"
        )


class DataCorruptionError(TagStoreError):
    """A stored document does not have the expected record layout."""


class IteratorStateError(TagStoreError):
    """An iterator accessor was used outside a valid cursor position."""


class ProviderClosedError(TagStoreError):
    """The provider has been closed and can no longer be used."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting TAGSTORE_HOME."""
    home = os.environ.get("TAGSTORE_HOME")
    if home:
        return Path(home) / "tagstore-errors.log"
    return Path.home() / ".tagstore" / "tagstore-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write(f" {type(exc).__name__}: {exc}\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
