"""
Error types shared across the request pipeline.

Tool-level failures never use these directly: they are reported to the model
as `{"status": "error"}` results. The types below are for failures that must
change control flow, either inside the orchestration loop (model errors,
round limits, cancellation) or at the HTTP boundary (configuration and auth).
"""
from typing import Optional


class RobinError(Exception):
    """Base class for all application errors."""


class ConfigError(RobinError):
    """A required environment variable or credential is missing."""


class AuthError(RobinError):
    """No caller identity is available where one is required."""


class DatastoreError(RobinError):
    """A datastore query failed."""

    UNIQUE_VIOLATION = "23505"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    @property
    def is_unique_violation(self) -> bool:
        return self.code == self.UNIQUE_VIOLATION


class StorageError(RobinError):
    """An object storage operation failed."""


class AttachmentFetchError(RobinError):
    """Every stage of the byte retrieval chain failed for a URL."""


class ModelCallError(RobinError):
    """The model provider rejected or failed a request."""


class ModelTimeout(ModelCallError):
    """A model call did not finish within the configured timeout."""


class RoundLimitExceeded(RobinError):
    """The model kept requesting tools past the configured round limit."""


class RequestCancelled(RobinError):
    """The client went away while the loop was still running."""


class RegistryMismatchError(RobinError):
    """Tool declarations and tool handlers are out of step."""
