"""
Error taxonomy shared by every pipeline stage.

ConfigurationError  - missing credential or setting; fatal for the stage.
ExternalCallError   - rate limit, transport failure, malformed response;
                      stage-local and retriable.
ParseError          - malformed embedding or AI reply; isolated to one record.
EmptyResultError    - a stage produced nothing to work with; needs new inputs.
"""
from typing import Optional


class ContentScoutError(Exception):
    """Base class for all errors raised by contentscout."""


class ConfigurationError(ContentScoutError):
    """A required credential or setting is missing."""


class ExternalCallError(ContentScoutError):
    """A call to an external provider failed."""

    def __init__(
        self,
        message: str,
        service: str = "external",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class RateLimitError(ExternalCallError):
    """The provider rejected the call for quota or rate reasons."""


class ParseError(ContentScoutError):
    """A single record (embedding, AI reply) could not be parsed."""


class EmptyResultError(ContentScoutError):
    """A stage produced zero usable items."""


class TransitionError(ContentScoutError):
    """Navigation to a workflow stage is not allowed."""


class UnknownStatusError(ContentScoutError, ValueError):
    """A persisted project status has no stage mapping."""
