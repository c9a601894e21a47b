"""Exceptions raised by the image-to-video client."""

from __future__ import annotations

from typing import Any

# Raw response bodies are cut to this many characters in messages.
BODY_PREFIX = 200


class GenerationError(Exception):
    """Base class for every failure surfaced to the user."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ValidationError(GenerationError):
    """A required input is missing or invalid. Raised before any network call."""


class TransportError(GenerationError):
    """Network failure, or a non-2xx response without a usable body."""


class ServiceError(GenerationError):
    """The service answered with a well-formed application-level failure."""


class MalformedResponseError(GenerationError):
    """The response body could not be parsed as JSON."""


class PollingTimeoutError(GenerationError):
    """The task did not reach a terminal status within the polling ceiling."""
