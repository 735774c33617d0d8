"""Exception hierarchy shared by the FHIR client, the services and the API."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager


class StudyDesignerError(Exception):
    """Base class for every error raised by this package."""


class FhirClientError(StudyDesignerError):
    """A FHIR server could not be reached or answered with an error status."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class ResourceNotFoundError(FhirClientError):
    """404 from the server, or a lookup that matched nothing."""


class CharacteristicTreeError(StudyDesignerError, ValueError):
    """Structural violation in an EvidenceVariable characteristic tree."""


class ServiceError(StudyDesignerError):
    """A service operation failed; the message carries the operation context."""


@contextmanager
def wrap_errors(context: str) -> Iterator[None]:
    """Re-raise upstream failures as ``ServiceError("<context>: <cause>")``.

    Not-found, tree-structure and already-wrapped errors pass through unchanged.
    """
    try:
        yield
    except (ResourceNotFoundError, CharacteristicTreeError, ServiceError):
        raise
    except FhirClientError as exc:
        raise ServiceError(f"{context}: {exc}") from exc
