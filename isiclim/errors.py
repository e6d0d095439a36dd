"""Error taxonomy for the isiclim pipeline.

Every error records the pipeline step that failed and the parameters it failed with,
so that a step can be reproduced by hand without re-running the whole sequence.
"""

from __future__ import annotations

from typing import Any


class IsiclimError(Exception):
    """Base class for all errors raised by isiclim."""

    def __init__(
        self, message: str, step: str, parameters: dict[str, Any] | None = None
    ) -> None:
        """Initialize the error.

        Args:
            message: Human readable description of what went wrong.
            step: The pipeline step that failed, e.g. "query" or "download".
            parameters: The parameters the step was called with.
        """
        self.message = message
        self.step = step
        self.parameters: dict[str, Any] = dict(parameters or {})
        super().__init__(str(self))

    def __str__(self) -> str:
        text = f"[{self.step}] {self.message}"
        if self.parameters:
            formatted = ", ".join(f"{k}={v!r}" for k, v in self.parameters.items())
            text += f" (parameters: {formatted})"
        return text


class CatalogLookupError(IsiclimError):
    """The catalog search or a cutout request could not be completed."""


class TransferError(IsiclimError):
    """A single resource could not be downloaded or unpacked."""

    def __init__(
        self,
        message: str,
        url: str,
        parameters: dict[str, Any] | None = None,
    ) -> None:
        self.url = url
        super().__init__(
            message, step="download", parameters={"url": url, **(parameters or {})}
        )


class FetchError(TransferError):
    """The resource could not be fetched from the server."""


class IntegrityError(TransferError):
    """The fetched bytes do not match the expected size or checksum."""


class ExtractionError(TransferError):
    """The fetched archive could not be extracted."""


class GridFormatError(IsiclimError):
    """A local grid file is unreadable or does not have the expected structure."""

    def __init__(
        self, message: str, parameters: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, step="load", parameters=parameters)


class ConfigurationError(IsiclimError, ValueError):
    """The run configuration is incomplete or invalid."""

    def __init__(
        self, message: str, parameters: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, step="config", parameters=parameters)


class QueryParameterError(IsiclimError, ValueError):
    """Query parameters name an attribute the catalog does not know."""

    def __init__(
        self, message: str, parameters: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, step="query", parameters=parameters)
