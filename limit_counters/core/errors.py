from __future__ import annotations


class CounterStoreError(Exception):
    """Base class for every error raised by the counter stores."""


class InvalidArgumentError(CounterStoreError, ValueError):
    """A request or key could not be used; raised before storage is touched."""


class BackendUnavailableError(CounterStoreError):
    """The remote counter script could not be executed for one bucket."""

    def __init__(self, message: str, *, key_name: str | None = None) -> None:
        super().__init__(message)
        self.key_name = key_name


class ResourceLoadError(CounterStoreError):
    """The atomic counter script could not be loaded."""

    def __init__(self, resource: str, cause: Exception | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Unable to load counter script '{resource}'{detail}")
        self.resource = resource


class CloseError(CounterStoreError):
    """Releasing backend resources failed."""
