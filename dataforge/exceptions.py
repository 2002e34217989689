"""Custom exception hierarchy for the connector pipeline."""

from __future__ import annotations


class DataforgeError(Exception):
    """Base exception for all dataforge errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DataforgeError):
    """Raised when process or connector configuration is missing or invalid."""
    pass


class UnknownConnectorError(ConfigurationError):
    """Raised when no connector is registered for a type tag."""
    pass


class StoreError(DataforgeError):
    """Base exception for bus, key-value and metadata store failures."""
    pass


class BusError(StoreError):
    """Raised when publishing, consuming or key-value access on the bus fails."""
    pass


class MetadataError(StoreError):
    """Raised when the metadata store cannot be read."""
    pass


class EntityNotFoundError(MetadataError):
    """Raised when a source or destination id does not exist."""
    pass


class BindingError(StoreError):
    """Raised when a pipeline binding cannot be written or parsed."""
    pass


class BindingNotFoundError(BindingError):
    """Raised when a pipeline has no binding for the requested role."""
    pass


class APIError(DataforgeError):
    """Base exception for upstream API errors."""
    pass


class APIConnectionError(APIError):
    """Raised when unable to connect to the API."""
    pass


class APITimeoutError(APIError):
    """Raised when an API request times out."""
    pass


class APIResponseError(APIError):
    """Raised when an API returns an unexpected response."""
    pass


class AuthenticationError(DataforgeError):
    """Raised when a credential exchange fails."""
    pass


class ExtractionError(DataforgeError):
    """Raised when a source run fails."""
    pass


class RunCancelledError(ExtractionError):
    """Raised inside a source run once cancellation was requested."""
    pass


class SinkError(DataforgeError):
    """Raised when a destination cannot process a batch at all."""
    pass


class DispatchError(DataforgeError):
    """Raised when a bus delivery cannot be routed to a destination."""
    pass


class RecordDecodeError(DispatchError):
    """Raised when a bus payload is not a valid destination record."""
    pass
