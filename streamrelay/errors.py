"""
Stream Relay - Errors raised by the relay engine.

The HTTP layer maps these onto status codes; client-input errors
(duplicate start, unknown id) are kept apart from upstream faults.
"""


class RelayError(Exception):
    """Base class for relay engine errors."""


class DestinationSourceError(RelayError):
    """The dashboard could not be reached or returned an unusable response."""


class NoDestinationsError(RelayError):
    """The dashboard returned no enabled destinations."""


class DestinationNotFoundError(RelayError):
    """The requested destination id is not in the destination list."""

    def __init__(self, destination_id: str):
        super().__init__(f"Destination not found or not enabled: {destination_id}")
        self.destination_id = destination_id


class AlreadyRunningError(RelayError):
    """A worker for the destination is already running."""

    def __init__(self, destination_id: str):
        super().__init__(f"Destination stream already running: {destination_id}")
        self.destination_id = destination_id


class WorkerAlreadyRunningError(AlreadyRunningError):
    """Raised by the supervisor when a handle for the id already exists."""


class WorkerSpawnError(RelayError):
    """FFmpeg could not be started for a destination."""

    def __init__(self, destination_id: str, reason: str = ""):
        message = f"Failed to start worker for {destination_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.destination_id = destination_id
