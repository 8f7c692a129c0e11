class MetadataError(Exception):
    """Base class for metadata client failures."""


class FetchError(MetadataError):
    """The metadata request could not be completed."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class DecodeError(MetadataError, ValueError):
    """The response body is not a structurally valid metadata document."""
