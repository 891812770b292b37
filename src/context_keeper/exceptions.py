"""Error taxonomy for context-keeper.

Vector shape errors are fatal to the calling operation. External-service and
malformed-response errors are recovered wherever a fallback policy exists.
"""


class ContextKeeperError(Exception):
    """Base exception for the package."""

    pass


class DimensionMismatchError(ContextKeeperError, ValueError):
    """Two vectors of different length were combined."""

    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"Vector dimension mismatch: {left} != {right}")


class ExternalServiceError(ContextKeeperError):
    """Timeout or transport failure talking to an inference/embedding service."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service} request failed: {message}")


class MalformedResponseError(ContextKeeperError):
    """Structured output could not be parsed."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


class StorageError(ContextKeeperError):
    """Store invariant violated or store unusable."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)
