"""Exceptions raised by memory engine collaborators."""


class MemoryEngineError(Exception):
    """Base exception for the memory engine."""
    pass


class StoreUnavailableError(MemoryEngineError):
    """The persistence backend timed out or failed."""

    def __init__(self, operation: str, reason: str = ""):
        self.operation = operation
        self.reason = reason
        message = f"store operation '{operation}' failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)