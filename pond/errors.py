"""
Shared error types for the memory store.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class MigrationConfigurationError(ValidationIssue):
    """Raised when migration definitions cannot be applied as requested."""

    def __init__(self, message: str, version: int | None = None, error_type: str = "invalid"):
        super().__init__(message, field="migration", error_type=error_type, data={"version": version})
        self.version = version


class MemoryStateError(RuntimeError):
    """Raised when a stored memory is mutated."""


class EmbeddingProviderError(RuntimeError):
    """Raised when the embedding provider is unavailable."""


class ExtractionProviderError(RuntimeError):
    """Raised when the NLP extraction provider is unavailable."""
