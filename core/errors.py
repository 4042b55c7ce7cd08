"""
Shared error types for core services.
"""

from typing import Optional


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


class InvalidCategory(ValidationIssue):
    def __init__(self, category: object):
        super().__init__(
            f"Unknown instruction category: {category}",
            field="category",
            error_type="invalid_category",
        )


class InvalidPriority(ValidationIssue):
    def __init__(self, priority: object):
        super().__init__(
            f"priority must be an integer between 1 and 10, got {priority!r}",
            field="priority",
            error_type="out_of_range",
        )


class NotFoundError(LookupError):
    """Entity is absent or owned by someone else."""

    def __init__(self, entity: str, entity_id: Optional[object] = None):
        detail = f"{entity} not found"
        if entity_id is not None:
            detail = f"{entity} not found: {entity_id}"
        super().__init__(detail)
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(RuntimeError):
    """Raised when a write collides with existing state."""

    def __init__(self, message: str, entity: str = "unknown"):
        super().__init__(message)
        self.entity = entity


class StoreUnavailable(RuntimeError):
    """Raised when the backing store cannot be reached."""


class EmbeddingProviderError(RuntimeError):
    """Raised when the embedding provider is unavailable."""
