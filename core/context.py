"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

import core.config as config
from core.errors import ValidationIssue


@dataclass(frozen=True)
class Deadline:
    """Caller-provided bound on how long a read path may spend fetching."""

    expires_at: float

    @staticmethod
    def after(seconds: Optional[float]) -> Optional["Deadline"]:
        if seconds is None:
            return None
        return Deadline(expires_at=time.monotonic() + max(0.0, seconds))

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at


@dataclass(frozen=True)
class RequestContext:
    owner_id: Optional[str] = None
    request_id: Optional[str] = None
    source: Optional[str] = None
    deadline: Optional[Deadline] = field(default=None, compare=False)


def deadline_expired(deadline: Optional[Deadline]) -> bool:
    return deadline is not None and deadline.expired()


def require_owner_id(owner_id: Optional[str]) -> str:
    """Normalize the caller-supplied owner identity or reject it."""
    if owner_id is None or not isinstance(owner_id, str) or not owner_id.strip():
        raise ValidationIssue(
            "owner_id is required for this operation",
            field="owner_id",
            error_type="required",
        )
    value = owner_id.strip()
    if len(value) > config.MAX_OWNER_ID_LENGTH:
        raise ValidationIssue(
            f"owner_id exceeds max length {config.MAX_OWNER_ID_LENGTH}",
            field="owner_id",
            error_type="max_length",
        )
    return value


def resolve_owner_id(context: Optional[RequestContext]) -> str:
    if context is None:
        return require_owner_id(None)
    return require_owner_id(context.owner_id)


__all__ = [
    "Deadline",
    "RequestContext",
    "deadline_expired",
    "require_owner_id",
    "resolve_owner_id",
]
