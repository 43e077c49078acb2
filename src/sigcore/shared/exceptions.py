"""
Shared application exceptions.

Each family maps to one HTTP status in ``sigcore.main``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class AppError(Exception):
    message: str = "Application error"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


class NotFoundError(AppError):
    pass


class ValidationError(AppError):
    pass


class ConflictError(AppError):
    pass


class UnknownWebhookTokenError(NotFoundError):
    def __init__(self, message: str = "Unknown webhook token", details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message=message, details=details)


class InvalidSignatureError(ValidationError):
    def __init__(self, message: str = "Invalid webhook signature", details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message=message, details=details)


class SyncConflictError(ConflictError):
    def __init__(self, message: str = "Sync already in progress", details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message=message, details=details)
