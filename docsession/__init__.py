from __future__ import annotations

from .errors import (
    DocumentSessionError,
    ExternalCollaboratorError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)

APP_NAME = "docsession"
APP_VERSION = "0.1.0"

__all__ = [
    "APP_NAME",
    "APP_VERSION",
    "DocumentSessionError",
    "ExternalCollaboratorError",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
]
