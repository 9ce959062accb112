from __future__ import annotations


class DocumentSessionError(Exception):
    """Base class for failures scoped to a single engine operation."""


class NotFoundError(DocumentSessionError):
    pass


class PersistenceError(DocumentSessionError):
    pass


class ExternalCollaboratorError(DocumentSessionError):
    pass


class ValidationError(DocumentSessionError):
    pass
