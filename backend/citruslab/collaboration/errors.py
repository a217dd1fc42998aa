"""Error taxonomy for collaboration operations.

Every error carries the HTTP status it maps to; a single exception handler
registered in ``citruslab.main`` renders them as
``{"success": false, "message": ...}``.
"""
from typing import List, Optional


class CollaborationError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(CollaborationError):
    status_code = 404


class ForbiddenError(CollaborationError):
    status_code = 403


class ValidationFailedError(CollaborationError):
    status_code = 400

    def __init__(self, message: str, errors: Optional[List[dict]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ConflictError(CollaborationError):
    status_code = 400


class StoreError(CollaborationError):
    """The collaboration store could not be read or written. Not retried."""
    status_code = 500
