"""
Error types raised by the ledger and advisor layers.

Each carries the HTTP status the API answers with; the handlers in
main.py turn them into JSON responses.
"""
from typing import Any, Optional


class CluckHubError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CluckHubError):
    """Input breaks a business rule (stock, amount, missing association)."""
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(CluckHubError):
    status_code = 404


class AccessError(CluckHubError):
    """The store refused the operation for this user."""
    status_code = 403

    def __init__(self, operation: str, path: str, request_data: Any = None):
        super().__init__(f"Permission denied for {operation} on {path}")
        self.operation = operation
        self.path = path
        self.request_data = request_data

    def context(self) -> dict:
        return {
            "operation": self.operation,
            "path": self.path,
            "request_data": self.request_data,
        }


class UpstreamError(CluckHubError):
    """The model endpoint failed or returned an unusable payload."""
    status_code = 502


class PartialConsistencyError(CluckHubError):
    """
    The flock aggregate update paired with a primary write did not apply.
    The transaction is rolled back before this is raised.
    """
    status_code = 409

    def __init__(self, message: str, flock_id: Optional[str] = None):
        super().__init__(message)
        self.flock_id = flock_id
