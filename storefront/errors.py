from typing import Any, Optional


class StoreError(Exception):
    """Business-rule failure; the server renders it as {"error": ...}."""
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None,
                 details: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class NotFound(StoreError):
    status_code = 404


class Unauthorized(StoreError):
    status_code = 401
