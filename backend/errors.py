"""
Application errors and their user-facing messages.

Services raise AppError; the API turns it into a short message. Stack traces
and raw database errors only go to the log.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

logger = logging.getLogger("pos.errors")


ERROR_MESSAGES = {
    "NOT_FOUND": "Record not found",
    "INVALID_INPUT": "Invalid input",
    "CONSTRAINT": "Data conflict",
    "INVALID_PIN": "Wrong PIN code",
    "UNAUTHORIZED": "Access denied",
    "LAST_ADMIN": "The last administrator cannot be deleted",
    "PRINTER_ERROR": "Printer error",
    "UNKNOWN": "Unexpected error",
}

STATUS_CODES = {
    "NOT_FOUND": 404,
    "INVALID_INPUT": 400,
    "CONSTRAINT": 409,
    "INVALID_PIN": 401,
    "UNAUTHORIZED": 403,
    "LAST_ADMIN": 400,
    "PRINTER_ERROR": 502,
    "UNKNOWN": 500,
}


class AppError(Exception):
    def __init__(self, code: str, message: Optional[str] = None):
        if code not in ERROR_MESSAGES:
            code = "UNKNOWN"
        self.code = code
        self.message = message or ERROR_MESSAGES[code]
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.code]


class NotFound(AppError):
    def __init__(self, message: Optional[str] = None):
        super().__init__("NOT_FOUND", message)


class InvalidInput(AppError):
    def __init__(self, message: Optional[str] = None):
        super().__init__("INVALID_INPUT", message)


def handle_error(error: Exception, context: str = "") -> Dict[str, Any]:
    """Log the error in full and return the body that is safe to show to staff."""
    if isinstance(error, AppError):
        logger.warning(f"[{context}] {error.code}: {error.message}")
        return {"success": False, "error": error.message, "code": error.code}

    if isinstance(error, IntegrityError):
        logger.error(f"[{context}] integrity error", exc_info=error)
        return {"success": False, "error": ERROR_MESSAGES["CONSTRAINT"], "code": "CONSTRAINT"}

    logger.error(f"[{context}] unexpected error", exc_info=error)
    return {"success": False, "error": ERROR_MESSAGES["UNKNOWN"], "code": "UNKNOWN"}
