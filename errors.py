from enum import Enum
from typing import Optional, Dict, Any
from fastapi import HTTPException, status


class RetentionError(Exception):
    """Base exception for the retention engine."""
    pass


class ConfigError(RetentionError):
    """A retention policy or its configuration is malformed.

    Raised while policies load; fatal to process startup.
    """
    pass


class StorageError(RetentionError):
    """The retention transaction, or a delete inside it, failed.

    The whole run has been rolled back when this is raised.
    """

    def __init__(self, message: str, collection: Optional[str] = None, rule: Optional[str] = None):
        super().__init__(message)
        self.collection = collection
        self.rule = rule


class OverlapSkipped(RetentionError):
    """A run was not started because another run is still in progress."""
    pass


class ErrorCode(Enum):
    """
    Central registry of API error codes.
    Each code maps to an HTTP status and a default user-facing message.
    """
    # System Errors (1xxx)
    INTERNAL_SERVER_ERROR = ("SYS_1001", status.HTTP_500_INTERNAL_SERVER_ERROR, "An unexpected internal server error occurred.")
    SERVICE_INITIALIZING = ("SYS_1003", status.HTTP_503_SERVICE_UNAVAILABLE, "Server is still initializing. Please try again in a moment.")

    # Auth & Security (2xxx)
    UNAUTHORIZED = ("AUTH_2001", status.HTTP_401_UNAUTHORIZED, "Authentication required.")
    INVALID_API_KEY = ("AUTH_2003", status.HTTP_401_UNAUTHORIZED, "The provided API key is invalid or expired.")

    # Database Errors (5xxx)
    DATABASE_CONNECTION_ERROR = ("DB_5001", status.HTTP_503_SERVICE_UNAVAILABLE, "Failed to connect to the database.")

    # Retention Errors (6xxx)
    RETENTION_CONFIG_INVALID = ("RET_6001", status.HTTP_500_INTERNAL_SERVER_ERROR, "Retention policy configuration is invalid.")
    RETENTION_STORAGE_FAILED = ("RET_6002", status.HTTP_503_SERVICE_UNAVAILABLE, "Retention run failed and was rolled back.")
    RETENTION_RUN_IN_PROGRESS = ("RET_6003", status.HTTP_409_CONFLICT, "A retention run is already in progress.")

    def __init__(self, code: str, status_code: int, message: str):
        self.code = code
        self.status_code = status_code
        self.message = message


def raise_api_error(error_code: ErrorCode, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
    """
    Raise a structured HTTPException using the centralized ErrorRegistry.
    """
    raise HTTPException(
        status_code=error_code.status_code,
        detail={
            "error_code": error_code.code,
            "message": message or error_code.message,
            "details": details
        }
    )
