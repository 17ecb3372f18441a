# world_info_exceptions.py
# Description: Structured exceptions for world-info storage and API-facing callers
#
# Imports
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

#
# 3rd-party Libraries
from loguru import logger

#######################################################################################################################
#
# Error Codes


class WorldInfoErrorCode(Enum):
    """Standardized error codes for the world-info module."""

    # Validation errors (VAL_xxx)
    VAL_INVALID_PAYLOAD = "WI_VAL_001"
    VAL_BOOK_TOO_LARGE = "WI_VAL_002"
    VAL_TOO_MANY_ENTRIES = "WI_VAL_003"
    VAL_ENTRY_TOO_LONG = "WI_VAL_004"
    VAL_INVALID_SCOPE = "WI_VAL_005"

    # Conflicts (CONFLICT_xxx)
    CONFLICT_VERSION = "WI_CONFLICT_001"

    # Database errors (DB_xxx)
    DB_QUERY_ERROR = "WI_DB_001"
    DB_NOT_FOUND = "WI_DB_002"


#######################################################################################################################
#
# Exceptions


class WorldInfoError(Exception):
    """
    Base exception for world-info errors.
    Carries a code, a log-safe message and optional structured details.
    """

    def __init__(
        self,
        code: WorldInfoErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)
        self.traceback = traceback.format_exc() if cause else None
        super().__init__(message)

    def to_log_dict(self) -> Dict[str, Any]:
        data = {
            "error_code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }
        if self.cause:
            data["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return data

    def to_response_dict(self) -> Dict[str, Any]:
        """Client-facing payload; never includes tracebacks or causes."""
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            }
        }

    def log(self) -> None:
        logger.bind(**self.to_log_dict()).error(f"World-info error {self.code.value}: {self.message}")


class WorldInfoInputError(WorldInfoError):
    def __init__(self, message: str, code: WorldInfoErrorCode = WorldInfoErrorCode.VAL_INVALID_PAYLOAD, **kwargs):
        super().__init__(code, message, **kwargs)


class WorldInfoConflictError(WorldInfoError):
    def __init__(self, message: str, **kwargs):
        super().__init__(WorldInfoErrorCode.CONFLICT_VERSION, message, **kwargs)


class WorldInfoNotFoundError(WorldInfoError):
    def __init__(self, message: str, **kwargs):
        super().__init__(WorldInfoErrorCode.DB_NOT_FOUND, message, **kwargs)


class WorldInfoDatabaseError(WorldInfoError):
    def __init__(self, message: str, **kwargs):
        super().__init__(WorldInfoErrorCode.DB_QUERY_ERROR, message, **kwargs)

#
# End of world_info_exceptions.py
#######################################################################################################################
