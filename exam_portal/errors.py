"""
Error taxonomy shared by the security core.

Every failure is raised as a ``PortalError`` carrying an internal ``ErrorCode``.
The code is what goes into the audit trail; clients only ever see
``public_message(code)`` and ``http_status(code)``.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    # authentication
    INVALID_CREDENTIALS = "InvalidCredentials"
    INVALID_STAGE = "InvalidStage"
    STALE_TOKEN = "StaleToken"
    UNAUTHENTICATED = "Unauthenticated"
    # one-time codes
    NO_ACTIVE_CODE = "NoActiveCode"
    EXPIRED = "Expired"
    MISMATCH = "Mismatch"
    # authorization
    FORBIDDEN = "Forbidden"
    NOT_ENROLLED = "NotEnrolled"
    OUTSIDE_WINDOW = "OutsideWindow"
    NOT_OWNER = "NotOwner"
    TOO_EARLY = "TooEarly"
    NOT_PUBLISHED = "NotPublished"
    # records
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    INVALID_INPUT = "InvalidInput"
    # faults
    INTEGRITY = "IntegrityError"
    CONFIGURATION = "ConfigurationError"
    SERVER_FAULT = "ServerFault"


AUTHENTICATION_CODES = frozenset({
    ErrorCode.INVALID_CREDENTIALS,
    ErrorCode.INVALID_STAGE,
    ErrorCode.STALE_TOKEN,
    ErrorCode.UNAUTHENTICATED,
})

AUTHORIZATION_CODES = frozenset({
    ErrorCode.FORBIDDEN,
    ErrorCode.NOT_ENROLLED,
    ErrorCode.OUTSIDE_WINDOW,
    ErrorCode.NOT_OWNER,
    ErrorCode.TOO_EARLY,
    ErrorCode.NOT_PUBLISHED,
})

ACCESS_DENIED_MESSAGE = "Unauthorized. You do not have permission to perform this action."

_PUBLIC_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.INVALID_CREDENTIALS: "Invalid username or password",
    ErrorCode.INVALID_STAGE: "Invalid token stage",
    ErrorCode.STALE_TOKEN: "Session expired. Please login again.",
    ErrorCode.UNAUTHENTICATED: "Unauthorized",
    ErrorCode.NO_ACTIVE_CODE: "OTP expired",
    ErrorCode.EXPIRED: "OTP expired",
    ErrorCode.MISMATCH: "Invalid OTP",
    ErrorCode.NOT_FOUND: "Not found",
    ErrorCode.CONFLICT: "Resource already exists",
    ErrorCode.INVALID_INPUT: "Invalid request",
    ErrorCode.INTEGRITY: "Server error",
    ErrorCode.CONFIGURATION: "Server error",
    ErrorCode.SERVER_FAULT: "Server error",
}

_HTTP_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.NO_ACTIVE_CODE: 400,
    ErrorCode.EXPIRED: 400,
    ErrorCode.MISMATCH: 400,
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
}


class PortalError(Exception):
    """A failure with an internal reason code.

    ``detail`` is meant for logs and audit entries. It is shown to the client
    only for codes where the reason is part of the contract (bad input,
    missing records, conflicts).
    """

    def __init__(
        self,
        code: ErrorCode,
        detail: Optional[str] = None,
        *,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(detail or code.value)
        self.code = code
        self.detail = detail
        self.subject_id = subject_id
        self.action = action
        self.context = context or {}

    @property
    def is_security_failure(self) -> bool:
        return self.code in AUTHENTICATION_CODES or self.code in AUTHORIZATION_CODES


def public_message(error: PortalError) -> str:
    code = error.code
    if code in AUTHORIZATION_CODES:
        return ACCESS_DENIED_MESSAGE
    if code in (ErrorCode.NOT_FOUND, ErrorCode.CONFLICT, ErrorCode.INVALID_INPUT) and error.detail:
        return error.detail
    return _PUBLIC_MESSAGES.get(code, "Server error")


def http_status(code: ErrorCode) -> int:
    if code in AUTHENTICATION_CODES:
        return 401
    if code in AUTHORIZATION_CODES:
        return 403
    return _HTTP_STATUS.get(code, 500)
