"""
errors.py - Failure taxonomy shared by every component.

Expected failures are returned as plain result dicts rather than raised:

    {"success": True, ...}
    {"success": False, "code": "capacity_exhausted", "error": "...", "retryable": False}

Routers translate a failed result into an HTTP status with ``http_status``.
"""

from enum import Enum


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    CAPACITY_EXHAUSTED = "capacity_exhausted"
    NODE_UNREACHABLE = "node_unreachable"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    PROVIDER_FAILURE = "provider_failure"
    INVALID_TOKEN = "invalid_token"
    SIGNATURE_MISMATCH = "signature_mismatch"
    INVALID_REQUEST = "invalid_request"


_HTTP_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CAPACITY_EXHAUSTED: 503,
    ErrorCode.NODE_UNREACHABLE: 503,
    ErrorCode.INSUFFICIENT_FUNDS: 402,
    ErrorCode.PROVIDER_FAILURE: 502,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.SIGNATURE_MISMATCH: 401,
    ErrorCode.INVALID_REQUEST: 400,
}


def ok(**fields) -> dict:
    return {"success": True, **fields}


def fail(code: ErrorCode, error: str, retryable: bool = False, **fields) -> dict:
    return {
        "success": False,
        "code": code.value,
        "error": error,
        "retryable": retryable,
        **fields,
    }


def http_status(result: dict) -> int:
    if result.get("success"):
        return 200
    try:
        return _HTTP_STATUS[ErrorCode(result.get("code"))]
    except ValueError:
        return 500
