from __future__ import annotations

from typing import Any

from docsign.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Missing principal", "AUTH_UNAUTHORIZED", "X-Subject-Id header is required"),
    403: _response("Forbidden", "UNAUTHORIZED", "document:send denied", {"reason": "missing_relationship"}),
    404: _response("Not found", "NOT_FOUND", "document not found", {"reason": "document_not_found"}),
    409: _response(
        "Conflict",
        "INVALID_STATE",
        "ordered signing: waiting for a",
        {"reason": "ordered_signing_predecessors_unsigned"},
    ),
    422: _response("Validation failed", "VALIDATION_FAILED", "signers without a signature field: s1"),
    503: _response(
        "Dependency unavailable",
        "TIMESTAMP_UNREACHABLE",
        "no timestamp authority answered",
        {"retryable": True},
    ),
}
