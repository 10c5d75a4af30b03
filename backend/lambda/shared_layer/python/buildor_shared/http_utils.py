"""buildor_shared.http_utils: API Gateway response envelope and request parsing.

Supports both REST (``httpMethod``/``path``/``pathParameters``) and HTTP API
(``requestContext.http.method``/``rawPath``) proxy event shapes.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from buildor_shared.errors import BuildorError, ValidationError

logger = logging.getLogger(__name__)

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")

_DEFAULT_CODES = {
    400: "INVALID_INPUT",
    401: "PERMISSION_DENIED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    429: "RATE_LIMITED",
}


def _cors_headers() -> Dict[str, str]:
    headers = {
        "Access-Control-Allow-Origin": CORS_ORIGIN,
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Cookie, X-Buildor-Internal-Key",
    }
    if CORS_ORIGIN != "*":
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, set):
        return sorted(value)
    return str(value)


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {**_cors_headers(), "Content-Type": "application/json"},
        "body": "" if body == "" else json.dumps(body, default=_json_default),
    }


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build an error response carrying the standard ``error_envelope``.

    ``code`` and ``retryable`` may be passed explicitly; anything else in
    ``extra`` becomes the envelope's ``details``.
    """
    code = str(extra.pop("code", "") or "").strip().upper()
    if not code:
        code = _DEFAULT_CODES.get(status_code, "INTERNAL_ERROR")
    retryable = bool(extra.pop("retryable", status_code >= 500))
    details = dict(extra)
    payload: Dict[str, Any] = {
        "success": False,
        "error": message,
        "error_envelope": {
            "code": code,
            "message": message,
            "retryable": retryable,
            "details": details,
        },
    }
    return _response(status_code, payload)


def _error_from(exc: BuildorError) -> Dict[str, Any]:
    return _error(
        exc.status_code,
        exc.message,
        code=exc.code,
        retryable=exc.retryable,
        **exc.details,
    )


def _ok(body: Any, status_code: int = 200) -> Dict[str, Any]:
    if isinstance(body, dict) and "success" not in body:
        body["success"] = True
    return _response(status_code, body)


def _json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Parse the JSON object body; an empty body is an empty object."""
    raw = event.get("body")
    if raw in (None, ""):
        return {}
    if isinstance(raw, dict):
        return raw
    if event.get("isBase64Encoded"):
        try:
            raw = base64.b64decode(raw).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValidationError("Invalid base64 body") from exc
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ValidationError("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from a REST or HTTP API event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = event.get("rawPath") or http.get("path") or event.get("path") or "/"
    return method, path


def _query_param(event: Dict[str, Any], name: str) -> Optional[str]:
    qs = event.get("queryStringParameters") or {}
    value = qs.get(name)
    return str(value) if value is not None else None
