"""buildor_shared.serialization: DynamoDB (de)serialization, timestamps, and
structured observability log lines.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

logger = logging.getLogger(__name__)

_SER = TypeSerializer()
_DESER = TypeDeserializer()


def _serialize(value: Any) -> Any:
    """Serialize a Python value for DynamoDB."""
    if isinstance(value, float):
        value = Decimal(str(value))
    return _SER.serialize(value)


def _serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _serialize(v) for k, v in item.items()}


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict."""
    return {k: _plain(_DESER.deserialize(v)) for k, v in item.items()}


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, set):
        return sorted(_plain(v) for v in value)
    return value


def _iso_z(value: dt.datetime) -> str:
    """Format an aware datetime as ISO 8601 UTC with milliseconds and Z suffix."""
    value = value.astimezone(dt.timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _now_z() -> str:
    """Current UTC timestamp, ISO 8601 with milliseconds and Z suffix.

    Millisecond precision keeps ``createdAt`` usable as a sort key when two
    deployments of one project are requested within the same second.
    """
    return _iso_z(dt.datetime.now(dt.timezone.utc))


def _unix_now() -> int:
    """Current Unix epoch as integer."""
    return int(time.time())


def _parse_iso(value: str) -> Optional[dt.datetime]:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed); None if invalid."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


# CodeBuild reports build-start-time as e.g. "Sep 1, 2017 4:12:29 PM" (UTC).
_CODEBUILD_TIME_FORMAT = "%b %d, %Y %I:%M:%S %p"


def _parse_build_time(value: str) -> Optional[dt.datetime]:
    """Parse a CodeBuild event timestamp in either ISO or console format."""
    parsed = _parse_iso(value)
    if parsed is not None or not isinstance(value, str) or not value:
        return parsed
    try:
        return dt.datetime.strptime(value.strip(), _CODEBUILD_TIME_FORMAT).replace(tzinfo=dt.timezone.utc)
    except ValueError:
        return None


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    deployment_id: Optional[str] = None,
    build_job_id: Optional[str] = None,
    project_id: Optional[str] = None,
    outcome: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "deployment_id": str(deployment_id or ""),
        "build_job_id": str(build_job_id or ""),
        "project_id": str(project_id or ""),
        "outcome": str(outcome or ""),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
