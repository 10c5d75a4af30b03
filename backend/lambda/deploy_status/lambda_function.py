"""deploy_status/lambda_function.py

Read-only Lambda API handler for deployment status and history.

Routes (via API Gateway proxy):
    GET     /api/v1/deployments/{deployment}                       Status snapshot
    GET     /api/v1/projects/{project}/deployments/{deployment}    Status, scoped to project
    GET     /api/v1/projects/{project}/deployments?limit=N         History, newest first
    OPTIONS                                                        CORS preflight

Status reads are strongly consistent, so a caller sees every transition the
build_events Lambda has committed. History goes through the
projectId/createdAt index and may lag by a moment.

Environment variables:
    PROJECTS_TABLE               default: buildor-projects
    DEPLOYMENTS_TABLE            default: buildor-deployments
    DEPLOYMENTS_PROJECT_INDEX    default: projectId-createdAt-index
    DYNAMODB_REGION              default: us-west-2
    COGNITO_USER_POOL_ID / COGNITO_CLIENT_ID
    LOG_LEVEL                    default: INFO
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from buildor_shared import store
from buildor_shared.auth import _authenticate
from buildor_shared.config import _log_level
from buildor_shared.errors import BuildorError, NotFound
from buildor_shared.http_utils import (
    _cors_headers,
    _error,
    _error_from,
    _ok,
    _path_method,
    _query_param,
)
from buildor_shared.models import deployment_summary, deployment_view

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_HISTORY_LIMIT = 10
MAX_HISTORY_LIMIT = 50

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(_log_level())


def _history_limit(raw: Optional[str]) -> int:
    try:
        limit = int(raw) if raw is not None else DEFAULT_HISTORY_LIMIT
    except ValueError:
        return DEFAULT_HISTORY_LIMIT
    if limit < 1:
        return DEFAULT_HISTORY_LIMIT
    return min(limit, MAX_HISTORY_LIMIT)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_get_status(deployment_id: str, project_id: Optional[str] = None) -> Dict[str, Any]:
    deployment = store.get_deployment(deployment_id)
    if deployment is None or (project_id is not None and deployment.get("projectId") != project_id):
        raise NotFound(f"Deployment '{deployment_id}' not found")
    return _ok({"deployment": deployment_view(deployment)})


def _handle_get_history(project_id: str, limit: int) -> Dict[str, Any]:
    if store.get_project(project_id) is None:
        raise NotFound(f"Project '{project_id}' not found")
    deployments = store.list_project_deployments(project_id, limit)
    return _ok({
        "projectId": project_id,
        "deployments": [deployment_summary(d) for d in deployments],
        "count": len(deployments),
    })


# ---------------------------------------------------------------------------
# Path parsing
# ---------------------------------------------------------------------------

_DEPLOYMENT_PATH = re.compile(r"^(?:/api/v1)?/deployments/(?P<deployment>[A-Za-z0-9_-]+)/?$")
_PROJECT_DEPLOYMENT_PATH = re.compile(
    r"^(?:/api/v1)?/projects/(?P<project>[A-Za-z0-9_-]+)/deployments"
    r"(?:/(?P<deployment>[A-Za-z0-9_-]+))?/?$"
)


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)
    logger.info("[START] deploy_status: %s %s", method, path)

    if method == "OPTIONS":
        return {"statusCode": 204, "headers": _cors_headers(), "body": ""}

    _claims, auth_error = _authenticate(event, error_fn=_error)
    if auth_error:
        return auth_error

    if method != "GET":
        return _error(405, "Method not allowed.", code="METHOD_NOT_ALLOWED")

    try:
        m = _DEPLOYMENT_PATH.match(path)
        if m:
            return _handle_get_status(m.group("deployment"))

        m = _PROJECT_DEPLOYMENT_PATH.match(path)
        if m:
            if m.group("deployment"):
                return _handle_get_status(m.group("deployment"), project_id=m.group("project"))
            return _handle_get_history(m.group("project"), _history_limit(_query_param(event, "limit")))

        return _error(404, f"Route not found: {method} {path}")

    except BuildorError as exc:
        logger.info("[INFO] %s rejected: %s (%s)", path, exc.message, exc.code)
        return _error_from(exc)
    except (ClientError, BotoCoreError) as exc:
        logger.error("[ERROR] AWS error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
    except Exception as exc:
        logger.error("[ERROR] Unexpected error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
