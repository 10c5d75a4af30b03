"""project_service/lambda_function.py

Lambda API handler for the Buildor project registry.

Routes (via API Gateway proxy):
    POST    /api/v1/projects             Register a project
    GET     /api/v1/projects             List projects (sorted by name)
    GET     /api/v1/projects/{project}   Get one project
    OPTIONS /api/v1/projects*            CORS preflight

A project records where the site source lives and how to build it; the
deployment Lambdas read it when starting a build, and the build event
reconciler promotes ``currentDeploymentId`` when a deployment succeeds.

Environment variables:
    PROJECTS_TABLE         default: buildor-projects
    DYNAMODB_REGION        default: us-west-2
    COGNITO_USER_POOL_ID   Cognito pool used for cookie auth
    COGNITO_CLIENT_ID      Cognito app client (token audience)
    LOG_LEVEL              default: INFO
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
    _json_body,
    _ok,
    _path_method,
)
from buildor_shared.models import new_project, validate_project_input

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(_log_level())


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_create(body: Dict[str, Any]) -> Dict[str, Any]:
    fields = validate_project_input(body)
    project = new_project(fields)
    store.put_project(project)
    logger.info("[SUCCESS] Registered project %s (%s)", project["name"], project["id"])
    return _ok({"project": project}, status_code=201)


def _handle_list() -> Dict[str, Any]:
    projects = store.list_projects()
    projects.sort(key=lambda p: (p.get("name") or "", p.get("id") or ""))
    return _ok({"projects": projects, "count": len(projects)})


def _handle_get(project_id: str) -> Dict[str, Any]:
    project = store.get_project(project_id)
    if project is None:
        raise NotFound(f"Project '{project_id}' not found")
    return _ok({"project": project})


# ---------------------------------------------------------------------------
# Path parsing
# ---------------------------------------------------------------------------

_PROJECTS_PATH = re.compile(r"^(?:/api/v1)?/projects(?:/(?P<project>[A-Za-z0-9_-]+))?/?$")


def _project_param(event: Dict[str, Any], path: str) -> Optional[str]:
    path_params = event.get("pathParameters") or {}
    project = path_params.get("project")
    if project:
        return project
    m = _PROJECTS_PATH.match(path)
    return m.group("project") if m else None


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)
    logger.info("[START] project_service: %s %s", method, path)

    if method == "OPTIONS":
        return {"statusCode": 204, "headers": _cors_headers(), "body": ""}

    _claims, auth_error = _authenticate(event, error_fn=_error)
    if auth_error:
        return auth_error

    if not _PROJECTS_PATH.match(path) and not (event.get("pathParameters") or {}).get("project"):
        return _error(404, f"Route not found: {method} {path}")
    project_id = _project_param(event, path)

    try:
        if method == "POST" and project_id is None:
            return _handle_create(_json_body(event))
        if method == "GET" and project_id is None:
            return _handle_list()
        if method == "GET" and project_id:
            return _handle_get(project_id)
        return _error(405, "Method not allowed.", code="METHOD_NOT_ALLOWED")

    except BuildorError as exc:
        logger.info("[INFO] %s rejected: %s (%s)", path, exc.message, exc.code)
        return _error_from(exc)
    except (ClientError, BotoCoreError) as exc:
        logger.error("[ERROR] AWS error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
    except Exception as exc:
        logger.error("[ERROR] Unexpected error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
