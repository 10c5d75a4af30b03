"""deploy_intake/lambda_function.py

Lambda API handler that accepts deployment requests and starts the build.

Routes (via API Gateway proxy):
    POST    /api/v1/deployments                       Body: {"projectId", "sourceVersion"?}
    POST    /api/v1/projects/{project}/deployments    Body: {"sourceVersion"?}
    OPTIONS                                           CORS preflight

Order of work matters. The build is started first and the deployment record
is written second, conditional on its id being new:

  - start fails   -> 502 TRIGGER_FAILED, nothing written
  - write fails   -> build is stopped (best effort), 500, nothing left running
  - both succeed  -> 201 with the Pending deployment

The deployment id is passed to the build as DEPLOYMENT_ID and as the
start_build idempotency token; the build_events Lambda uses it to correlate
phase events back to the record written here.

Environment variables:
    PROJECTS_TABLE                     default: buildor-projects
    DEPLOYMENTS_TABLE                  default: buildor-deployments
    DYNAMODB_REGION                    default: us-west-2
    CODEBUILD_PROJECT_NAME             CodeBuild project to start
    CODEBUILD_PROJECT_NAME_PARAMETER   SSM parameter holding the above when unset
    COGNITO_USER_POOL_ID / COGNITO_CLIENT_ID
    LOG_LEVEL                          default: INFO
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from buildor_shared import store
from buildor_shared.auth import _authenticate
from buildor_shared.build_trigger import start_build, stop_build
from buildor_shared.config import _log_level, _resolve_parameter
from buildor_shared.errors import BuildorError, NotFound, TransientStoreError, TriggerFailed
from buildor_shared.http_utils import (
    _cors_headers,
    _error,
    _error_from,
    _json_body,
    _ok,
    _path_method,
)
from buildor_shared.models import deployment_summary, new_deployment, validate_deployment_input
from buildor_shared.serialization import _emit_structured_observability

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CODEBUILD_PROJECT_NAME = os.environ.get("CODEBUILD_PROJECT_NAME", "")
CODEBUILD_PROJECT_NAME_PARAMETER = os.environ.get(
    "CODEBUILD_PROJECT_NAME_PARAMETER", "/buildor/codebuild/project-name"
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(_log_level())

_COMPONENT = "deploy_intake"


def _codebuild_project() -> str:
    return _resolve_parameter(CODEBUILD_PROJECT_NAME, CODEBUILD_PROJECT_NAME_PARAMETER)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_create(body: Dict[str, Any], path_project_id: Optional[str]) -> Dict[str, Any]:
    fields = validate_deployment_input(body, path_project_id)
    project_id = fields["projectId"]

    project = store.get_project(project_id)
    if project is None:
        raise NotFound(f"Project '{project_id}' not found")

    deployment_id = str(uuid.uuid4())
    codebuild_project = _codebuild_project()

    try:
        build_id = start_build(codebuild_project, project, deployment_id, fields["sourceVersion"])
    except TriggerFailed:
        _emit_structured_observability(
            component=_COMPONENT,
            event="build_trigger_failed",
            deployment_id=deployment_id,
            project_id=project_id,
            error_code=TriggerFailed.code,
        )
        raise

    deployment = new_deployment(deployment_id, project_id, build_id, fields["sourceVersion"])
    try:
        store.put_deployment(deployment)
    except TransientStoreError:
        stopped = stop_build(build_id)
        _emit_structured_observability(
            component=_COMPONENT,
            event="deployment_record_failed",
            deployment_id=deployment_id,
            build_job_id=deployment["buildJobId"],
            project_id=project_id,
            error_code=TransientStoreError.code,
            extra={"build_stopped": stopped},
        )
        return _error(
            500,
            "Failed to record deployment; the build was cancelled",
            code="DEPLOYMENT_CREATE_FAILED",
            retryable=True,
        )

    logger.info(
        "[SUCCESS] Deployment %s created for project %s (build %s)",
        deployment_id,
        project_id,
        build_id,
    )
    _emit_structured_observability(
        component=_COMPONENT,
        event="deployment_created",
        deployment_id=deployment_id,
        build_job_id=deployment["buildJobId"],
        project_id=project_id,
        outcome="Pending",
    )
    return _ok({"deployment": deployment_summary(deployment)}, status_code=201)


# ---------------------------------------------------------------------------
# Path parsing
# ---------------------------------------------------------------------------

_DEPLOYMENTS_PATH = re.compile(r"^(?:/api/v1)?/deployments/?$")
_PROJECT_DEPLOYMENTS_PATH = re.compile(
    r"^(?:/api/v1)?/projects/(?P<project>[A-Za-z0-9_-]+)/deployments/?$"
)


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)
    logger.info("[START] deploy_intake: %s %s", method, path)

    if method == "OPTIONS":
        return {"statusCode": 204, "headers": _cors_headers(), "body": ""}

    _claims, auth_error = _authenticate(event, error_fn=_error)
    if auth_error:
        return auth_error

    nested = _PROJECT_DEPLOYMENTS_PATH.match(path)
    if not nested and not _DEPLOYMENTS_PATH.match(path):
        return _error(404, f"Route not found: {method} {path}")
    if method != "POST":
        return _error(405, "Method not allowed.", code="METHOD_NOT_ALLOWED")

    path_project_id = None
    if nested:
        path_project_id = (event.get("pathParameters") or {}).get("project") or nested.group("project")

    try:
        return _handle_create(_json_body(event), path_project_id)

    except BuildorError as exc:
        logger.info("[INFO] Deployment request rejected: %s (%s)", exc.message, exc.code)
        return _error_from(exc)
    except (ClientError, BotoCoreError) as exc:
        logger.error("[ERROR] AWS error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
    except Exception as exc:
        logger.error("[ERROR] Unexpected error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
