"""buildor_shared.models: project and deployment records.

Deployment status is a single string from a closed set. ``is_terminal`` is
the only place that decides whether a status can still change. Build phases
have a fixed order; a deployment's ``phaseIndex`` never moves backwards.
"""

from __future__ import annotations

import re
import uuid
from typing import Any, Dict, List, Optional

from buildor_shared.errors import ValidationError
from buildor_shared.serialization import _now_z

# ---------------------------------------------------------------------------
# Build phases (CodeBuild completed-phase values, in execution order)
# ---------------------------------------------------------------------------

PHASES = (
    "SUBMITTED",
    "PROVISIONING",
    "DOWNLOAD_SOURCE",
    "INSTALL",
    "PRE_BUILD",
    "BUILD",
    "POST_BUILD",
    "UPLOAD_ARTIFACTS",
    "FINALIZING",
)
PHASE_INDEX = {phase: index for index, phase in enumerate(PHASES)}
FINAL_PHASE = "FINALIZING"
NO_PHASE_INDEX = -1

PHASE_SUCCEEDED = "SUCCEEDED"
FAILURE_STATUS_BY_PHASE_STATUS = {
    "FAILED": "Failed",
    "TIMED_OUT": "TimedOut",
    "STOPPED": "Stopped",
    "FAULT": "Fault",
    "CLIENT_ERROR": "ClientError",
}
PHASE_STATUSES = frozenset({PHASE_SUCCEEDED, *FAILURE_STATUS_BY_PHASE_STATUS})

# ---------------------------------------------------------------------------
# Deployment status
# ---------------------------------------------------------------------------

STATUS_PENDING = "Pending"
STATUS_BUILDING = "Building"
STATUS_SUCCEEDED = "Succeeded"

ACTIVE_STATUSES = frozenset({STATUS_PENDING, STATUS_BUILDING})
TERMINAL_STATUSES = frozenset({STATUS_SUCCEEDED, *FAILURE_STATUS_BY_PHASE_STATUS.values()})
ALL_STATUSES = ACTIVE_STATUSES | TERMINAL_STATUSES


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


def _job_id_from_build_id(build_id: str) -> str:
    """Return the build UUID from a build id or ARN.

    ``project:uuid`` and ``arn:aws:codebuild:region:acct:build/project:uuid``
    both reduce to ``uuid``.
    """
    return str(build_id or "").rsplit(":", 1)[-1].strip()


# ---------------------------------------------------------------------------
# Project validation
# ---------------------------------------------------------------------------

_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]{0,49}$")
_REPO_URL_PATTERN = re.compile(r"^https?://[^\s]+$")
_OUTPUT_FOLDER_PATTERN = re.compile(r"^[A-Za-z0-9._-]+(?:/[A-Za-z0-9._-]+)*$")
_SOURCE_VERSION_PATTERN = re.compile(r"^[A-Za-z0-9._/-]{1,255}$")

DEFAULT_COMMANDS = {"preBuild": ["npm install"], "build": ["npm run build"]}
DEFAULT_OUTPUT_FOLDER = "dist"
NEVER_PUBLISHED = "-"
MAX_COMMANDS = 20
MAX_COMMAND_LENGTH = 500


def _validate_command_list(key: str, raw: Any, errors: List[str]) -> List[str]:
    if raw is None or raw == []:
        return list(DEFAULT_COMMANDS[key])
    if not isinstance(raw, list) or not all(isinstance(c, str) for c in raw):
        errors.append(f"commands.{key}: must be an array of strings")
        return []
    commands = [c.strip() for c in raw]
    if len(commands) > MAX_COMMANDS:
        errors.append(f"commands.{key}: at most {MAX_COMMANDS} commands")
    if any(not c or len(c) > MAX_COMMAND_LENGTH for c in commands):
        errors.append(f"commands.{key}: each command must be 1-{MAX_COMMAND_LENGTH} chars")
    return commands


def validate_project_input(body: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a create-project body; raises ValidationError listing every problem."""
    errors: List[str] = []

    name = str(body.get("name") or "").strip()
    if not _NAME_PATTERN.match(name):
        errors.append("name: required, 1-50 chars, must match ^[a-z][a-z0-9_-]*$")

    repo = str(body.get("repositoryUrl") or "").strip()
    if not repo or len(repo) > 2048 or not _REPO_URL_PATTERN.match(repo):
        errors.append("repositoryUrl: required, a valid http(s) URL up to 2048 characters")

    raw_commands = body.get("commands")
    if raw_commands is None:
        raw_commands = {}
    if not isinstance(raw_commands, dict):
        errors.append("commands: must be an object with preBuild and build arrays")
        raw_commands = {}
    commands = {
        key: _validate_command_list(key, raw_commands.get(key), errors)
        for key in ("preBuild", "build")
    }

    output_folder = str(body.get("outputFolder") or DEFAULT_OUTPUT_FOLDER).strip().strip("/")
    if (
        not _OUTPUT_FOLDER_PATTERN.match(output_folder)
        or ".." in output_folder.split("/")
    ):
        errors.append("outputFolder: must be a relative path without '..'")

    if errors:
        raise ValidationError("; ".join(errors), details={"fields": errors})
    return {
        "name": name,
        "repositoryUrl": repo,
        "commands": commands,
        "outputFolder": output_folder,
    }


def _project_uuid(value: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError as exc:
        raise ValidationError("projectId must be a UUID") from exc


def validate_deployment_input(body: Dict[str, Any], project_id: Optional[str] = None) -> Dict[str, Any]:
    """Validate a create-deployment request.

    ``project_id`` comes from the path when the nested route is used. A body
    ``projectId`` is then optional but must name the same project.
    """
    body_project_id = body.get("projectId")
    if body_project_id is not None and not isinstance(body_project_id, str):
        raise ValidationError("projectId must be a string")
    body_project_id = (body_project_id or "").strip()
    path_project_id = (project_id or "").strip()
    if not path_project_id and not body_project_id:
        raise ValidationError("projectId is required")

    project_id = _project_uuid(path_project_id or body_project_id)
    if path_project_id and body_project_id and _project_uuid(body_project_id) != project_id:
        raise ValidationError(
            "projectId in body does not match the project in the path",
            details={"path": project_id, "body": body_project_id},
        )

    source_version = body.get("sourceVersion")
    if source_version is not None:
        if not isinstance(source_version, str):
            raise ValidationError("sourceVersion must be a string")
        source_version = source_version.strip() or None
    if source_version and not _SOURCE_VERSION_PATTERN.match(source_version):
        raise ValidationError("sourceVersion must be a branch, tag, or commit reference")
    return {"projectId": project_id, "sourceVersion": source_version}


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def new_project(fields: Dict[str, Any]) -> Dict[str, Any]:
    now = _now_z()
    return {
        "id": str(uuid.uuid4()),
        "name": fields["name"],
        "repositoryUrl": fields["repositoryUrl"],
        "commands": fields["commands"],
        "outputFolder": fields["outputFolder"],
        "currentDeploymentId": None,
        "lastPublished": NEVER_PUBLISHED,
        "createdAt": now,
        "updatedAt": now,
    }


def new_deployment(
    deployment_id: str,
    project_id: str,
    build_id: str,
    source_version: Optional[str] = None,
) -> Dict[str, Any]:
    now = _now_z()
    item: Dict[str, Any] = {
        "id": deployment_id,
        "projectId": project_id,
        "buildJobId": _job_id_from_build_id(build_id),
        "buildId": build_id,
        "status": STATUS_PENDING,
        "phase": None,
        "phaseIndex": NO_PHASE_INDEX,
        "createdAt": now,
        "updatedAt": now,
    }
    if source_version:
        item["sourceVersion"] = source_version
    return item


def deployment_view(item: Dict[str, Any]) -> Dict[str, Any]:
    """Public shape of a deployment returned by the status query."""
    return {
        "id": item.get("id"),
        "projectId": item.get("projectId"),
        "status": item.get("status"),
        "phase": item.get("phase"),
        "updatedAt": item.get("updatedAt"),
    }


def deployment_summary(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deployment shape returned by intake and history listings."""
    view = deployment_view(item)
    view.update({
        "buildJobId": item.get("buildJobId"),
        "createdAt": item.get("createdAt"),
    })
    for optional in ("sourceVersion", "completedAt", "buildNumber", "buildStartedAt", "buildEndedAt"):
        if item.get(optional) is not None:
            view[optional] = item[optional]
    return view
