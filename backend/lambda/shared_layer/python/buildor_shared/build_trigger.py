"""buildor_shared.build_trigger: start (and compensate) CodeBuild builds.

The CodeBuild project is shared by every Buildor project; what to build
travels in environment variable overrides and a per-build buildspec rendered
from the project's commands. ``DEPLOYMENT_ID`` rides along so phase events
can be correlated back to the deployment record.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from buildor_shared.aws_clients import _get_codebuild
from buildor_shared.errors import TriggerFailed

logger = logging.getLogger(__name__)

DEPLOYMENT_ID_VAR = "DEPLOYMENT_ID"
ARTIFACTS_DIR = "dist"


def render_buildspec(project: Dict[str, Any], deployment_id: str, source_version: Optional[str] = None) -> str:
    """Render a buildspec v0.2 (as JSON) for one project build."""
    commands = project.get("commands") or {}
    output_folder = project.get("outputFolder") or ARTIFACTS_DIR

    install = ["echo Download project", "git clone $REPO_URL $PROJECT_NAME"]
    if source_version:
        install.append("git -C $PROJECT_NAME checkout $SOURCE_VERSION")

    build = list(commands.get("build") or [])
    build.extend([
        "echo Move build output to artifacts location",
        f"mv {output_folder} ../{ARTIFACTS_DIR}",
        "cd ..",
    ])

    buildspec = {
        "version": "0.2",
        "phases": {
            "install": {"commands": install},
            "pre_build": {
                "commands": [
                    "echo Install project dependencies",
                    "cd $PROJECT_NAME",
                    *(commands.get("preBuild") or []),
                ],
            },
            "build": {"commands": build},
            "post_build": {"commands": ["echo Build has completed and artifacts were moved"]},
        },
        "artifacts": {
            "discard-paths": "no",
            "files": [f"{ARTIFACTS_DIR}/**/*"],
            "name": f"{project['name']}-dist-{deployment_id}.zip",
        },
    }
    return json.dumps(buildspec)


def _env_overrides(project: Dict[str, Any], deployment_id: str, source_version: Optional[str]) -> List[Dict[str, str]]:
    variables = [
        ("PROJECT_ID", project["id"]),
        ("PROJECT_NAME", project["name"]),
        ("REPO_URL", project["repositoryUrl"]),
        (DEPLOYMENT_ID_VAR, deployment_id),
    ]
    if source_version:
        variables.append(("SOURCE_VERSION", source_version))
    return [{"name": name, "value": str(value), "type": "PLAINTEXT"} for name, value in variables]


def start_build(
    codebuild_project: str,
    project: Dict[str, Any],
    deployment_id: str,
    source_version: Optional[str] = None,
) -> str:
    """Start a CodeBuild build, returns the full build ID.

    The deployment id doubles as the idempotency token, so a retried start
    for the same deployment cannot launch a second build.
    """
    env_overrides = _env_overrides(project, deployment_id, source_version)
    buildspec = render_buildspec(project, deployment_id, source_version)
    try:
        build_resp = _get_codebuild().start_build(
            projectName=codebuild_project,
            environmentVariablesOverride=env_overrides,
            buildspecOverride=buildspec,
            idempotencyToken=deployment_id,
        )
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] CodeBuild start_build failed for deployment %s: %s", deployment_id, exc)
        raise TriggerFailed(
            "Build service failed to start the build",
            details={"deploymentId": deployment_id},
        ) from exc

    build_id = str((build_resp.get("build") or {}).get("id") or "")
    if not build_id:
        logger.error("[ERROR] CodeBuild start_build returned no build id for deployment %s", deployment_id)
        raise TriggerFailed(
            "Build service did not report the started build",
            details={"deploymentId": deployment_id},
        )

    logger.info("[INFO] CodeBuild started: %s (deployment %s)", build_id, deployment_id)
    return build_id


def stop_build(build_id: str) -> bool:
    """Best-effort stop, used when the deployment record could not be written."""
    try:
        _get_codebuild().stop_build(id=build_id)
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] Failed to stop orphaned build %s: %s", build_id, exc)
        return False
    logger.info("[INFO] Stopped build %s after failed record write", build_id)
    return True
