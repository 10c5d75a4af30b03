"""build_events/lambda_function.py

EventBridge-triggered Lambda that reconciles deployment status with CodeBuild.

Triggered by the "CodeBuild Build Phase Change" rule for the shared Buildor
build project. EventBridge delivers at least once and in no particular
order, with up to 3 retries when this handler fails. Every write below is a
DynamoDB conditional update, so duplicates, stale phases, and events that
arrive after the build finished fall out as rejected conditions:

  completed-phase-status != SUCCEEDED  -> Failed/TimedOut/Stopped/Fault/ClientError
  FINALIZING + SUCCEEDED               -> Succeeded, then promote the project
  any other phase + SUCCEEDED          -> Building, only if the phase moves forward

Terminal statuses are never left. A build whose deployment record is not
found yet (intake writes the record right after starting the build) fails
the invocation so EventBridge redelivers it; once the event is older than
ORPHAN_GRACE_SECONDS it is logged and dropped instead.

Environment variables:
    PROJECTS_TABLE                     default: buildor-projects
    DEPLOYMENTS_TABLE                  default: buildor-deployments
    DEPLOYMENTS_BUILD_JOB_INDEX        default: buildJobId-index
    DYNAMODB_REGION                    default: us-west-2
    CODEBUILD_PROJECT_NAME             events from other build projects are skipped
    CODEBUILD_PROJECT_NAME_PARAMETER   SSM parameter holding the above when unset
    ORPHAN_GRACE_SECONDS               default: 120
    LOG_LEVEL                          default: INFO
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from buildor_shared import store
from buildor_shared.build_trigger import DEPLOYMENT_ID_VAR
from buildor_shared.config import _int_env, _log_level, _resolve_parameter
from buildor_shared.errors import OrphanEvent, TransientStoreError
from buildor_shared.models import (
    FAILURE_STATUS_BY_PHASE_STATUS,
    FINAL_PHASE,
    PHASE_INDEX,
    PHASE_STATUSES,
    PHASE_SUCCEEDED,
    STATUS_SUCCEEDED,
    _job_id_from_build_id,
    is_terminal,
)
from buildor_shared.serialization import (
    _emit_structured_observability,
    _iso_z,
    _now_z,
    _parse_build_time,
    _parse_iso,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CODEBUILD_PROJECT_NAME = os.environ.get("CODEBUILD_PROJECT_NAME", "")
CODEBUILD_PROJECT_NAME_PARAMETER = os.environ.get(
    "CODEBUILD_PROJECT_NAME_PARAMETER", "/buildor/codebuild/project-name"
)
ORPHAN_GRACE_SECONDS = _int_env("ORPHAN_GRACE_SECONDS", 120)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(_log_level())

_COMPONENT = "build_events"

OUTCOME_PROGRESSED = "progressed"
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED_TERMINAL = "ignored_terminal"
OUTCOME_ORPHAN_DROPPED = "orphan_dropped"
OUTCOME_SKIPPED = "skipped"


@dataclass
class BuildEvent:
    build_id: str
    build_job_id: str
    project_name: str
    phase: str
    phase_status: str
    deployment_id: Optional[str] = None
    build_number: Optional[int] = None
    event_time: Optional[dt.datetime] = None
    build_started_at: Optional[str] = None
    build_ended_at: Optional[str] = None

    @property
    def is_final_success(self) -> bool:
        return self.phase == FINAL_PHASE and self.phase_status == PHASE_SUCCEEDED


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _codebuild_project() -> str:
    return _resolve_parameter(CODEBUILD_PROJECT_NAME, CODEBUILD_PROJECT_NAME_PARAMETER)


# ---------------------------------------------------------------------------
# Event parsing
# ---------------------------------------------------------------------------


def _build_env(info: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """Environment variables the build ran with; None when the list is malformed."""
    environment = info.get("environment") or {}
    if not isinstance(environment, dict):
        return None
    items = environment.get("environment-variables") or []
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        return None
    return {str(item.get("name") or ""): str(item.get("value") or "") for item in items}


def _build_time(value: Any, label: str, build_id: str) -> Optional[str]:
    if not value:
        return None
    parsed = _parse_build_time(value)
    if parsed is None:
        logger.warning("[WARNING] Ignoring unparseable %s %r for build %s", label, value, build_id)
        return None
    return _iso_z(parsed)


def _parse_event(event: Dict[str, Any]) -> Tuple[Optional[BuildEvent], str]:
    """Return (BuildEvent, "") or (None, skip reason)."""
    detail = event.get("detail")
    if not isinstance(detail, dict):
        return None, "missing detail"

    build_id = str(detail.get("build-id") or "")
    build_job_id = _job_id_from_build_id(build_id)
    if not build_job_id:
        return None, "missing build-id"

    project_name = str(detail.get("project-name") or "")
    if project_name != _codebuild_project():
        return None, f"not our build project: {project_name}"

    phase = str(detail.get("completed-phase") or "")
    phase_status = str(detail.get("completed-phase-status") or "")
    if phase not in PHASE_INDEX:
        return None, f"unknown phase {phase!r}"
    if phase_status not in PHASE_STATUSES:
        return None, f"unknown phase status {phase_status!r}"

    info = detail.get("additional-information") or {}
    if not isinstance(info, dict):
        return None, "malformed additional-information"
    env_vars = _build_env(info)
    if env_vars is None:
        return None, "malformed environment-variables"

    build_number = info.get("build-number")
    try:
        build_number = int(build_number) if build_number is not None else None
    except (TypeError, ValueError):
        build_number = None

    return BuildEvent(
        build_id=build_id,
        build_job_id=build_job_id,
        project_name=project_name,
        phase=phase,
        phase_status=phase_status,
        deployment_id=env_vars.get(DEPLOYMENT_ID_VAR) or None,
        build_number=build_number,
        event_time=_parse_iso(event.get("time") or ""),
        build_started_at=_build_time(info.get("build-start-time"), "build-start-time", build_id),
        build_ended_at=_build_time(event.get("time"), "event time", build_id),
    ), ""


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def _correlate(evt: BuildEvent) -> Optional[Dict[str, Any]]:
    """Find the deployment that owns the event's build job."""
    if evt.deployment_id:
        deployment = store.get_deployment(evt.deployment_id)
        if deployment and deployment.get("buildJobId") == evt.build_job_id:
            return deployment
        if deployment:
            logger.warning(
                "[WARNING] Deployment %s belongs to job %s, not %s; falling back to index",
                evt.deployment_id,
                deployment.get("buildJobId"),
                evt.build_job_id,
            )
    return store.find_deployment_by_job(evt.build_job_id)


def _promote(deployment: Dict[str, Any], now: str) -> None:
    updated = store.promote_project(
        deployment["projectId"],
        deployment["id"],
        deployment["createdAt"],
        now,
    )
    if updated is None:
        logger.info(
            "[SKIP] Project %s already points at deployment %s or a newer one",
            deployment["projectId"],
            deployment["id"],
        )
        return
    logger.info("[SUCCESS] Project %s now serves deployment %s", deployment["projectId"], deployment["id"])


def _rejected(evt: BuildEvent, deployment_id: str, now: str) -> str:
    """Classify a rejected conditional write; re-read only to explain it."""
    current = store.get_deployment(deployment_id) or {}
    status = current.get("status")
    if status == STATUS_SUCCEEDED and evt.is_final_success:
        _promote(current, now)
    outcome = OUTCOME_IGNORED_TERMINAL if is_terminal(status) else OUTCOME_DUPLICATE
    logger.info(
        "[SKIP] %s/%s for deployment %s not applied (status=%s, phase=%s): %s",
        evt.phase,
        evt.phase_status,
        deployment_id,
        status,
        current.get("phase"),
        outcome,
    )
    return outcome


def _orphan(evt: BuildEvent) -> str:
    age = (_utcnow() - evt.event_time).total_seconds() if evt.event_time else None
    if age is not None and age < ORPHAN_GRACE_SECONDS:
        raise OrphanEvent(evt.build_job_id, age)
    logger.warning(
        "[ORPHAN] No deployment for build %s (%s/%s); dropping",
        evt.build_id,
        evt.phase,
        evt.phase_status,
    )
    _emit_structured_observability(
        component=_COMPONENT,
        event="orphan_build_event",
        deployment_id=evt.deployment_id,
        build_job_id=evt.build_job_id,
        outcome=OUTCOME_ORPHAN_DROPPED,
        error_code=OrphanEvent.code,
        extra={"phase": evt.phase, "phase_status": evt.phase_status, "age_seconds": age},
    )
    return OUTCOME_ORPHAN_DROPPED


def _reconcile(evt: BuildEvent) -> Tuple[str, Optional[Dict[str, Any]]]:
    deployment = _correlate(evt)
    if deployment is None:
        return _orphan(evt), None

    deployment_id = deployment["id"]
    now = _now_z()

    if is_terminal(deployment.get("status")):
        if deployment["status"] == STATUS_SUCCEEDED and evt.is_final_success:
            _promote(deployment, now)
        return OUTCOME_IGNORED_TERMINAL, deployment

    if evt.phase_status != PHASE_SUCCEEDED:
        updated = store.complete_deployment(
            deployment_id,
            evt.build_job_id,
            FAILURE_STATUS_BY_PHASE_STATUS[evt.phase_status],
            evt.phase,
            evt.phase_status,
            now,
            evt.build_number,
            evt.build_started_at,
            evt.build_ended_at,
        )
        if updated is None:
            return _rejected(evt, deployment_id, now), deployment
        return OUTCOME_FAILED, updated

    if evt.phase == FINAL_PHASE:
        updated = store.complete_deployment(
            deployment_id,
            evt.build_job_id,
            STATUS_SUCCEEDED,
            evt.phase,
            evt.phase_status,
            now,
            evt.build_number,
            evt.build_started_at,
            evt.build_ended_at,
        )
        if updated is None:
            return _rejected(evt, deployment_id, now), deployment
        _promote(updated, now)
        return OUTCOME_SUCCEEDED, updated

    updated = store.advance_deployment(
        deployment_id,
        evt.build_job_id,
        evt.phase,
        evt.phase_status,
        now,
        evt.build_number,
        evt.build_started_at,
    )
    if updated is None:
        return _rejected(evt, deployment_id, now), deployment
    return OUTCOME_PROGRESSED, updated


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """EventBridge handler for CodeBuild phase changes.

    Returns the outcome for logging. Raises (so EventBridge retries) on
    orphans inside the grace window and on store failures.
    """
    logger.info("[START] build_events: %s", json.dumps(event.get("detail") or {}, default=str)[:2000])

    evt, reason = _parse_event(event)
    if evt is None:
        logger.info("[SKIP] %s", reason)
        return {"outcome": OUTCOME_SKIPPED, "reason": reason}

    try:
        outcome, deployment = _reconcile(evt)
    except OrphanEvent as exc:
        logger.info("[ORPHAN] %s; failing for redelivery", exc.message)
        raise
    except TransientStoreError as exc:
        logger.error("[ERROR] Store failure for build %s: %s", evt.build_id, exc.message)
        _emit_structured_observability(
            component=_COMPONENT,
            event="reconcile_failed",
            deployment_id=evt.deployment_id,
            build_job_id=evt.build_job_id,
            error_code=exc.code,
            extra={"phase": evt.phase, "phase_status": evt.phase_status},
        )
        raise

    result = {
        "outcome": outcome,
        "buildJobId": evt.build_job_id,
        "phase": evt.phase,
        "phaseStatus": evt.phase_status,
    }
    if deployment:
        result.update({"deploymentId": deployment["id"], "status": deployment.get("status")})

    logger.info("[INFO] Build %s %s/%s: %s", evt.build_job_id, evt.phase, evt.phase_status, outcome)
    _emit_structured_observability(
        component=_COMPONENT,
        event="build_phase_reconciled",
        deployment_id=result.get("deploymentId"),
        build_job_id=evt.build_job_id,
        project_id=(deployment or {}).get("projectId"),
        outcome=outcome,
        extra={"phase": evt.phase, "phase_status": evt.phase_status, "status": result.get("status")},
    )
    return result
