"""buildor_shared.store: project and deployment persistence on DynamoDB.

Every lifecycle guard is a ``ConditionExpression``, so concurrent or
redelivered build events serialize in the table rather than in handler code.
Conditional updates return the new item when applied and ``None`` when the
condition rejected them (duplicate, stale, or already terminal). Any other
store failure is raised as ``TransientStoreError``.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from buildor_shared.aws_clients import _get_ddb
from buildor_shared.errors import TransientStoreError
from buildor_shared.models import PHASE_INDEX, STATUS_BUILDING, STATUS_PENDING
from buildor_shared.serialization import _deserialize, _serialize, _serialize_item

logger = logging.getLogger(__name__)

PROJECTS_TABLE = os.environ.get("PROJECTS_TABLE", "buildor-projects")
DEPLOYMENTS_TABLE = os.environ.get("DEPLOYMENTS_TABLE", "buildor-deployments")
DEPLOYMENTS_BUILD_JOB_INDEX = os.environ.get("DEPLOYMENTS_BUILD_JOB_INDEX", "buildJobId-index")
DEPLOYMENTS_PROJECT_INDEX = os.environ.get("DEPLOYMENTS_PROJECT_INDEX", "projectId-createdAt-index")

_ACTIVE_CONDITION = "attribute_exists(id) AND buildJobId = :job AND #status IN (:pending, :building)"


def _is_conditional_check_failed(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _key(record_id: str) -> Dict[str, Any]:
    return {"id": {"S": record_id}}


def _store_failure(operation: str, exc: Exception) -> TransientStoreError:
    logger.error("[ERROR] DynamoDB %s failed: %s", operation, exc)
    return TransientStoreError(f"DynamoDB {operation} failed", details={"operation": operation})


def _get(table: str, record_id: str) -> Optional[Dict[str, Any]]:
    try:
        resp = _get_ddb().get_item(TableName=table, Key=_key(record_id), ConsistentRead=True)
    except (BotoCoreError, ClientError) as exc:
        raise _store_failure("get_item", exc) from exc
    item = resp.get("Item")
    return _deserialize(item) if item else None


def _conditional_update(table: str, record_id: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
    try:
        resp = _get_ddb().update_item(
            TableName=table,
            Key=_key(record_id),
            ReturnValues="ALL_NEW",
            **kwargs,
        )
    except ClientError as exc:
        if _is_conditional_check_failed(exc):
            return None
        raise _store_failure("update_item", exc) from exc
    except BotoCoreError as exc:
        raise _store_failure("update_item", exc) from exc
    return _deserialize(resp.get("Attributes") or {})


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def get_project(project_id: str) -> Optional[Dict[str, Any]]:
    return _get(PROJECTS_TABLE, project_id)


def put_project(item: Dict[str, Any]) -> None:
    try:
        _get_ddb().put_item(
            TableName=PROJECTS_TABLE,
            Item=_serialize_item(item),
            ConditionExpression="attribute_not_exists(id)",
        )
    except (BotoCoreError, ClientError) as exc:
        raise _store_failure("put_item", exc) from exc


def list_projects() -> List[Dict[str, Any]]:
    ddb = _get_ddb()
    try:
        resp = ddb.scan(TableName=PROJECTS_TABLE)
        items = resp.get("Items", [])
        while resp.get("LastEvaluatedKey"):
            resp = ddb.scan(TableName=PROJECTS_TABLE, ExclusiveStartKey=resp["LastEvaluatedKey"])
            items.extend(resp.get("Items", []))
    except (BotoCoreError, ClientError) as exc:
        raise _store_failure("scan", exc) from exc
    return [_deserialize(raw) for raw in items]


def promote_project(
    project_id: str,
    deployment_id: str,
    deployment_created_at: str,
    now: str,
) -> Optional[Dict[str, Any]]:
    """Point the project at a succeeded deployment unless a newer one is current.

    Re-applying the same promotion is a no-op, as is promoting a deployment
    created before the current one.
    """
    return _conditional_update(
        PROJECTS_TABLE,
        project_id,
        UpdateExpression=(
            "SET currentDeploymentId = :deployment_id, "
            "currentDeploymentCreatedAt = :created_at, "
            "lastPublished = :now, updatedAt = :now"
        ),
        ConditionExpression=(
            "attribute_exists(id) AND (attribute_not_exists(currentDeploymentCreatedAt) "
            "OR currentDeploymentCreatedAt < :created_at)"
        ),
        ExpressionAttributeValues={
            ":deployment_id": _serialize(deployment_id),
            ":created_at": _serialize(deployment_created_at),
            ":now": _serialize(now),
        },
    )


# ---------------------------------------------------------------------------
# Deployments
# ---------------------------------------------------------------------------


def get_deployment(deployment_id: str) -> Optional[Dict[str, Any]]:
    return _get(DEPLOYMENTS_TABLE, deployment_id)


def put_deployment(item: Dict[str, Any]) -> None:
    try:
        _get_ddb().put_item(
            TableName=DEPLOYMENTS_TABLE,
            Item=_serialize_item(item),
            ConditionExpression="attribute_not_exists(id)",
        )
    except (BotoCoreError, ClientError) as exc:
        raise _store_failure("put_item", exc) from exc


def find_deployment_by_job(build_job_id: str) -> Optional[Dict[str, Any]]:
    """Look up the deployment owning a build job via the buildJobId index."""
    try:
        resp = _get_ddb().query(
            TableName=DEPLOYMENTS_TABLE,
            IndexName=DEPLOYMENTS_BUILD_JOB_INDEX,
            KeyConditionExpression="buildJobId = :job",
            ExpressionAttributeValues={":job": _serialize(build_job_id)},
            Limit=1,
        )
    except (BotoCoreError, ClientError) as exc:
        raise _store_failure("query", exc) from exc
    items = resp.get("Items") or []
    if not items:
        return None
    # Index projections may be partial; re-read the base item consistently.
    return get_deployment(_deserialize(items[0])["id"])


def list_project_deployments(project_id: str, limit: int) -> List[Dict[str, Any]]:
    """Newest-first deployments of one project."""
    try:
        resp = _get_ddb().query(
            TableName=DEPLOYMENTS_TABLE,
            IndexName=DEPLOYMENTS_PROJECT_INDEX,
            KeyConditionExpression="projectId = :project_id",
            ExpressionAttributeValues={":project_id": _serialize(project_id)},
            ScanIndexForward=False,
            Limit=limit,
        )
    except (BotoCoreError, ClientError) as exc:
        raise _store_failure("query", exc) from exc
    return [_deserialize(raw) for raw in resp.get("Items", [])]


def _transition(
    status_clause: str,
    build_job_id: str,
    phase: str,
    phase_status: str,
    now: str,
    recorded: Dict[str, Any],
) -> Tuple[str, Dict[str, Any]]:
    """SET clause and values shared by every deployment transition.

    ``recorded`` maps optional build facts (number, timing) to their values;
    unknown ones are left untouched on the item.
    """
    expression = (
        f"SET {status_clause}, #phase = :phase, phaseIndex = :phase_index, "
        "phaseStatus = :phase_status, updatedAt = :now"
    )
    values = {
        ":job": _serialize(build_job_id),
        ":pending": _serialize(STATUS_PENDING),
        ":building": _serialize(STATUS_BUILDING),
        ":phase": _serialize(phase),
        ":phase_index": _serialize(PHASE_INDEX[phase]),
        ":phase_status": _serialize(phase_status),
        ":now": _serialize(now),
    }
    for attribute, value in recorded.items():
        if value is None:
            continue
        expression += f", {attribute} = :{attribute}"
        values[f":{attribute}"] = _serialize(value)
    return expression, values


def complete_deployment(
    deployment_id: str,
    build_job_id: str,
    status: str,
    phase: str,
    phase_status: str,
    now: str,
    build_number: Optional[int] = None,
    build_started_at: Optional[str] = None,
    build_ended_at: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Move an active deployment to a terminal status, regardless of phase order.

    ``completedAt`` is the build's own end time when the event carried one.
    """
    expression, values = _transition(
        "#status = :status",
        build_job_id,
        phase,
        phase_status,
        now,
        {
            "buildNumber": build_number,
            "buildStartedAt": build_started_at,
            "buildEndedAt": build_ended_at,
            "completedAt": build_ended_at or now,
        },
    )
    values[":status"] = _serialize(status)
    return _conditional_update(
        DEPLOYMENTS_TABLE,
        deployment_id,
        UpdateExpression=expression,
        ConditionExpression=_ACTIVE_CONDITION,
        ExpressionAttributeNames={"#status": "status", "#phase": "phase"},
        ExpressionAttributeValues=values,
    )


def advance_deployment(
    deployment_id: str,
    build_job_id: str,
    phase: str,
    phase_status: str,
    now: str,
    build_number: Optional[int] = None,
    build_started_at: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Record forward progress; rejected unless the phase is strictly later."""
    expression, values = _transition(
        "#status = :building",
        build_job_id,
        phase,
        phase_status,
        now,
        {"buildNumber": build_number, "buildStartedAt": build_started_at},
    )
    return _conditional_update(
        DEPLOYMENTS_TABLE,
        deployment_id,
        UpdateExpression=expression,
        ConditionExpression=_ACTIVE_CONDITION + " AND phaseIndex < :phase_index",
        ExpressionAttributeNames={"#status": "status", "#phase": "phase"},
        ExpressionAttributeValues=values,
    )
