"""build_events tests: phase-change reconciliation against an in-memory table.

Covers ordered and unordered delivery, duplicates, terminal sinks, orphan
handling, project promotion, and store outages.
"""

from __future__ import annotations

import datetime as dt
import importlib.util
import os
import sys
import unittest
from unittest.mock import patch

from botocore.exceptions import ClientError

_HERE = os.path.dirname(os.path.abspath(__file__))
_LAYER = os.path.join(_HERE, "..", "shared_layer")
sys.path.insert(0, os.path.join(_LAYER, "python"))
sys.path.insert(0, _LAYER)

from buildor_shared import store  # noqa: E402
from buildor_shared.errors import OrphanEvent, TransientStoreError  # noqa: E402
from buildor_shared.models import (  # noqa: E402
    PHASES,
    new_deployment,
    new_project,
    validate_project_input,
)
from fake_ddb import FakeDdb  # noqa: E402

_SPEC = importlib.util.spec_from_file_location(
    "build_events_lambda",
    os.path.join(_HERE, "lambda_function.py"),
)
build_events = importlib.util.module_from_spec(_SPEC)
# dataclass field resolution looks the module up by name
sys.modules[_SPEC.name] = build_events
_SPEC.loader.exec_module(build_events)

CODEBUILD_PROJECT = "buildor-builds"
JOB_ID = "0c6f0f42-6d7a-4a0e-9f21-5f3d2b1a9c01"
BUILD_ID = f"{CODEBUILD_PROJECT}:{JOB_ID}"


def _iso(moment: dt.datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def _phase_event(
    phase: str,
    status: str = "SUCCEEDED",
    *,
    build_id: str = BUILD_ID,
    deployment_id: str | None = None,
    project_name: str = CODEBUILD_PROJECT,
    time: str | None = None,
    build_number: int | None = None,
    build_start_time: str | None = None,
) -> dict:
    env_vars = [
        {"name": "PROJECT_NAME", "value": "solana-pay", "type": "PLAINTEXT"},
    ]
    if deployment_id:
        env_vars.append({"name": "DEPLOYMENT_ID", "value": deployment_id, "type": "PLAINTEXT"})
    info = {"environment": {"environment-variables": env_vars}}
    if build_number is not None:
        info["build-number"] = build_number
    if build_start_time is not None:
        info["build-start-time"] = build_start_time
    return {
        "version": "0",
        "detail-type": "CodeBuild Build Phase Change",
        "source": "aws.codebuild",
        "time": time or _iso(dt.datetime.now(dt.timezone.utc)),
        "detail": {
            "build-id": build_id,
            "project-name": project_name,
            "completed-phase": phase,
            "completed-phase-status": status,
            "additional-information": info,
        },
    }


class BuildEventsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.ddb = FakeDdb(indexes={
            store.DEPLOYMENTS_BUILD_JOB_INDEX: ("buildJobId", None),
            store.DEPLOYMENTS_PROJECT_INDEX: ("projectId", "createdAt"),
        })
        for patcher in (
            patch.object(store, "_get_ddb", return_value=self.ddb),
            patch.object(build_events, "CODEBUILD_PROJECT_NAME", CODEBUILD_PROJECT),
        ):
            patcher.start()
            self.addCleanup(patcher.stop)

        self.project = new_project(validate_project_input({
            "name": "solana-pay",
            "repositoryUrl": "https://github.com/example/solana-pay.git",
        }))
        store.put_project(self.project)
        self.deployment = self._seed_deployment(BUILD_ID, "2026-03-01T10:00:00.000Z")

    def _seed_deployment(self, build_id: str, created_at: str, status: str | None = None) -> dict:
        item = new_deployment(
            deployment_id=f"dep-{build_id.rsplit(':', 1)[-1]}",
            project_id=self.project["id"],
            build_id=build_id,
        )
        item["createdAt"] = item["updatedAt"] = created_at
        if status:
            item["status"] = status
        store.put_deployment(item)
        return item

    def _handle(self, phase: str, status: str = "SUCCEEDED", **kwargs) -> dict:
        kwargs.setdefault("deployment_id", self.deployment["id"])
        return build_events.lambda_handler(_phase_event(phase, status, **kwargs), None)

    def _stored(self, deployment_id: str | None = None) -> dict:
        return self.ddb.item(store.DEPLOYMENTS_TABLE, deployment_id or self.deployment["id"])

    def _project(self) -> dict:
        return self.ddb.item(store.PROJECTS_TABLE, self.project["id"])


class HappyPathTests(BuildEventsTestCase):
    def test_ordered_phases_end_in_success_and_promote_project(self) -> None:
        outcomes = [self._handle(phase)["outcome"] for phase in PHASES]

        self.assertEqual(outcomes[:-1], ["progressed"] * (len(PHASES) - 1))
        self.assertEqual(outcomes[-1], "succeeded")
        stored = self._stored()
        self.assertEqual(stored["status"], "Succeeded")
        self.assertEqual(stored["phase"], "FINALIZING")
        self.assertIn("completedAt", stored)

        project = self._project()
        self.assertEqual(project["currentDeploymentId"], self.deployment["id"])
        self.assertEqual(project["currentDeploymentCreatedAt"], self.deployment["createdAt"])
        self.assertNotEqual(project["lastPublished"], "-")

    def test_first_progress_moves_pending_to_building(self) -> None:
        result = self._handle("SUBMITTED")

        self.assertEqual(result["outcome"], "progressed")
        self.assertEqual(result["status"], "Building")
        stored = self._stored()
        self.assertEqual(stored["status"], "Building")
        self.assertEqual(stored["phase"], "SUBMITTED")
        self.assertEqual(stored["phaseIndex"], 0)
        self.assertNotIn("completedAt", stored)

    def test_build_number_is_recorded(self) -> None:
        self._handle("PROVISIONING", build_number=42)
        self.assertEqual(self._stored()["buildNumber"], 42)

    def test_build_arn_is_normalized_to_job_id(self) -> None:
        arn = f"arn:aws:codebuild:us-west-2:123456789012:build/{BUILD_ID}"
        result = self._handle("INSTALL", build_id=arn)
        self.assertEqual(result["outcome"], "progressed")
        self.assertEqual(result["buildJobId"], JOB_ID)

    def test_correlates_through_index_without_deployment_env_var(self) -> None:
        result = build_events.lambda_handler(_phase_event("PRE_BUILD"), None)

        self.assertEqual(result["outcome"], "progressed")
        self.assertEqual(result["deploymentId"], self.deployment["id"])
        self.assertEqual(self.ddb.count("query"), 1)

    def test_mismatched_deployment_env_var_falls_back_to_index(self) -> None:
        other = self._seed_deployment("buildor-builds:other-job", "2026-03-01T09:00:00.000Z")

        result = self._handle("BUILD", deployment_id=other["id"])

        self.assertEqual(result["deploymentId"], self.deployment["id"])
        self.assertEqual(self._stored(other["id"])["status"], "Pending")


class BuildTimingTests(BuildEventsTestCase):
    def test_start_time_is_recorded_on_progress(self) -> None:
        self._handle("PROVISIONING", build_start_time="Mar 1, 2026 10:00:05 AM")

        stored = self._stored()
        self.assertEqual(stored["buildStartedAt"], "2026-03-01T10:00:05.000Z")
        self.assertNotIn("buildEndedAt", stored)

    def test_success_completes_at_build_end_time(self) -> None:
        self._handle(
            "FINALIZING",
            time="2026-03-01T10:04:30Z",
            build_start_time="Mar 1, 2026 10:00:05 AM",
        )

        stored = self._stored()
        self.assertEqual(stored["status"], "Succeeded")
        self.assertEqual(stored["buildStartedAt"], "2026-03-01T10:00:05.000Z")
        self.assertEqual(stored["buildEndedAt"], "2026-03-01T10:04:30.000Z")
        self.assertEqual(stored["completedAt"], "2026-03-01T10:04:30.000Z")

    def test_failure_completes_at_build_end_time(self) -> None:
        self._handle("BUILD", "FAILED", time="2026-03-01T10:02:00Z")

        stored = self._stored()
        self.assertEqual(stored["status"], "Failed")
        self.assertEqual(stored["completedAt"], "2026-03-01T10:02:00.000Z")

    def test_iso_start_time_is_accepted(self) -> None:
        self._handle("INSTALL", build_start_time="2026-03-01T10:00:05Z")
        self.assertEqual(self._stored()["buildStartedAt"], "2026-03-01T10:00:05.000Z")

    def test_unparseable_start_time_is_ignored(self) -> None:
        result = self._handle("INSTALL", build_start_time="yesterday-ish")

        self.assertEqual(result["outcome"], "progressed")
        self.assertNotIn("buildStartedAt", self._stored())


class FailureTests(BuildEventsTestCase):
    def test_failure_statuses_map_to_terminal_variants(self) -> None:
        expected = {
            "FAILED": "Failed",
            "TIMED_OUT": "TimedOut",
            "STOPPED": "Stopped",
            "FAULT": "Fault",
            "CLIENT_ERROR": "ClientError",
        }
        for index, (phase_status, status) in enumerate(expected.items()):
            with self.subTest(phase_status=phase_status):
                deployment = self._seed_deployment(
                    f"buildor-builds:job-{index}",
                    f"2026-03-02T10:00:0{index}.000Z",
                )
                result = self._handle(
                    "BUILD",
                    phase_status,
                    build_id=f"buildor-builds:job-{index}",
                    deployment_id=deployment["id"],
                )
                self.assertEqual(result["outcome"], "failed")
                self.assertEqual(self._stored(deployment["id"])["status"], status)

    def test_build_failure_leaves_project_reference_intact(self) -> None:
        self._handle("PROVISIONING")
        result = self._handle("BUILD", "FAILED")

        self.assertEqual(result["outcome"], "failed")
        stored = self._stored()
        self.assertEqual(stored["status"], "Failed")
        self.assertEqual(stored["phase"], "BUILD")
        self.assertEqual(stored["phaseStatus"], "FAILED")
        self.assertIsNone(self._project()["currentDeploymentId"])

    def test_failure_applies_even_when_its_phase_is_earlier(self) -> None:
        self._handle("BUILD")
        result = self._handle("INSTALL", "TIMED_OUT")

        self.assertEqual(result["outcome"], "failed")
        self.assertEqual(self._stored()["status"], "TimedOut")
        self.assertEqual(self._stored()["phase"], "INSTALL")

    def test_failure_keeps_previous_current_deployment(self) -> None:
        for phase in PHASES:
            self._handle(phase)
        newer = self._seed_deployment("buildor-builds:newer-job", "2026-03-01T11:00:00.000Z")

        self._handle("BUILD", "FAULT", build_id="buildor-builds:newer-job", deployment_id=newer["id"])

        self.assertEqual(self._stored(newer["id"])["status"], "Fault")
        self.assertEqual(self._project()["currentDeploymentId"], self.deployment["id"])


class OrderingAndIdempotencyTests(BuildEventsTestCase):
    def test_duplicate_event_is_a_no_op(self) -> None:
        self._handle("BUILD")
        first = self._stored()

        result = self._handle("BUILD")

        self.assertEqual(result["outcome"], "duplicate")
        self.assertEqual(self._stored(), first)

    def test_stale_phase_does_not_move_backwards(self) -> None:
        self._handle("BUILD")
        result = self._handle("PRE_BUILD")

        self.assertEqual(result["outcome"], "duplicate")
        self.assertEqual(self._stored()["phase"], "BUILD")

    def test_progress_may_skip_phases(self) -> None:
        self._handle("SUBMITTED")
        result = self._handle("UPLOAD_ARTIFACTS")

        self.assertEqual(result["outcome"], "progressed")
        self.assertEqual(self._stored()["phaseIndex"], PHASES.index("UPLOAD_ARTIFACTS"))

    def test_success_arriving_before_progress_events(self) -> None:
        self.assertEqual(self._handle("FINALIZING")["outcome"], "succeeded")
        self.assertEqual(self._handle("BUILD")["outcome"], "ignored_terminal")
        self.assertEqual(self._stored()["status"], "Succeeded")
        self.assertEqual(self._stored()["phase"], "FINALIZING")

    def test_terminal_failure_is_never_left(self) -> None:
        self._handle("BUILD", "FAILED")
        failed = self._stored()

        for phase in ("POST_BUILD", "FINALIZING"):
            self.assertEqual(self._handle(phase)["outcome"], "ignored_terminal")
        self.assertEqual(self._handle("UPLOAD_ARTIFACTS", "FAULT")["outcome"], "ignored_terminal")

        self.assertEqual(self._stored(), failed)
        self.assertIsNone(self._project()["currentDeploymentId"])

    def test_terminal_success_is_never_left(self) -> None:
        self._handle("FINALIZING")
        result = self._handle("FINALIZING", "FAILED")

        self.assertEqual(result["outcome"], "ignored_terminal")
        self.assertEqual(self._stored()["status"], "Succeeded")

    def test_redelivered_success_repairs_missing_promotion(self) -> None:
        succeeded = self._seed_deployment(
            "buildor-builds:done-job", "2026-03-01T12:00:00.000Z", status="Succeeded"
        )

        result = self._handle("FINALIZING", build_id="buildor-builds:done-job", deployment_id=succeeded["id"])

        self.assertEqual(result["outcome"], "ignored_terminal")
        self.assertEqual(self._project()["currentDeploymentId"], succeeded["id"])

    def test_redelivered_success_does_not_republish(self) -> None:
        self._handle("FINALIZING")
        published = self._project()["lastPublished"]

        self._handle("FINALIZING")

        self.assertEqual(self._project()["lastPublished"], published)

    def test_older_deployment_finishing_late_does_not_replace_newer(self) -> None:
        newer = self._seed_deployment("buildor-builds:newer-job", "2026-03-01T11:00:00.000Z")
        self._handle("FINALIZING", build_id="buildor-builds:newer-job", deployment_id=newer["id"])

        result = self._handle("FINALIZING")

        self.assertEqual(result["outcome"], "succeeded")
        self.assertEqual(self._stored()["status"], "Succeeded")
        self.assertEqual(self._project()["currentDeploymentId"], newer["id"])

    def test_concurrent_terminal_write_wins_exactly_once(self) -> None:
        table = self.ddb.tables[store.DEPLOYMENTS_TABLE]
        deployment_id = self.deployment["id"]

        def _race(operation, kwargs):
            # Another invocation records the failure between our read and write.
            if operation == "update_item" and kwargs["TableName"] == store.DEPLOYMENTS_TABLE:
                table[deployment_id]["status"] = {"S": "Stopped"}
                self.ddb.before_call = None

        self.ddb.before_call = _race
        result = self._handle("FINALIZING")

        self.assertEqual(result["outcome"], "ignored_terminal")
        self.assertEqual(self._stored()["status"], "Stopped")
        self.assertIsNone(self._project()["currentDeploymentId"])


class OrphanAndSkipTests(BuildEventsTestCase):
    def test_young_orphan_fails_for_redelivery(self) -> None:
        with self.assertRaises(OrphanEvent):
            build_events.lambda_handler(
                _phase_event("SUBMITTED", build_id="buildor-builds:unknown-job"),
                None,
            )
        self.assertEqual(self.ddb.count("update_item"), 0)

    def test_old_orphan_is_dropped(self) -> None:
        result = build_events.lambda_handler(
            _phase_event("BUILD", build_id="buildor-builds:unknown-job", time="2020-01-01T00:00:00Z"),
            None,
        )

        self.assertEqual(result["outcome"], "orphan_dropped")
        self.assertEqual(self.ddb.count("update_item"), 0)

    def test_orphan_redelivered_after_record_appears(self) -> None:
        with self.assertRaises(OrphanEvent):
            build_events.lambda_handler(_phase_event("SUBMITTED", build_id="buildor-builds:late-job"), None)

        late = self._seed_deployment("buildor-builds:late-job", "2026-03-01T13:00:00.000Z")
        result = build_events.lambda_handler(_phase_event("SUBMITTED", build_id="buildor-builds:late-job"), None)

        self.assertEqual(result["outcome"], "progressed")
        self.assertEqual(self._stored(late["id"])["status"], "Building")

    def test_other_build_project_is_skipped(self) -> None:
        result = self._handle("BUILD", project_name="someone-elses-builds")

        self.assertEqual(result["outcome"], "skipped")
        self.assertEqual(self.ddb.count("get_item"), 0)

    def test_unknown_phase_is_skipped(self) -> None:
        self.assertEqual(self._handle("COMPLETED")["outcome"], "skipped")
        self.assertEqual(self._handle("BUILD", "IN_PROGRESS")["outcome"], "skipped")
        self.assertEqual(self._stored()["status"], "Pending")

    def test_malformed_event_is_skipped(self) -> None:
        self.assertEqual(build_events.lambda_handler({"detail": "oops"}, None)["outcome"], "skipped")
        self.assertEqual(build_events.lambda_handler({"detail": {}}, None)["outcome"], "skipped")

    def test_malformed_additional_information_is_skipped(self) -> None:
        event = _phase_event("BUILD", deployment_id=self.deployment["id"])
        event["detail"]["additional-information"] = "oops"

        result = build_events.lambda_handler(event, None)

        self.assertEqual(result["outcome"], "skipped")
        self.assertEqual(self.ddb.count("get_item"), 0)

    def test_malformed_environment_variables_are_skipped(self) -> None:
        for environment in (
            "oops",
            {"environment-variables": "DEPLOYMENT_ID=x"},
            {"environment-variables": ["DEPLOYMENT_ID=x"]},
        ):
            with self.subTest(environment=environment):
                event = _phase_event("BUILD")
                event["detail"]["additional-information"]["environment"] = environment

                result = build_events.lambda_handler(event, None)

                self.assertEqual(result["outcome"], "skipped")
        self.assertEqual(self._stored()["status"], "Pending")


class StoreOutageTests(BuildEventsTestCase):
    def test_store_failure_raises_and_redelivery_converges(self) -> None:
        self.ddb.failures["update_item"] = ClientError(
            {"Error": {"Code": "ThrottlingException", "Message": "slow down"}},
            "UpdateItem",
        )

        with self.assertRaises(TransientStoreError):
            self._handle("BUILD")
        self.assertEqual(self._stored()["status"], "Pending")

        self.assertEqual(self._handle("BUILD")["outcome"], "progressed")
        self.assertEqual(self._stored()["status"], "Building")

    def test_promotion_failure_is_retried_on_redelivery(self) -> None:
        calls = {"updates": 0}

        def _fail_project_update(operation, kwargs):
            if operation == "update_item" and kwargs["TableName"] == store.PROJECTS_TABLE:
                calls["updates"] += 1
                if calls["updates"] == 1:
                    raise ClientError(
                        {"Error": {"Code": "InternalServerError", "Message": "boom"}},
                        "UpdateItem",
                    )

        self.ddb.before_call = _fail_project_update
        with self.assertRaises(TransientStoreError):
            self._handle("FINALIZING")
        self.assertEqual(self._stored()["status"], "Succeeded")
        self.assertIsNone(self._project()["currentDeploymentId"])

        result = self._handle("FINALIZING")

        self.assertEqual(result["outcome"], "ignored_terminal")
        self.assertEqual(self._project()["currentDeploymentId"], self.deployment["id"])


if __name__ == "__main__":
    unittest.main()
