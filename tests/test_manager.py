"""Unit tests for the stack manager."""

import time

import pytest
from unittest.mock import Mock, patch
from botocore.exceptions import ClientError

from stackpilot.core.aws_client import ClientBundle, SessionCache, SessionError
from stackpilot.core.cancellation import CancelScope, OperationCancelled
from stackpilot.core.cleanup import CleanupRegistry
from stackpilot.deployment.manager import StackInspectionError, StackManager
from stackpilot.deployment.models import (
    STACK_ABSENT_STATUS,
    ChangesetRequest,
    ChangesetResult,
    ExecutionOutcome,
    ExecutionResult,
)
from stackpilot.templates.reader import ParameterFileError


CHANGESET = {
    "ChangeSetId": "arn:cs",
    "StackId": "arn:stack",
    "StackName": "web",
    "Status": "CREATE_COMPLETE",
    "Changes": [{"ResourceChange": {"Action": "Add", "LogicalResourceId": "Queue"}}],
}


class TestStackManager:
    """Test cases for StackManager class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.bundle = Mock(spec=ClientBundle)
        self.bundle.token = "stackpilot-token"
        self.bundle.region = "us-east-1"
        self.bundle.account_id.return_value = "123456789012"
        self.bundle.describe_stack.return_value = {
            "StackName": "web", "StackId": "arn:stack", "StackStatus": "UPDATE_COMPLETE",
        }
        self.bundle.cloudformation = Mock()
        self.cfn = self.bundle.cloudformation
        self.cfn.create_change_set.return_value = {"Id": "arn:cs"}
        self.cfn.describe_change_set.return_value = CHANGESET

        self.sessions = Mock(spec=SessionCache)
        self.sessions.session.return_value = self.bundle
        self.cleanup = CleanupRegistry(timeout=1)
        self.manager = StackManager(self.sessions, self.cleanup, poll_seconds=0.001,
                                    default_profile="dev", default_region="us-east-1")
        self.scope = CancelScope(timeout=10)

    def load_request(self, template, params):
        if params == "broken":
            raise ParameterFileError(f"Unable to parse parameter file {template}/{params}")
        return ChangesetRequest(stack_name=f"{template}-{params}", template_body="{}")

    def test_session_defaults(self):
        """Test requests without profile or region use the defaults."""
        self.manager.session_for(ChangesetRequest(stack_name="web"))
        self.manager.session_for(ChangesetRequest(stack_name="web", profile="prod",
                                                  region="eu-west-1"))

        self.sessions.session.assert_any_call("dev", "us-east-1")
        self.sessions.session.assert_any_call("prod", "eu-west-1")

    def test_describe_missing_stack(self):
        """Test a missing stack becomes the absent snapshot."""
        self.bundle.describe_stack.return_value = None

        snapshot = self.manager.describe_stack(ChangesetRequest(stack_name="web"))

        assert snapshot.status == STACK_ABSENT_STATUS

    def test_describe_error(self):
        """Test describe failures raise StackInspectionError."""
        self.bundle.describe_stack.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DescribeStacks"
        )

        with pytest.raises(StackInspectionError):
            self.manager.describe_stack(ChangesetRequest(stack_name="web"))

    def test_inspect_status(self):
        """Test inspection returns the snapshot and the pending changeset."""
        snapshot, changeset = self.manager.inspect_status(
            ChangesetRequest(stack_name="web", template_body="{}"), self.scope
        )

        assert snapshot.status == "UPDATE_COMPLETE"
        assert changeset.status == "CREATE_COMPLETE"
        assert [c.logical_resource_id for c in changeset.changes] == ["Queue"]

    def test_staging_bucket_default(self):
        """Test the configured staging bucket fills requests without one."""
        self.manager.staging_bucket = "configured-bucket"
        self.bundle.s3 = Mock()
        request = ChangesetRequest(stack_name="web", template_body="x" * 60000)

        self.manager.request_changeset(request, self.scope)

        assert self.bundle.s3.put_object.call_args.kwargs["Bucket"] == "configured-bucket"

    def test_status_all_isolates_failures(self):
        """Test one broken parameter set does not hide the others."""
        pairs = [("web", "prod"), ("web", "broken"), ("db", "prod")]

        reports = self.manager.status_all(pairs, self.load_request, self.scope)

        assert [(r.template, r.parameter_set) for r in reports] == pairs
        assert reports[0].changeset_status == "Ready to apply"
        assert reports[0].account_id == "123456789012"
        assert "Unable to parse" in reports[1].error
        assert reports[2].error is None

    def test_status_all_records_changeset_failure(self):
        """Test changeset failures are recorded on the report."""
        self.cfn.create_change_set.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "Template format error"}},
            "CreateChangeSet",
        )

        reports = self.manager.status_all([("web", "prod")], self.load_request, self.scope)

        assert "Template format error" in reports[0].changeset_status

    def test_status_all_unknown_account(self):
        """Test an unresolvable account is reported as unknown."""
        self.bundle.account_id.side_effect = SessionError("no credentials")

        reports = self.manager.status_all([("web", "prod")], self.load_request, self.scope)

        assert reports[0].account_id == "unknown"

    def test_status_all_fail_fast(self):
        """Test fail_fast raises the first failure."""
        pairs = [("web", "broken"), ("db", "prod")]

        with pytest.raises(ParameterFileError):
            self.manager.status_all(pairs, self.load_request, self.scope, fail_fast=True)

    def test_status_all_fail_fast_skips_queued(self):
        """Test pairs still queued after the first failure are never inspected."""
        manager = StackManager(self.sessions, self.cleanup, poll_seconds=0.001, max_workers=1)
        pairs = [("web", "broken"), ("db", "prod"), ("api", "prod"), ("queue", "prod")]
        loaded = []

        def slow_load(template, params):
            loaded.append((template, params))
            if params != "broken":
                time.sleep(0.05)
            return self.load_request(template, params)

        with pytest.raises(ParameterFileError):
            manager.status_all(pairs, slow_load, self.scope, fail_fast=True)

        assert loaded[0] == ("web", "broken")
        assert len(loaded) <= 2
        assert self.scope._children == []

    def test_inspect_report_cancelled_before_loading(self):
        """Test a cancelled fleet scope stops an inspection before any work."""
        fleet_scope = self.scope.child()
        fleet_scope.cancel("web/broken failed")
        load_request = Mock()

        with pytest.raises(OperationCancelled):
            self.manager.inspect_report("db", "prod", load_request, fleet_scope)

        load_request.assert_not_called()
        self.bundle.describe_stack.assert_not_called()

    def test_status_all_cancelled(self):
        """Test a cancelled scope is raised after the fleet finishes."""
        self.scope.cancel("operator")

        with pytest.raises(OperationCancelled):
            self.manager.status_all([("web", "prod")], self.load_request, self.scope)

    def test_execute_requires_request(self):
        """Test changesets without an originating request are rejected."""
        changeset = ChangesetResult(changeset_id="arn:cs", stack_id="arn:stack",
                                    stack_name="web")

        with pytest.raises(ValueError):
            self.manager.execute_approved(changeset, print, self.scope)

    @patch("stackpilot.deployment.manager.ExecutionPipeline")
    def test_execute_approved(self, mock_pipeline_class):
        """Test execution runs the pipeline for the request's session."""
        expected = ExecutionResult(outcome=ExecutionOutcome.SUCCEEDED, stack_id="arn:stack")
        mock_pipeline_class.return_value.run.return_value = expected
        changeset = ChangesetResult(changeset_id="arn:cs", stack_id="arn:stack",
                                    stack_name="web",
                                    request=ChangesetRequest(stack_name="web", region="eu-west-1"))

        result = self.manager.execute_approved(changeset, print, self.scope)

        assert result is expected
        self.sessions.session.assert_called_with("dev", "eu-west-1")
        mock_pipeline_class.assert_called_once_with(self.bundle, poll_seconds=0.001)

    def test_cleanup_runs_registered_jobs(self):
        """Test cleanup jobs registered through the manager run."""
        ran = []
        self.manager.register_cleanup(lambda scope: ran.append(True))

        assert self.manager.run_cleanup() == []
        assert ran == [True]
