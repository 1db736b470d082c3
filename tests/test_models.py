"""Unit tests for the deployment data model."""

import pytest

from stackpilot.deployment.models import (
    STACK_ABSENT_STATUS,
    STACK_FAILURE_STATUSES,
    STACK_SUCCESS_STATUSES,
    ChangesetRequest,
    ChangesetResult,
    ChangesetType,
    ResourceChange,
    StackEvent,
    StackReport,
    StackSnapshot,
    StackStatusClass,
    classify_stack_status,
    is_changeset_terminal,
)


ALL_STACK_STATUSES = [
    "CREATE_IN_PROGRESS", "CREATE_FAILED", "CREATE_COMPLETE",
    "ROLLBACK_IN_PROGRESS", "ROLLBACK_FAILED", "ROLLBACK_COMPLETE",
    "DELETE_IN_PROGRESS", "DELETE_FAILED", "DELETE_COMPLETE",
    "UPDATE_IN_PROGRESS", "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS", "UPDATE_COMPLETE",
    "UPDATE_FAILED", "UPDATE_ROLLBACK_IN_PROGRESS", "UPDATE_ROLLBACK_FAILED",
    "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS", "UPDATE_ROLLBACK_COMPLETE",
    "REVIEW_IN_PROGRESS", "IMPORT_IN_PROGRESS", "IMPORT_COMPLETE",
    "IMPORT_ROLLBACK_IN_PROGRESS", "IMPORT_ROLLBACK_FAILED", "IMPORT_ROLLBACK_COMPLETE",
]


class TestStatusClassification:
    """Test cases for stack status classification."""

    def test_failure_and_success_disjoint(self):
        """Test no status is both a success and a failure."""
        assert not STACK_FAILURE_STATUSES & STACK_SUCCESS_STATUSES

    @pytest.mark.parametrize("status", sorted(STACK_FAILURE_STATUSES))
    def test_failures(self, status):
        """Test terminal failure statuses."""
        assert classify_stack_status(status) is StackStatusClass.FAILURE

    @pytest.mark.parametrize("status", sorted(STACK_SUCCESS_STATUSES))
    def test_successes(self, status):
        """Test terminal success statuses."""
        assert classify_stack_status(status) is StackStatusClass.SUCCESS

    def test_everything_else_continues(self):
        """Test in-progress and unknown statuses keep the poller going."""
        others = [s for s in ALL_STACK_STATUSES
                  if s not in STACK_FAILURE_STATUSES and s not in STACK_SUCCESS_STATUSES]
        for status in others + ["", "SOMETHING_NEW"]:
            assert classify_stack_status(status) is StackStatusClass.CONTINUE

    def test_changeset_terminal(self):
        """Test changeset terminal statuses."""
        assert is_changeset_terminal("CREATE_COMPLETE")
        assert is_changeset_terminal("FAILED")
        assert not is_changeset_terminal("CREATE_PENDING")
        assert not is_changeset_terminal("CREATE_IN_PROGRESS")


class TestChangesetRequest:
    """Test cases for ChangesetRequest class."""

    def test_to_api_params(self):
        """Test request fields map onto CreateChangeSet arguments."""
        request = ChangesetRequest(
            stack_name="web",
            template_body="{}",
            parameters={"Env": "prod"},
            capabilities=["CAPABILITY_IAM"],
            changeset_type=ChangesetType.UPDATE,
            changeset_name="cs-1",
            tags={"team": "platform"},
        )

        params = request.to_api_params()

        assert params == {
            "StackName": "web",
            "TemplateBody": "{}",
            "Parameters": [{"ParameterKey": "Env", "ParameterValue": "prod"}],
            "Capabilities": ["CAPABILITY_IAM"],
            "ChangeSetType": "UPDATE",
            "ChangeSetName": "cs-1",
            "Tags": [{"Key": "team", "Value": "platform"}],
        }

    def test_url_wins_over_body(self):
        """Test a staged URL replaces the inline body."""
        request = ChangesetRequest(stack_name="web", template_body="{}",
                                   template_url="https://bucket/key")

        params = request.to_api_params()

        assert params["TemplateURL"] == "https://bucket/key"
        assert "TemplateBody" not in params
        assert "ChangeSetType" not in params


class TestChangesetResult:
    """Test cases for ChangesetResult class."""

    def test_from_api_prefers_resolved_values(self):
        """Test resolved SSM parameter values are reported."""
        response = {
            "ChangeSetId": "arn:cs",
            "StackId": "arn:stack",
            "StackName": "web",
            "Status": "CREATE_COMPLETE",
            "Parameters": [
                {"ParameterKey": "Ami", "ParameterValue": "/ami/latest", "ResolvedValue": "ami-123"},
                {"ParameterKey": "Env", "ParameterValue": "prod"},
            ],
        }
        changes = [ResourceChange(action="Modify", logical_resource_id="Bucket")]

        result = ChangesetResult.from_api(response, changes)

        assert result.parameters == {"Ami": "ami-123", "Env": "prod"}
        assert result.has_changes
        assert not result.failed
        assert result.error is None

    def test_no_changes_failure(self):
        """Test a FAILED changeset without changes is recognized."""
        result = ChangesetResult(
            changeset_id="arn:cs", stack_id="arn:stack", stack_name="web",
            status="FAILED",
            status_reason="The submitted information didn't contain changes.",
        )

        assert result.failed
        assert result.no_changes
        assert result.error.startswith("The submitted")

    def test_real_failure(self):
        """Test other FAILED reasons are not treated as no changes."""
        result = ChangesetResult(
            changeset_id="arn:cs", stack_id="arn:stack", stack_name="web",
            status="FAILED", status_reason="Template format error",
        )

        assert not result.no_changes
        assert StackReport("web", "prod", changeset=result).changeset_status == (
            "Unable to apply: Template format error"
        )


class TestSnapshotsAndEvents:
    """Test cases for StackSnapshot and StackEvent classes."""

    def test_absent_snapshot(self):
        """Test the absent sentinel."""
        snapshot = StackSnapshot.absent("web")

        assert snapshot.status == STACK_ABSENT_STATUS
        assert not snapshot.exists

    def test_snapshot_from_api(self):
        """Test stack descriptions are parsed."""
        snapshot = StackSnapshot.from_api({
            "StackName": "web",
            "StackId": "arn:stack",
            "StackStatus": "UPDATE_COMPLETE",
            "Outputs": [{"OutputKey": "Url", "OutputValue": "https://example.com"}],
        })

        assert snapshot.exists
        assert snapshot.outputs == {"Url": "https://example.com"}

    def test_display_id_falls_back_to_logical(self):
        """Test new resources are displayed by logical id."""
        change = ResourceChange.from_api({
            "ResourceChange": {"Action": "Add", "LogicalResourceId": "Queue"}
        })

        assert change.display_id == "Queue"

    def test_synthetic_event(self):
        """Test synthetic events carry the given status."""
        event = StackEvent.synthetic("web", "SIGNAL_CAUGHT", "interrupted")

        assert event.status == "SIGNAL_CAUGHT"
        assert event.stack_name == "web"
        assert event.client_request_token == ""
        assert event.timestamp is not None
