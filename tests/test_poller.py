"""Unit tests for the terminal-state poller."""

import pytest
from unittest.mock import Mock
from botocore.exceptions import ClientError

from stackpilot.core.aws_client import ClientBundle
from stackpilot.core.cancellation import CancelScope, OperationCancelled
from stackpilot.deployment.poller import (
    AmbiguousStackError,
    StackFailedError,
    StackPollError,
    TerminalStatePoller,
)


def stacks(status, reason=""):
    return {"Stacks": [{"StackName": "web", "StackId": "arn:stack",
                        "StackStatus": status, "StackStatusReason": reason}]}


class TestTerminalStatePoller:
    """Test cases for TerminalStatePoller class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.bundle = Mock(spec=ClientBundle)
        self.bundle.cloudformation = Mock()
        self.cfn = self.bundle.cloudformation
        self.poller = TerminalStatePoller(self.bundle, poll_seconds=0.001)
        self.scope = CancelScope()

    def test_waits_for_success(self):
        """Test in-progress statuses are polled through to success."""
        self.cfn.describe_stacks.side_effect = [
            stacks("UPDATE_IN_PROGRESS"),
            stacks("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"),
            stacks("UPDATE_COMPLETE"),
        ]

        snapshot = self.poller.wait("arn:stack", self.scope)

        assert snapshot.status == "UPDATE_COMPLETE"
        assert self.cfn.describe_stacks.call_count == 3

    def test_failure_raises(self):
        """Test a terminal failure status raises StackFailedError."""
        self.cfn.describe_stacks.side_effect = [
            stacks("UPDATE_ROLLBACK_IN_PROGRESS"),
            stacks("UPDATE_ROLLBACK_COMPLETE", "Resource creation cancelled"),
        ]

        with pytest.raises(StackFailedError) as exc_info:
            self.poller.wait("arn:stack", self.scope)

        assert exc_info.value.status == "UPDATE_ROLLBACK_COMPLETE"
        assert "Terminal stack state failure" in str(exc_info.value)

    def test_ambiguous_stack(self):
        """Test zero matching stacks is an error."""
        self.cfn.describe_stacks.return_value = {"Stacks": []}

        with pytest.raises(AmbiguousStackError):
            self.poller.wait("arn:stack", self.scope)

    def test_describe_error(self):
        """Test API errors raise StackPollError."""
        self.cfn.describe_stacks.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DescribeStacks"
        )

        with pytest.raises(StackPollError):
            self.poller.wait("arn:stack", self.scope)

    def test_cancelled(self):
        """Test cancellation stops polling before the next call."""
        self.scope.cancel("stop")

        with pytest.raises(OperationCancelled):
            self.poller.wait("arn:stack", self.scope)
        self.cfn.describe_stacks.assert_not_called()
