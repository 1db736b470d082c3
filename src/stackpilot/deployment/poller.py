"""Polling of a stack until it reaches a terminal status."""

import logging
from typing import Any

from botocore.exceptions import ClientError

from ..core.aws_client import ClientBundle, error_message
from ..core.cancellation import CancelScope
from .models import StackSnapshot, StackStatusClass, classify_stack_status


logger = logging.getLogger(__name__)


class AmbiguousStackError(Exception):
    """Raised when a stack id does not resolve to exactly one stack."""
    pass


class StackPollError(Exception):
    """Raised when a stack cannot be described while polling."""
    pass


class StackFailedError(Exception):
    """Raised when a stack settles in a terminal failure status."""

    def __init__(self, stack_id: str, status: str, reason: str = "") -> None:
        super().__init__(f"Terminal stack state failure: {status} {reason}".rstrip())
        self.stack_id = stack_id
        self.status = status
        self.reason = reason


class TerminalStatePoller:
    """Polls a stack at a fixed interval until it succeeds or fails."""

    DEFAULT_POLL_SECONDS = 1.0

    def __init__(self, bundle: ClientBundle,
                 poll_seconds: float = DEFAULT_POLL_SECONDS) -> None:
        self.bundle = bundle
        self.poll_seconds = poll_seconds

    @property
    def cloudformation(self) -> Any:
        return self.bundle.cloudformation

    def wait(self, stack_id: str, scope: CancelScope) -> StackSnapshot:
        """Block until the stack reaches a terminal status.

        Args:
            stack_id: Stack ARN or name
            scope: Cancellation scope for the poll loop

        Returns:
            Snapshot of the stack in its terminal success status

        Raises:
            StackFailedError: When the stack settles in a failure status
            AmbiguousStackError: When the stack id matches zero or several stacks
            StackPollError: When the stack cannot be described
            OperationCancelled: When the scope is cancelled first
        """
        last_status = ""
        while True:
            if scope.sleep(self.poll_seconds):
                raise scope.error()
            snapshot = self.describe(stack_id)

            if snapshot.status != last_status:
                logger.info(f"Stack status set to {snapshot.status}: {snapshot.status_reason}")
                last_status = snapshot.status

            outcome = classify_stack_status(snapshot.status)
            if outcome is StackStatusClass.FAILURE:
                raise StackFailedError(stack_id, snapshot.status, snapshot.status_reason)
            if outcome is StackStatusClass.SUCCESS:
                return snapshot

    def describe(self, stack_id: str) -> StackSnapshot:
        try:
            response = self.cloudformation.describe_stacks(StackName=stack_id)
        except ClientError as e:
            raise StackPollError(
                f"Unable to describe stack {stack_id}: {error_message(e)}"
            ) from e
        stacks = response.get("Stacks", [])
        if len(stacks) != 1:
            raise AmbiguousStackError(
                f"Unable to correctly find stack {stack_id}: {len(stacks)} matches"
            )
        return StackSnapshot.from_api(stacks[0])
