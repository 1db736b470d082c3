"""Execution of approved changesets.

This module provides the ExecutionPipeline class which executes a
changeset and then runs the event streamer, the terminal-state poller and
an operator-interrupt watcher concurrently under one cancellation scope.
"""

import logging
import queue
import threading
from typing import Callable, Optional

from botocore.exceptions import ClientError

from ..core.aws_client import ClientBundle, error_message
from ..core.backoff import Backoff
from ..core.cancellation import CancelScope, OperationCancelled, TaskGroup
from .models import (
    ChangesetResult,
    ExecutionOutcome,
    ExecutionResult,
    StackEvent,
)
from .poller import StackFailedError, TerminalStatePoller
from .streamer import EventSink, StackEventStreamer


logger = logging.getLogger(__name__)

SIGNAL_CAUGHT_STATUS = "SIGNAL_CAUGHT"

_CLOSED = object()


class ExecutionError(Exception):
    """Raised when a changeset cannot be executed or cancelled."""
    pass


class ExecutionPipeline:
    """Executes an approved changeset and observes it to completion.

    The pipeline result is the poller's outcome. A stack that converges is
    reported as SUCCEEDED, one that settles in a failure status as FAILED
    and one interrupted by the operator or a deadline as CANCELLED.
    """

    WATCH_INTERVAL_SECONDS = 0.2

    def __init__(self, bundle: ClientBundle, poll_seconds: float = 1.0,
                 poller: Optional[TerminalStatePoller] = None,
                 streamer_factory: Optional[Callable[..., StackEventStreamer]] = None) -> None:
        """Initialize the pipeline.

        Args:
            bundle: Client bundle for the stack's profile and region
            poll_seconds: Poll interval of the stack poller and streamer minimum
            poller: Optional terminal-state poller (default: one for the bundle)
            streamer_factory: Optional factory building the event streamer
        """
        self.bundle = bundle
        self.poll_seconds = poll_seconds
        self.poller = poller or TerminalStatePoller(bundle, poll_seconds)
        self.streamer_factory = streamer_factory or StackEventStreamer

    def execute_changeset(self, changeset: ChangesetResult) -> None:
        """Start executing a changeset.

        Raises:
            ExecutionError: When CloudFormation rejects the execution
        """
        logger.info(f"Executing changeset {changeset.changeset_id}")
        try:
            self.bundle.cloudformation.execute_change_set(
                ChangeSetName=changeset.changeset_id,
                ClientRequestToken=self.bundle.token,
            )
        except ClientError as e:
            raise ExecutionError(
                f"Unable to execute changeset {changeset.changeset_id}: {error_message(e)}"
            ) from e

    def cancel_stack_update(self, stack_id: str) -> None:
        """Ask CloudFormation to cancel an in-progress update.

        Cancel requests never carry the execution's client request token.

        Raises:
            ExecutionError: When the cancel request is rejected
        """
        try:
            self.bundle.cloudformation.cancel_update_stack(StackName=stack_id)
        except ClientError as e:
            raise ExecutionError(
                f"Unable to cancel stack update to {stack_id}: {error_message(e)}"
            ) from e

    def run(self, changeset: ChangesetResult, sink: EventSink, scope: CancelScope,
            interrupt: Optional[threading.Event] = None) -> ExecutionResult:
        """Execute a changeset and stream its progress until it settles.

        Args:
            changeset: Approved changeset
            sink: Callable receiving stack events in chronological order
            scope: Outer cancellation scope (deadline or caller cancellation)
            interrupt: Event set by the operator to request cancellation

        Returns:
            Execution result with its outcome

        Raises:
            ExecutionError: When the changeset cannot be executed
            Exception: Any failure of the streamer, sink or poller other than
                a terminal stack failure or cancellation
        """
        scope.raise_if_cancelled()
        self.execute_changeset(changeset)
        return self.observe(changeset.stack_id, sink, scope, interrupt)

    def observe(self, stack_id: str, sink: EventSink, scope: CancelScope,
                interrupt: Optional[threading.Event] = None) -> ExecutionResult:
        """Watch an executing stack until it reaches a terminal status."""
        group = TaskGroup(scope, name="execute")
        events: "queue.Queue" = queue.Queue()
        streamer = self.streamer_factory(
            self.bundle, stack_id, events.put, Backoff(minimum=self.poll_seconds)
        )
        result = ExecutionResult(outcome=ExecutionOutcome.SUCCEEDED, stack_id=stack_id)
        cancel_requested = threading.Event()

        def stream_events() -> None:
            try:
                streamer.run(group.scope)
            finally:
                events.put(_CLOSED)

        def display_events() -> None:
            while True:
                item = events.get()
                if item is _CLOSED:
                    return
                sink(item)

        def wait_for_terminal_state() -> None:
            try:
                snapshot = self.poller.wait(stack_id, group.scope)
                result.status = snapshot.status
            except StackFailedError as e:
                result.outcome = ExecutionOutcome.FAILED
                result.status = e.status
                result.error = str(e)
            except OperationCancelled as e:
                result.outcome = ExecutionOutcome.CANCELLED
                result.error = str(e)
            finally:
                streamer.stop()
                group.scope.cancel("stack reached a terminal state")

        def watch_for_interrupt() -> None:
            if interrupt is None:
                return
            while not group.scope.cancelled:
                if not interrupt.wait(self.WATCH_INTERVAL_SECONDS):
                    continue
                interrupt.clear()
                if cancel_requested.is_set():
                    group.scope.cancel("interrupted by operator")
                    return
                cancel_requested.set()
                events.put(StackEvent.synthetic(
                    stack_id, SIGNAL_CAUGHT_STATUS,
                    "Interrupt received: requesting stack update cancellation",
                ))
                try:
                    self.cancel_stack_update(stack_id)
                except ExecutionError as e:
                    logger.warning(f"{e}: no longer waiting for the stack")
                    group.scope.cancel("interrupted by operator")
                    return

        group.spawn("streamer", stream_events)
        group.spawn("display", display_events)
        group.spawn("poller", wait_for_terminal_state)
        group.spawn("interrupt", watch_for_interrupt)
        group.wait()

        # A rollback we asked for is a cancellation, not a failure
        if cancel_requested.is_set() and result.outcome is ExecutionOutcome.FAILED:
            result.outcome = ExecutionOutcome.CANCELLED
        logger.info(f"Stack {stack_id} finished with outcome {result.outcome.value}")
        return result
