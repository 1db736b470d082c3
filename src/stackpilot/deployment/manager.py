"""Deployment engine entry points.

This module provides the StackManager class used by the command line
layer: it requests changesets, inspects stacks one at a time or across
the whole fleet, executes approved changesets and owns process cleanup.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Sequence, Tuple

from botocore.exceptions import ClientError

from ..core.aws_client import ClientBundle, SessionCache, SessionError, error_message
from ..core.cancellation import CancelScope
from ..core.cleanup import CleanupJob, CleanupRegistry
from .changeset import ChangesetError, ChangesetManager
from .models import (
    ChangesetRequest,
    ChangesetResult,
    ExecutionResult,
    StackReport,
    StackSnapshot,
)
from .orchestrator import ExecutionPipeline
from .staging import StagingError
from .streamer import EventSink


logger = logging.getLogger(__name__)

RequestLoader = Callable[[str, str], ChangesetRequest]


class StackInspectionError(Exception):
    """Raised when a stack's current state cannot be read."""
    pass


class StackManager:
    """Coordinates changeset requests, inspection and execution."""

    DEFAULT_MAX_WORKERS = 8

    def __init__(self, sessions: SessionCache, cleanup: CleanupRegistry,
                 poll_seconds: float = 1.0,
                 default_profile: Optional[str] = None,
                 default_region: Optional[str] = None,
                 staging_bucket: Optional[str] = None,
                 max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        """Initialize the stack manager.

        Args:
            sessions: Shared session cache
            cleanup: Shared cleanup registry
            poll_seconds: Minimum interval between remote status polls
            default_profile: Profile used when a request names none
            default_region: Region used when a request names none
            staging_bucket: Bucket for oversized templates when a request names none
            max_workers: Concurrency limit of fleet-wide status checks
        """
        self.sessions = sessions
        self.cleanup = cleanup
        self.poll_seconds = poll_seconds
        self.default_profile = default_profile
        self.default_region = default_region
        self.staging_bucket = staging_bucket
        self.max_workers = max_workers

    def session_for(self, request: ChangesetRequest) -> ClientBundle:
        """Get the client bundle a request targets.

        Raises:
            SessionError: When the profile or region cannot be configured
        """
        return self.sessions.session(
            request.profile or self.default_profile,
            request.region or self.default_region,
        )

    def describe_stack(self, request: ChangesetRequest) -> StackSnapshot:
        """Describe the request's stack, returning the absent sentinel if missing.

        Raises:
            StackInspectionError: When the stack cannot be described
        """
        bundle = self.session_for(request)
        try:
            stack = bundle.describe_stack(request.stack_name)
        except ClientError as e:
            raise StackInspectionError(
                f"Unable to describe stack {request.stack_name}: {error_message(e)}"
            ) from e
        if stack is None:
            return StackSnapshot.absent(request.stack_name)
        return StackSnapshot.from_api(stack)

    def request_changeset(self, request: ChangesetRequest, scope: CancelScope,
                          current: Optional[StackSnapshot] = None) -> ChangesetResult:
        """Create a changeset for a request and wait for it to settle.

        Args:
            request: Desired state of the stack
            scope: Cancellation scope
            current: Snapshot of the stack, described first when omitted

        Returns:
            The settled changeset
        """
        bundle = self.session_for(request)
        if current is None:
            current = self.describe_stack(request)
        if not request.bucket and self.staging_bucket:
            request.bucket = self.staging_bucket
        manager = ChangesetManager(bundle, self.cleanup, poll_seconds=self.poll_seconds)
        return manager.create_and_await(request, current, scope)

    def inspect_status(self, request: ChangesetRequest,
                       scope: CancelScope) -> Tuple[StackSnapshot, ChangesetResult]:
        """Describe a stack and compute the changeset that would converge it."""
        snapshot = self.describe_stack(request)
        changeset = self.request_changeset(request, scope, current=snapshot)
        return snapshot, changeset

    def inspect_report(self, template: str, parameter_set: str,
                       load_request: RequestLoader, scope: CancelScope) -> StackReport:
        """Build the status report of one template/parameter pair.

        Remote failures while reading the stack or computing its changeset
        are recorded on the report instead of raised.
        """
        scope.raise_if_cancelled()
        report = StackReport(template=template, parameter_set=parameter_set)
        request = load_request(template, parameter_set)
        report.stack_name = request.stack_name

        bundle = self.session_for(request)
        report.region = bundle.region
        try:
            report.account_id = bundle.account_id()
        except SessionError as e:
            logger.warning(f"Unable to resolve account for {template}/{parameter_set}: {e}")
            report.account_id = "unknown"

        try:
            report.snapshot = self.describe_stack(request)
        except StackInspectionError as e:
            report.error = str(e)
            return report

        try:
            report.changeset = self.request_changeset(request, scope, current=report.snapshot)
        except (ChangesetError, StagingError) as e:
            report.error = str(e)
        return report

    def status_all(self, pairs: Sequence[Tuple[str, str]], load_request: RequestLoader,
                   scope: CancelScope, fail_fast: bool = False) -> List[StackReport]:
        """Inspect many stacks concurrently.

        Args:
            pairs: (template, parameter set) pairs to inspect
            load_request: Builds the changeset request of a pair
            scope: Cancellation scope shared by every inspection
            fail_fast: Raise the first failure and cancel the others

        Returns:
            One report per pair, in the order given

        Raises:
            Exception: The first failure when fail_fast is set
            OperationCancelled: When the scope is cancelled
        """
        fleet_scope = scope.child()
        reports: List[Optional[StackReport]] = [None] * len(pairs)
        first_error: Optional[Exception] = None

        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix="status") as executor:
            futures = {
                executor.submit(self.inspect_report, template, params, load_request, fleet_scope): index
                for index, (template, params) in enumerate(pairs)
            }
            for future in as_completed(futures):
                index = futures[future]
                template, params = pairs[index]
                try:
                    report = future.result()
                    if fail_fast and report.error:
                        raise StackInspectionError(f"{template}/{params}: {report.error}")
                    reports[index] = report
                except Exception as e:
                    logger.debug(f"Status of {template}/{params} failed: {e}")
                    if fail_fast:
                        if first_error is None:
                            first_error = e
                            fleet_scope.cancel(f"{template}/{params} failed: {e}")
                            for pending in futures:
                                pending.cancel()
                        continue
                    reports[index] = StackReport(
                        template=template, parameter_set=params, error=str(e)
                    )

        fleet_scope.close()
        if first_error is not None:
            raise first_error
        scope.raise_if_cancelled()
        return [report for report in reports if report is not None]

    def execute_approved(self, changeset: ChangesetResult, sink: EventSink,
                         scope: CancelScope,
                         interrupt: Optional[threading.Event] = None) -> ExecutionResult:
        """Execute an approved changeset, streaming events into ``sink``."""
        if changeset.request is None:
            raise ValueError("changeset has no originating request")
        bundle = self.session_for(changeset.request)
        pipeline = ExecutionPipeline(bundle, poll_seconds=self.poll_seconds)
        return pipeline.run(changeset, sink, scope, interrupt)

    def register_cleanup(self, job: CleanupJob) -> None:
        self.cleanup.register(job)

    def run_cleanup(self) -> List[Exception]:
        return self.cleanup.run_all()
