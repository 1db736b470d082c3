"""CloudFormation changeset lifecycle management.

This module provides the ChangesetManager class which creates a changeset
for a stack, recovers from changeset name conflicts, registers cleanup of
everything it creates and waits for the changeset to settle.
"""

import dataclasses
import logging
import uuid
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..core.aws_client import (
    ClientBundle,
    error_code,
    error_message,
    is_aws_error,
    is_throttling_error,
)
from ..core.backoff import Backoff
from ..core.cancellation import CancelScope
from ..core.cleanup import CleanupRegistry
from .models import (
    REVIEW_IN_PROGRESS,
    ChangesetRequest,
    ChangesetResult,
    ChangesetType,
    ResourceChange,
    StackSnapshot,
    is_changeset_terminal,
)
from .staging import TemplateStager


logger = logging.getLogger(__name__)

# Changesets that were executed or already removed cannot be deleted again
BENIGN_DELETE_ERRORS = frozenset({"InvalidChangeSetStatus", "ChangeSetNotFound"})


class ChangesetError(Exception):
    """Raised when a changeset cannot be created or described."""
    pass


def generate_changeset_name() -> str:
    """Return a unique changeset name (must start with a letter)."""
    return f"stackpilot-{uuid.uuid4().hex}"


class ChangesetManager:
    """Creates changesets and waits for them to reach a terminal status."""

    DEFAULT_CONFLICT_RETRIES = 1

    def __init__(self, bundle: ClientBundle, cleanup: CleanupRegistry,
                 poll_seconds: float = 1.0,
                 conflict_retries: int = DEFAULT_CONFLICT_RETRIES,
                 stager: Optional[TemplateStager] = None) -> None:
        """Initialize the changeset manager.

        Args:
            bundle: Client bundle for the stack's profile and region
            cleanup: Registry receiving compensating cleanup jobs
            poll_seconds: Minimum interval between status polls
            conflict_retries: Delete-and-retry attempts on a name conflict
            stager: Optional template stager (default: one built for the bundle)
        """
        self.bundle = bundle
        self.cleanup = cleanup
        self.poll_seconds = poll_seconds
        self.conflict_retries = conflict_retries
        self.stager = stager or TemplateStager(bundle, cleanup)

    @property
    def cloudformation(self) -> Any:
        return self.bundle.cloudformation

    def create_and_await(self, request: ChangesetRequest,
                         current: Optional[StackSnapshot],
                         scope: CancelScope) -> ChangesetResult:
        """Create a changeset and wait until it settles.

        A FAILED changeset (for example one with no changes) is returned
        as a normal result rather than raised.

        Args:
            request: Declared desired state of the stack
            current: Snapshot of the stack before the change, None if unknown
            scope: Cancellation scope for every remote call and poll wait

        Returns:
            The changeset in its terminal status

        Raises:
            ChangesetError: When the changeset cannot be created or described
            OperationCancelled: When the scope is cancelled while waiting
        """
        request = dataclasses.replace(request)
        if not request.changeset_name:
            request.changeset_name = generate_changeset_name()
        self.stager.stage(request, scope)

        changeset_type = self.resolve_changeset_type(request)
        params = request.to_api_params()
        params["ChangeSetType"] = changeset_type.value
        params["ClientToken"] = self.bundle.token

        logger.info(
            f"Creating {changeset_type.value} changeset {request.changeset_name} "
            f"for stack {request.stack_name}"
        )
        response = self._create_changeset(params, scope)
        changeset_id = response["Id"]

        self.cleanup.register(self._delete_changeset_job(changeset_id))
        if current is None or not current.exists:
            self.cleanup.register(self._delete_placeholder_stack_job(request.stack_name))

        return self.wait_for_changeset(changeset_id, scope, request, changeset_type)

    def resolve_changeset_type(self, request: ChangesetRequest) -> ChangesetType:
        """Turn a GUESS type hint into CREATE or UPDATE.

        Stacks that cannot be described are treated as new. A stack held in
        the REVIEW_IN_PROGRESS placeholder state still needs a CREATE.
        """
        if request.changeset_type is not ChangesetType.GUESS:
            return request.changeset_type
        try:
            stack = self.bundle.describe_stack(request.stack_name)
        except (ClientError, BotoCoreError) as e:
            logger.debug(
                f"Unable to describe stack {request.stack_name}, assuming it is new: "
                f"{error_message(e)}"
            )
            return ChangesetType.CREATE
        if stack is None or stack.get("StackStatus") == REVIEW_IN_PROGRESS:
            return ChangesetType.CREATE
        return ChangesetType.UPDATE

    def _create_changeset(self, params: Dict[str, Any], scope: CancelScope) -> Dict[str, Any]:
        name = params["ChangeSetName"]
        stack_name = params["StackName"]
        attempt = 0
        while True:
            scope.raise_if_cancelled()
            try:
                return self.cloudformation.create_change_set(**params)
            except ClientError as e:
                if not is_aws_error(e, "AlreadyExistsException"):
                    raise ChangesetError(
                        f"Unable to create changeset {name} for stack {stack_name}: "
                        f"{error_message(e)}"
                    ) from e
                if attempt >= self.conflict_retries:
                    raise ChangesetError(
                        f"Changeset {name} for stack {stack_name} still exists after "
                        f"{attempt} delete(s)"
                    ) from e
            attempt += 1
            logger.info(f"Changeset {name} already exists: deleting it and retrying")
            try:
                self.cloudformation.delete_change_set(
                    ChangeSetName=name, StackName=stack_name
                )
            except ClientError as e:
                raise ChangesetError(
                    f"Deleting existing changeset {name} failed: {error_message(e)}"
                ) from e

    def wait_for_changeset(self, changeset_id: str, scope: CancelScope,
                           request: Optional[ChangesetRequest] = None,
                           changeset_type: Optional[ChangesetType] = None) -> ChangesetResult:
        """Poll a changeset until its status is terminal.

        Args:
            changeset_id: Changeset ARN
            scope: Cancellation scope for the poll loop
            request: Request the changeset was created from
            changeset_type: Resolved changeset type

        Returns:
            The changeset in a terminal status

        Raises:
            ChangesetError: When describing the changeset fails
            OperationCancelled: When the scope is cancelled while waiting
        """
        backoff = Backoff(minimum=self.poll_seconds)
        last_status = ""
        while True:
            if scope.sleep(backoff.current()):
                raise scope.error()
            try:
                response = self.cloudformation.describe_change_set(ChangeSetName=changeset_id)
            except ClientError as e:
                if is_throttling_error(e):
                    backoff.on_error()
                    logger.debug(f"Throttled describing changeset, waiting {backoff.current()}s")
                    continue
                raise ChangesetError(
                    f"Unable to describe changeset {changeset_id}: {error_message(e)}"
                ) from e
            backoff.on_success()

            status = response.get("Status", "")
            if status != last_status:
                logger.info(f"ChangeSet status set to {status}: {response.get('StatusReason', '')}")
                last_status = status
            if is_changeset_terminal(status):
                changes = self._collect_changes(changeset_id, response, scope)
                return ChangesetResult.from_api(response, changes, request, changeset_type)

    def _collect_changes(self, changeset_id: str, response: Dict[str, Any],
                         scope: CancelScope) -> List[ResourceChange]:
        changes = [ResourceChange.from_api(c) for c in response.get("Changes", [])]
        next_token = response.get("NextToken")
        while next_token:
            scope.raise_if_cancelled()
            try:
                page = self.cloudformation.describe_change_set(
                    ChangeSetName=changeset_id, NextToken=next_token
                )
            except ClientError as e:
                raise ChangesetError(
                    f"Unable to list changes of changeset {changeset_id}: {error_message(e)}"
                ) from e
            changes.extend(ResourceChange.from_api(c) for c in page.get("Changes", []))
            next_token = page.get("NextToken")
        return changes

    def _delete_changeset_job(self, changeset_id: str):
        def delete_changeset(scope: CancelScope) -> None:
            scope.raise_if_cancelled()
            try:
                self.cloudformation.delete_change_set(ChangeSetName=changeset_id)
            except ClientError as e:
                if error_code(e) in BENIGN_DELETE_ERRORS:
                    logger.debug(f"Changeset {changeset_id} no longer deletable: {error_message(e)}")
                    return
                raise ChangesetError(
                    f"Unable to delete changeset {changeset_id}: {error_message(e)}"
                ) from e
        return delete_changeset

    def _delete_placeholder_stack_job(self, stack_name: str):
        def delete_placeholder_stack(scope: CancelScope) -> None:
            scope.raise_if_cancelled()
            try:
                stack = self.bundle.describe_stack(stack_name)
            except ClientError as e:
                raise ChangesetError(
                    f"Unable to describe stack {stack_name}: {error_message(e)}"
                ) from e
            if stack is None or stack.get("StackStatus") != REVIEW_IN_PROGRESS:
                return
            logger.info(f"Deleting placeholder stack {stack_name} left in {REVIEW_IN_PROGRESS}")
            try:
                self.cloudformation.delete_stack(
                    StackName=stack_name, ClientRequestToken=self.bundle.token
                )
            except ClientError as e:
                raise ChangesetError(
                    f"Unable to delete stack {stack_name}: {error_message(e)}"
                ) from e
        return delete_placeholder_stack
