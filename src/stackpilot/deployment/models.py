"""Data model for changesets, stacks and stack events."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


STACK_ABSENT_STATUS = "--DOES NOT EXIST--"
REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"


class ChangesetType(Enum):
    """Changeset type requested from CloudFormation."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    GUESS = "GUESS"


class StackStatusClass(Enum):
    """What the terminal-state poller does with a stack status."""

    CONTINUE = "continue"
    SUCCESS = "success"
    FAILURE = "failure"


class ExecutionOutcome(Enum):
    """Overall result of executing an approved changeset."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# https://docs.aws.amazon.com/AWSCloudFormation/latest/UserGuide/using-cfn-describing-stacks.html
STACK_FAILURE_STATUSES = frozenset({
    "CREATE_FAILED",
    "DELETE_FAILED",
    "ROLLBACK_FAILED",
    "ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_FAILED",
    "UPDATE_ROLLBACK_COMPLETE",
})

STACK_SUCCESS_STATUSES = frozenset({
    "CREATE_COMPLETE",
    "DELETE_COMPLETE",
    "UPDATE_COMPLETE",
})

CHANGESET_TERMINAL_STATUSES = frozenset({
    "CREATE_COMPLETE",
    "FAILED",
    "DELETE_COMPLETE",
})

NO_CHANGES_MARKERS = (
    "didn't contain changes",
    "No updates are to be performed",
)


def classify_stack_status(status: str) -> StackStatusClass:
    """Map a stack status onto exactly one poller action.

    Args:
        status: CloudFormation stack status string

    Returns:
        FAILURE for terminal failure states, SUCCESS for terminal success
        states and CONTINUE for everything else
    """
    if status in STACK_FAILURE_STATUSES:
        return StackStatusClass.FAILURE
    if status in STACK_SUCCESS_STATUSES:
        return StackStatusClass.SUCCESS
    return StackStatusClass.CONTINUE


def is_changeset_terminal(status: str) -> bool:
    return status in CHANGESET_TERMINAL_STATUSES


@dataclass
class ChangesetRequest:
    """Desired state for one stack, as declared in a parameter file."""

    stack_name: str
    template_body: Optional[str] = None
    template_url: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)
    capabilities: List[str] = field(default_factory=list)
    changeset_type: ChangesetType = ChangesetType.GUESS
    changeset_name: Optional[str] = None
    description: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    profile: Optional[str] = None
    region: Optional[str] = None
    bucket: Optional[str] = None

    def to_api_params(self) -> Dict[str, Any]:
        """Build the CreateChangeSet keyword arguments for this request."""
        params: Dict[str, Any] = {"StackName": self.stack_name}
        if self.template_url:
            params["TemplateURL"] = self.template_url
        elif self.template_body is not None:
            params["TemplateBody"] = self.template_body
        if self.parameters:
            params["Parameters"] = [
                {"ParameterKey": key, "ParameterValue": str(value)}
                for key, value in self.parameters.items()
            ]
        if self.capabilities:
            params["Capabilities"] = list(self.capabilities)
        if self.changeset_type is not ChangesetType.GUESS:
            params["ChangeSetType"] = self.changeset_type.value
        if self.changeset_name:
            params["ChangeSetName"] = self.changeset_name
        if self.description:
            params["Description"] = self.description
        if self.tags:
            params["Tags"] = [{"Key": k, "Value": str(v)} for k, v in self.tags.items()]
        return params


@dataclass
class ResourceChange:
    """One resource change reported by a changeset."""

    action: str
    logical_resource_id: str
    physical_resource_id: str = ""
    resource_type: str = ""
    replacement: str = ""

    @property
    def display_id(self) -> str:
        return self.physical_resource_id or self.logical_resource_id

    @classmethod
    def from_api(cls, change: Dict[str, Any]) -> "ResourceChange":
        resource = change.get("ResourceChange", {})
        return cls(
            action=resource.get("Action", ""),
            logical_resource_id=resource.get("LogicalResourceId", ""),
            physical_resource_id=resource.get("PhysicalResourceId", ""),
            resource_type=resource.get("ResourceType", ""),
            replacement=resource.get("Replacement", ""),
        )


@dataclass
class ChangesetResult:
    """Outcome of creating a changeset and waiting for it to settle."""

    changeset_id: str
    stack_id: str
    stack_name: str
    changeset_name: str = ""
    status: str = ""
    status_reason: str = ""
    execution_status: str = ""
    changeset_type: Optional[ChangesetType] = None
    changes: List[ResourceChange] = field(default_factory=list)
    parameters: Dict[str, str] = field(default_factory=dict)
    request: Optional[ChangesetRequest] = None

    @property
    def failed(self) -> bool:
        return self.status == "FAILED"

    @property
    def error(self) -> Optional[str]:
        """Failure detail when the changeset failed, otherwise None."""
        if self.failed:
            return self.status_reason or "changeset failed"
        return None

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def no_changes(self) -> bool:
        """Whether the changeset failed only because nothing would change."""
        if self.status == "CREATE_COMPLETE":
            return not self.changes
        return self.failed and any(m in self.status_reason for m in NO_CHANGES_MARKERS)

    @classmethod
    def from_api(cls, response: Dict[str, Any], changes: List[ResourceChange],
                 request: Optional[ChangesetRequest] = None,
                 changeset_type: Optional[ChangesetType] = None) -> "ChangesetResult":
        parameters = {}
        for parameter in response.get("Parameters", []) or []:
            key = parameter.get("ParameterKey", "")
            parameters[key] = parameter.get("ResolvedValue") or parameter.get("ParameterValue", "")
        return cls(
            changeset_id=response.get("ChangeSetId", ""),
            stack_id=response.get("StackId", ""),
            stack_name=response.get("StackName", ""),
            changeset_name=response.get("ChangeSetName", ""),
            status=response.get("Status", ""),
            status_reason=response.get("StatusReason", ""),
            execution_status=response.get("ExecutionStatus", ""),
            changeset_type=changeset_type,
            changes=changes,
            parameters=parameters,
            request=request,
        )


@dataclass
class StackSnapshot:
    """Point-in-time description of a stack."""

    stack_name: str
    status: str
    stack_id: str = ""
    status_reason: str = ""
    description: str = ""
    last_updated: Optional[datetime] = None
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def exists(self) -> bool:
        return self.status != STACK_ABSENT_STATUS

    @classmethod
    def absent(cls, stack_name: str) -> "StackSnapshot":
        return cls(stack_name=stack_name, status=STACK_ABSENT_STATUS)

    @classmethod
    def from_api(cls, stack: Dict[str, Any]) -> "StackSnapshot":
        outputs = {
            output.get("OutputKey", ""): output.get("OutputValue", "")
            for output in stack.get("Outputs", []) or []
        }
        return cls(
            stack_name=stack.get("StackName", ""),
            status=stack.get("StackStatus", ""),
            stack_id=stack.get("StackId", ""),
            status_reason=stack.get("StackStatusReason", ""),
            description=stack.get("Description", ""),
            last_updated=stack.get("LastUpdatedTime") or stack.get("CreationTime"),
            outputs=outputs,
        )


@dataclass
class StackEvent:
    """One stack state-transition record."""

    event_id: str
    stack_name: str = ""
    logical_resource_id: str = ""
    physical_resource_id: str = ""
    resource_type: str = ""
    status: str = ""
    status_reason: str = ""
    client_request_token: str = ""
    timestamp: Optional[datetime] = None

    @classmethod
    def from_api(cls, event: Dict[str, Any]) -> "StackEvent":
        return cls(
            event_id=event.get("EventId", ""),
            stack_name=event.get("StackName", ""),
            logical_resource_id=event.get("LogicalResourceId", ""),
            physical_resource_id=event.get("PhysicalResourceId", ""),
            resource_type=event.get("ResourceType", ""),
            status=event.get("ResourceStatus", ""),
            status_reason=event.get("ResourceStatusReason", ""),
            client_request_token=event.get("ClientRequestToken", ""),
            timestamp=event.get("Timestamp"),
        )

    @classmethod
    def synthetic(cls, stack_name: str, status: str, reason: str) -> "StackEvent":
        """Build an event that did not come from CloudFormation."""
        now = datetime.now(timezone.utc)
        return cls(
            event_id=f"stackpilot-{status.lower()}-{now.timestamp()}",
            stack_name=stack_name,
            logical_resource_id=stack_name,
            resource_type="StackPilot::Signal",
            status=status,
            status_reason=reason,
            timestamp=now,
        )


@dataclass
class StackReport:
    """Status of one template/parameter pair across the fleet."""

    template: str
    parameter_set: str
    stack_name: str = ""
    account_id: str = ""
    region: str = ""
    snapshot: Optional[StackSnapshot] = None
    changeset: Optional[ChangesetResult] = None
    error: Optional[str] = None

    @property
    def changeset_status(self) -> str:
        if self.error:
            return f"Unable to apply: {self.error}"
        if self.changeset is None:
            return ""
        if self.changeset.no_changes:
            return "No changes"
        if self.changeset.failed:
            return f"Unable to apply: {self.changeset.status_reason}"
        return "Ready to apply"


@dataclass
class ExecutionResult:
    """Result of executing a changeset and watching it to completion."""

    outcome: ExecutionOutcome
    stack_id: str
    status: str = ""
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is ExecutionOutcome.SUCCEEDED
