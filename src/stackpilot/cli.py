#!/usr/bin/env python3
"""StackPilot - Main Entry Point.

Command line interface for inspecting and executing CloudFormation
changesets for a directory of templates and parameter sets.
"""

import argparse
import dataclasses
import json
import logging
import signal
import sys
import threading
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .core.aws_client import SessionCache, SessionError
from .core.cancellation import CancelScope, OperationCancelled
from .core.cleanup import CleanupRegistry
from .core.config import Configuration, ConfigurationError
from .deployment.changeset import ChangesetError
from .deployment.manager import StackInspectionError, StackManager
from .deployment.models import (
    ChangesetRequest,
    ChangesetResult,
    ExecutionOutcome,
    StackEvent,
    StackReport,
    StackSnapshot,
)
from .deployment.orchestrator import ExecutionError
from .deployment.poller import AmbiguousStackError, StackPollError
from .deployment.staging import StagingError
from .deployment.streamer import StreamError
from .templates.finder import TemplateFinder, TemplateNotFoundError
from .templates.reader import ParameterFileError, load_changeset_request


logger = logging.getLogger(__name__)

console = Console()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130

# Stacks in these states can take a new changeset
EXECUTABLE_STACK_STATUSES = ("CREATE_COMPLETE", "UPDATE_COMPLETE")

STATUS_COLUMNS = (
    ("Template", "template"),
    ("Params", "parameter_set"),
    ("Stack Name", "stack_name"),
    ("Status", "status"),
    ("Account ID", "account_id"),
    ("Region", "region"),
    ("Pending Changes", "change_count"),
    ("Changeset status", "changeset_status"),
    ("Last Updated", "last_updated"),
)


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="stackpilot",
        description="Execute and manage a set of CloudFormation stacks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s status                    # Changeset status of every stack
  %(prog)s inspect infra canary      # Parameters, outputs and pending changes
  %(prog)s execute infra canary      # Review and execute a changeset
        """,
    )
    parser.add_argument("--version", action="version", version=f"StackPilot v{__version__}")
    parser.add_argument("--config", help="Path to configuration file (default: auto-detect stackpilot.yaml)")
    parser.add_argument("-d", "--dir", help="Directory containing CloudFormation templates")
    parser.add_argument("-v", "--verbosity", action="count", default=None,
                        help="Output verbosity (repeat for more detail)")
    parser.add_argument("-t", "--timeout", type=float,
                        help="If non zero, time out commands after this many seconds")
    parser.add_argument("--cleanup-timeout", type=float,
                        help="Seconds to wait for cleanup jobs to finish")
    parser.add_argument("--profile", help="AWS profile used when a parameter file names none")
    parser.add_argument("--region", help="AWS region used when a parameter file names none")
    parser.add_argument("-j", "--json", action="store_true", help="Output as JSON")

    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Display status of all stacks")
    status.add_argument("--fail-fast", action="store_true",
                        help="Stop at the first stack that cannot be inspected")

    inspect = subparsers.add_parser("inspect", help="Inspect one stack and its pending changes")
    inspect.add_argument("template")
    inspect.add_argument("params")

    execute = subparsers.add_parser("execute", help="Execute a CloudFormation update for a stack")
    execute.add_argument("template")
    execute.add_argument("params")
    execute.add_argument("-a", "--auto", action="store_true",
                         help="Auto confirm the CloudFormation change")

    return parser.parse_args(argv)


def configure_logging(verbosity: int) -> None:
    """Map verbosity onto log levels: 0 warnings, 1 info, 2+ debug."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # botocore is very chatty at DEBUG
    logging.getLogger("botocore").setLevel(max(level, logging.INFO))


def load_configuration(args: argparse.Namespace) -> Configuration:
    """Load configuration and apply command line overrides.

    Raises:
        ConfigurationError: When configuration is invalid
    """
    config = Configuration(args.config)
    overrides = {
        "templates.directory": args.dir,
        "logging.verbosity": args.verbosity,
        "execution.timeout_seconds": args.timeout,
        "execution.cleanup_timeout_seconds": args.cleanup_timeout,
        "aws.profile": args.profile,
        "aws.region": args.region,
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)
    return config


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: _to_jsonable(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def print_json(data: Any) -> None:
    print(json.dumps(_to_jsonable(data), indent=2, default=str))


def print_table(headers: Sequence[str], rows: List[Sequence[Any]], title: Optional[str] = None) -> None:
    """Render rows as a table on the console."""
    table = Table(title=title, title_justify="left")
    for header in headers:
        table.add_column(header)
    for row in rows:
        table.add_row(*(escape(str(cell)) for cell in row))
    console.print(table)


def print_mapping(title: str, values: dict) -> None:
    if not values:
        console.print(f"{title}: <NONE>", markup=False)
        return
    print_table(["Key", "Value"], [[k, v] for k, v in values.items()], title=title)


def report_row(report: StackReport) -> List[str]:
    snapshot = report.snapshot
    changeset = report.changeset
    values = {
        "template": report.template,
        "parameter_set": report.parameter_set,
        "stack_name": report.stack_name,
        "status": snapshot.status if snapshot else "",
        "account_id": report.account_id,
        "region": report.region,
        "change_count": str(len(changeset.changes)) if changeset else "",
        "changeset_status": report.changeset_status,
        "last_updated": str(snapshot.last_updated or "") if snapshot else "",
    }
    return [values[key] for _, key in STATUS_COLUMNS]


def print_inspection(snapshot: StackSnapshot, changeset: ChangesetResult) -> None:
    print_table(
        ["Stack Name", "Status", "Description", "Last Updated"],
        [[snapshot.stack_name, snapshot.status, snapshot.description,
          str(snapshot.last_updated or "")]],
        title="Stack summary",
    )
    print_mapping("Parameters", changeset.parameters)
    print_mapping("Outputs", snapshot.outputs)
    print_mapping("Changes", {c.display_id: c.action for c in changeset.changes})
    if changeset.failed:
        print(f"Changeset status: {changeset.status} {changeset.status_reason}")


def make_event_printer(as_json: bool):
    def print_event(event: StackEvent) -> None:
        if as_json:
            print_json(event)
        else:
            print(
                f"{event.timestamp or ''} {event.logical_resource_id} "
                f"{event.resource_type} {event.status} {event.status_reason}".strip()
            )
        sys.stdout.flush()
    return print_event


def confirm(prompt: str, tries: int = 3) -> bool:
    """Ask a yes/no question; anything not starting with 'y' is a no."""
    for _ in range(tries):
        try:
            response = input(f"{prompt} [y/n]: ")
        except EOFError:
            return False
        response = response.strip().lower()
        if not response:
            continue
        return response[0] == "y"
    return False


class Application:
    """Wires configuration, sessions and cleanup into command handlers."""

    def __init__(self, config: Configuration, as_json: bool = False) -> None:
        self.config = config
        self.as_json = as_json
        self.cleanup = CleanupRegistry(timeout=config.get_cleanup_timeout())
        self.sessions = SessionCache()
        self.manager = StackManager(
            self.sessions,
            self.cleanup,
            poll_seconds=config.get_poll_seconds(),
            default_profile=config.get_profile(),
            default_region=config.get_region(),
            staging_bucket=config.get_staging_bucket(),
        )
        self.finder = TemplateFinder(config.get_template_directory())
        self.scope = CancelScope(timeout=config.get_timeout())

    def load_request(self, template: str, params: str) -> ChangesetRequest:
        return load_changeset_request(self.finder.parameter_filename(template, params))

    def status(self, fail_fast: bool = False) -> int:
        pairs = self.finder.list_all()
        reports = self.manager.status_all(pairs, self.load_request, self.scope, fail_fast=fail_fast)
        if self.as_json:
            print_json(reports)
        else:
            print_table([h for h, _ in STATUS_COLUMNS], [report_row(r) for r in reports])
        return EXIT_OK

    def inspect(self, template: str, params: str) -> int:
        self.finder.validate(template, params)
        request = self.load_request(template, params)
        snapshot, changeset = self.manager.inspect_status(request, self.scope)
        if self.as_json:
            print_json({"stack": snapshot, "changeset": changeset})
        else:
            print_inspection(snapshot, changeset)
        return EXIT_OK

    def execute(self, template: str, params: str, auto_confirm: bool = False) -> int:
        self.finder.validate(template, params)
        request = self.load_request(template, params)
        snapshot, changeset = self.manager.inspect_status(request, self.scope)
        if snapshot.exists and snapshot.status not in EXECUTABLE_STACK_STATUSES:
            print(f"❌ Unable to update stack. Status: {snapshot.status}")
            return EXIT_ERROR

        if self.as_json:
            print_json({"stack": snapshot, "changeset": changeset})
        else:
            print_inspection(snapshot, changeset)

        if changeset.failed and not changeset.no_changes:
            print(f"❌ Changeset failed: {changeset.status_reason}")
            return EXIT_ERROR
        if not changeset.has_changes:
            print("no changes")
            return EXIT_OK
        if not auto_confirm and not confirm("Execute this cloudformation"):
            return EXIT_OK

        interrupt = threading.Event()
        previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: interrupt.set())
        try:
            result = self.manager.execute_approved(
                changeset, make_event_printer(self.as_json), self.scope, interrupt
            )
        finally:
            signal.signal(signal.SIGINT, previous_handler)

        if result.outcome is ExecutionOutcome.SUCCEEDED:
            print(f"✅ Stack {changeset.stack_name} finished: {result.status}")
            return EXIT_OK
        if result.outcome is ExecutionOutcome.CANCELLED:
            print(f"⚠️  Stack {changeset.stack_name} update cancelled")
            return EXIT_CANCELLED
        print(f"❌ Stack {changeset.stack_name} failed: {result.error}")
        return EXIT_ERROR

    def run(self, args: argparse.Namespace) -> int:
        try:
            if args.command == "status":
                return self.status(fail_fast=args.fail_fast)
            if args.command == "inspect":
                return self.inspect(args.template, args.params)
            return self.execute(args.template, args.params, auto_confirm=args.auto)
        finally:
            self.cleanup.run_all()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main application entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = parse_arguments(argv)
    try:
        config = load_configuration(args)
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e}")
        return EXIT_ERROR

    configure_logging(config.get_verbosity())
    if config.config_path is not None:
        logger.info(f"Loaded configuration from {config.config_path}")
    logger.debug(f"Effective configuration: {config.to_dict()}")
    app = Application(config, as_json=args.json)

    try:
        return app.run(args)
    except TemplateNotFoundError as e:
        print(f"❌ {e}")
        if e.valid_choices:
            print("   Valid choices:")
            for choice in e.valid_choices:
                print(f"   • {choice}")
        return EXIT_ERROR
    except OperationCancelled as e:
        print(f"\n⚠️  Operation cancelled: {e}")
        return EXIT_CANCELLED
    except KeyboardInterrupt:
        print("\n\n👋 Operation cancelled by user.")
        return EXIT_CANCELLED
    except (ParameterFileError, SessionError, StackInspectionError,
            ChangesetError, StagingError, ExecutionError,
            AmbiguousStackError, StackPollError, StreamError) as e:
        print(f"❌ {e}")
        return EXIT_ERROR
    except Exception as e:
        logger.debug("Unexpected failure", exc_info=True)
        print(f"\n❌ Unexpected error: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
