"""Streaming of CloudFormation stack events.

DescribeStackEvents returns the most recent events first. The streamer
fetches pages until it reaches the last event it already forwarded, then
forwards the new batch oldest first.
"""

import logging
import threading
from typing import Any, Callable, List, Optional, Set

from botocore.exceptions import ClientError

from ..core.aws_client import ClientBundle, error_message, is_throttling_error
from ..core.backoff import Backoff
from ..core.cancellation import CancelScope
from .models import StackEvent


logger = logging.getLogger(__name__)

EventSink = Callable[[StackEvent], None]


class StreamError(Exception):
    """Raised when stack events cannot be fetched."""
    pass


class StackEventStreamer:
    """Forwards new stack events into a sink until stopped or cancelled.

    Until the first event carrying the bundle's idempotency token is seen,
    only events with that token are forwarded so other operators' activity
    is hidden. After that every event is forwarded, which makes cancel and
    rollback events from any actor visible.
    """

    def __init__(self, bundle: ClientBundle, stack_id: str, sink: EventSink,
                 backoff: Optional[Backoff] = None) -> None:
        """Initialize the streamer.

        Args:
            bundle: Client bundle whose token identifies our own events
            stack_id: Stack ARN or name
            sink: Callable receiving each new event in chronological order
            backoff: Poll interval controller (default: 1 second minimum)
        """
        self.bundle = bundle
        self.stack_id = stack_id
        self.sink = sink
        self.backoff = backoff or Backoff()
        self.stop_event_id = ""
        self.client_request_token: Optional[str] = bundle.token
        self._seen: Set[str] = set()
        self._stopped = threading.Event()
        self._scope: Optional[CancelScope] = None

    @property
    def cloudformation(self) -> Any:
        return self.bundle.cloudformation

    def stop(self) -> None:
        """Stop streaming. Safe to call more than once."""
        self._stopped.set()
        scope = self._scope
        if scope is not None:
            scope.cancel("event streamer stopped")

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def _should_exit(self, scope: CancelScope) -> bool:
        return self._stopped.is_set() or scope.cancelled

    def run(self, scope: CancelScope) -> None:
        """Stream events until stopped or the scope is cancelled.

        Raises:
            StreamError: When fetching events fails for a reason other than throttling
        """
        scope = scope.child()
        self._scope = scope
        try:
            self._stream(scope)
        finally:
            scope.close()

    def _stream(self, scope: CancelScope) -> None:
        if self._stopped.is_set():
            return
        while True:
            if scope.sleep(self.backoff.current()) or self._should_exit(scope):
                return
            try:
                new_events = self.fetch_new_events(scope)
            except ClientError as e:
                if is_throttling_error(e):
                    self.backoff.on_error()
                    logger.debug(
                        f"Throttled fetching events for {self.stack_id}, "
                        f"next attempt in {self.backoff.current()}s"
                    )
                    continue
                raise StreamError(
                    f"Unable to fetch recent events for {self.stack_id}: {error_message(e)}"
                ) from e
            self.backoff.on_success()

            for event in reversed(new_events):
                if self._should_exit(scope):
                    return
                self.stop_event_id = event.event_id
                self._seen.add(event.event_id)
                self.client_request_token = None
                self.sink(event)

    def fetch_new_events(self, scope: CancelScope) -> List[StackEvent]:
        """Fetch events newer than the watermark, most recent first.

        Raises:
            ClientError: When a DescribeStackEvents call fails
        """
        new_events: List[StackEvent] = []
        batch_ids: Set[str] = set()
        next_token = None
        while True:
            if scope.cancelled:
                return new_events
            params = {"StackName": self.stack_id}
            if next_token:
                params["NextToken"] = next_token
            response = self.cloudformation.describe_stack_events(**params)
            for raw in response.get("StackEvents", []):
                event = StackEvent.from_api(raw)
                if event.event_id == self.stop_event_id:
                    return new_events
                if self.client_request_token and event.client_request_token != self.client_request_token:
                    return new_events
                # Pages can shift while new events arrive
                if event.event_id in self._seen or event.event_id in batch_ids:
                    continue
                batch_ids.add(event.event_id)
                new_events.append(event)
            next_token = response.get("NextToken")
            if not next_token:
                return new_events
