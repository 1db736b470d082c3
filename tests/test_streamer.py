"""Unit tests for the stack event streamer."""

import threading

from unittest.mock import Mock
from botocore.exceptions import ClientError

from stackpilot.core.aws_client import ClientBundle
from stackpilot.core.backoff import Backoff
from stackpilot.core.cancellation import CancelScope
from stackpilot.deployment.streamer import StackEventStreamer, StreamError

import pytest


TOKEN = "stackpilot-token"


def event(event_id, status="UPDATE_IN_PROGRESS", token=TOKEN):
    return {"EventId": event_id, "StackName": "web", "LogicalResourceId": "web",
            "ResourceStatus": status, "ClientRequestToken": token}


def throttled():
    return ClientError({"Error": {"Code": "Throttling", "Message": "Rate exceeded"}},
                       "DescribeStackEvents")


class TestFetchNewEvents:
    """Test cases for fetching new events."""

    def setup_method(self):
        """Set up test fixtures."""
        self.bundle = Mock(spec=ClientBundle)
        self.bundle.token = TOKEN
        self.bundle.cloudformation = Mock()
        self.cfn = self.bundle.cloudformation
        self.received = []
        self.streamer = StackEventStreamer(self.bundle, "arn:stack", self.received.append)
        self.scope = CancelScope()

    def test_stops_at_foreign_token_before_first_event(self):
        """Test only our own events are fetched until one is seen."""
        self.cfn.describe_stack_events.return_value = {"StackEvents": [
            event("e3"), event("e2"), event("e1", token="someone-else"), event("e0"),
        ]}

        new_events = self.streamer.fetch_new_events(self.scope)

        assert [e.event_id for e in new_events] == ["e3", "e2"]

    def test_stops_at_watermark(self):
        """Test fetching stops at the last forwarded event."""
        self.streamer.stop_event_id = "e2"
        self.streamer.client_request_token = None
        self.cfn.describe_stack_events.return_value = {"StackEvents": [
            event("e4", token=""), event("e3"), event("e2"), event("e1"),
        ]}

        new_events = self.streamer.fetch_new_events(self.scope)

        assert [e.event_id for e in new_events] == ["e4", "e3"]

    def test_follows_pages(self):
        """Test older pages are fetched until the watermark."""
        self.streamer.stop_event_id = "e1"
        self.cfn.describe_stack_events.side_effect = [
            {"StackEvents": [event("e3")], "NextToken": "next"},
            {"StackEvents": [event("e2"), event("e1")]},
        ]

        new_events = self.streamer.fetch_new_events(self.scope)

        assert [e.event_id for e in new_events] == ["e3", "e2"]
        self.cfn.describe_stack_events.assert_called_with(StackName="arn:stack", NextToken="next")

    def test_skips_duplicates(self):
        """Test events repeated across shifted pages are dropped."""
        self.cfn.describe_stack_events.side_effect = [
            {"StackEvents": [event("e3"), event("e2")], "NextToken": "next"},
            {"StackEvents": [event("e2"), event("e1")]},
        ]

        new_events = self.streamer.fetch_new_events(self.scope)

        assert [e.event_id for e in new_events] == ["e3", "e2", "e1"]


class TestStreamerRun:
    """Test cases for the streaming loop."""

    def setup_method(self):
        """Set up test fixtures."""
        self.bundle = Mock(spec=ClientBundle)
        self.bundle.token = TOKEN
        self.bundle.cloudformation = Mock()
        self.cfn = self.bundle.cloudformation
        self.received = []
        self.backoff = Backoff(minimum=0.001, maximum=0.05)
        self.scope = CancelScope()

    def make_streamer(self, responses):
        """Build a streamer whose sink stops it once all responses are used."""
        remaining = list(responses)

        def describe(**kwargs):
            item = remaining.pop(0)
            if not remaining:
                streamer.stop()
            if isinstance(item, Exception):
                raise item
            return item

        self.cfn.describe_stack_events.side_effect = describe
        streamer = StackEventStreamer(self.bundle, "arn:stack", self.received.append, self.backoff)
        return streamer

    def test_events_delivered_oldest_first_once(self):
        """Test events arrive in chronological order without repeats."""
        streamer = self.make_streamer([
            {"StackEvents": [event("e2"), event("e1")]},
            {"StackEvents": [event("e4", token=""), event("e3"), event("e2"), event("e1")]},
            {"StackEvents": [event("e4", token=""), event("e3")]},
        ])

        streamer.run(self.scope)

        assert [e.event_id for e in self.received] == ["e1", "e2", "e3", "e4"]
        assert streamer.client_request_token is None
        assert streamer.stop_event_id == "e4"

    def test_throttling_raises_interval(self):
        """Test throttled calls grow the poll interval and successes shrink it."""
        streamer = self.make_streamer([
            throttled(),
            throttled(),
            {"StackEvents": [event("e1")]},
            {"StackEvents": []},
        ])
        intervals = []
        successes = []
        original_error = self.backoff.on_error
        original_success = self.backoff.on_success

        def record_error():
            original_error()
            intervals.append(self.backoff.current())

        def record_success():
            original_success()
            successes.append(self.backoff.current())

        self.backoff.on_error = record_error
        self.backoff.on_success = record_success

        streamer.run(self.scope)

        assert intervals == [0.002, 0.004]
        assert successes[0] == pytest.approx(0.00375)
        assert successes[0] < intervals[-1]
        assert [e.event_id for e in self.received] == ["e1"]

    def test_other_errors_fatal(self):
        """Test non-throttling errors end the stream."""
        self.cfn.describe_stack_events.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DescribeStackEvents"
        )
        streamer = StackEventStreamer(self.bundle, "arn:stack", self.received.append, self.backoff)

        with pytest.raises(StreamError):
            streamer.run(self.scope)

    def test_stop_from_other_thread(self):
        """Test stop wakes the streamer and is idempotent."""
        self.cfn.describe_stack_events.return_value = {"StackEvents": []}
        streamer = StackEventStreamer(self.bundle, "arn:stack", self.received.append,
                                      Backoff(minimum=10))
        thread = threading.Thread(target=streamer.run, args=(self.scope,))
        thread.start()

        threading.Timer(0.05, streamer.stop).start()
        thread.join(5)
        streamer.stop()

        assert not thread.is_alive()
        assert streamer.stopped
        assert not self.scope.cancelled

    def test_stop_before_run(self):
        """Test a stopped streamer never fetches."""
        streamer = StackEventStreamer(self.bundle, "arn:stack", self.received.append, self.backoff)
        streamer.stop()

        streamer.run(self.scope)

        self.cfn.describe_stack_events.assert_not_called()
        assert self.scope._children == []
