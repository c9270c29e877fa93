# tests/test_progress.py
"""Tests for progress tracking and sinks."""

from unittest.mock import MagicMock

import requests

from legacy_migrate.progress import ProgressTracker, WebhookProgressSink


class TestProgressTracker:

    def test_percentage_follows_finished_entity_types(self):
        tracker = ProgressTracker(total=4)

        tracker.emit("start", "Migrating 4 entity types")
        event = tracker.entity_done("reference", "order_types", {"succeeded": 2}, "completed")

        assert event.percentage == 25.0
        assert event.entity_type == "order_types"
        assert "order_types completed (succeeded=2)" == event.message
        assert len(tracker.events) == 2

    def test_no_planned_work_is_complete(self):
        assert ProgressTracker(total=0).percentage == 100.0

    def test_failing_sink_does_not_interrupt(self):
        received = []

        def broken(event):
            raise RuntimeError("sink down")

        tracker = ProgressTracker(total=1, sinks=[broken, received.append])
        tracker.entity_done("parties", "profiles", {}, "completed")

        assert [e.entity_type for e in received] == ["profiles"]


class TestWebhookProgressSink:

    def test_posts_event_json(self):
        session = MagicMock(spec=requests.Session)
        sink = WebhookProgressSink("https://hooks.example.com/progress", timeout=2.0, session=session)
        tracker = ProgressTracker(total=2, sinks=[sink])

        tracker.entity_done("core", "orders", {"succeeded": 3}, "completed")

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args == ("https://hooks.example.com/progress",)
        assert kwargs["timeout"] == 2.0
        assert kwargs["json"]["entity_type"] == "orders"
        assert kwargs["json"]["percentage"] == 50.0

    def test_http_error_is_logged_not_raised(self):
        session = MagicMock(spec=requests.Session)
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("503")
        tracker = ProgressTracker(total=1, sinks=[WebhookProgressSink("https://x", session=session)])

        event = tracker.emit("complete", "done")

        assert event.stage == "complete"
