"""Tests for the EventBus."""

from __future__ import annotations

from codebase_rag.events import EventBus


class TestEventBus:
    def test_emit_reaches_subscribers_in_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe("ping", lambda e, p: seen.append(("first", e, p)))
        bus.subscribe("ping", lambda e, p: seen.append(("second", e, p)))
        bus.emit("ping", {"n": 1})
        assert seen == [("first", "ping", {"n": 1}), ("second", "ping", {"n": 1})]

    def test_emit_without_subscribers(self):
        EventBus().emit("nobody-listens")

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []

        def callback(event, payload):
            seen.append(event)

        bus.subscribe("ping", callback)
        bus.unsubscribe("ping", callback)
        bus.unsubscribe("ping", callback)
        bus.emit("ping")
        assert seen == []
        assert bus.subscriber_count("ping") == 0

    def test_failing_callback_is_logged_and_skipped(self, caplog):
        bus = EventBus()
        seen = []

        def broken(event, payload):
            raise RuntimeError("boom")

        bus.subscribe("ping", broken)
        bus.subscribe("ping", lambda e, p: seen.append(e))
        bus.emit("ping")
        assert seen == ["ping"]
        assert "boom" in caplog.text
