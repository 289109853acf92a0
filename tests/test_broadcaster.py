from services.status_broadcaster import StatusBroadcaster


CHANNEL = "dashboard:org-1"


def test_delivers_in_subscription_order():
    broadcaster = StatusBroadcaster()
    calls = []
    broadcaster.subscribe(CHANNEL, lambda e: calls.append(("first", e["n"])))
    broadcaster.subscribe(CHANNEL, lambda e: calls.append(("second", e["n"])))

    assert broadcaster.broadcast(CHANNEL, {"n": 1}) == 2
    assert calls == [("first", 1), ("second", 1)]


def test_channels_are_isolated():
    broadcaster = StatusBroadcaster()
    calls = []
    broadcaster.subscribe("dashboard:org-2", calls.append)

    assert broadcaster.broadcast(CHANNEL, {"n": 1}) == 0
    assert calls == []


def test_unsubscribe_is_idempotent():
    broadcaster = StatusBroadcaster()
    calls = []
    unsubscribe = broadcaster.subscribe(CHANNEL, calls.append)

    unsubscribe()
    unsubscribe()
    broadcaster.broadcast(CHANNEL, {"n": 1})

    assert calls == []
    assert broadcaster.subscriber_count(CHANNEL) == 0
    assert broadcaster.channel_count == 0


def test_unsubscribe_during_broadcast_skips_removed_subscriber():
    broadcaster = StatusBroadcaster()
    calls = []
    handles = {}

    def first(event):
        calls.append("first")
        handles["second"]()

    broadcaster.subscribe(CHANNEL, first)
    handles["second"] = broadcaster.subscribe(CHANNEL, lambda e: calls.append("second"))

    assert broadcaster.broadcast(CHANNEL, {}) == 1
    assert calls == ["first"]


def test_failing_subscriber_does_not_affect_others():
    broadcaster = StatusBroadcaster()
    calls = []

    def broken(event):
        raise RuntimeError("subscriber crashed")

    broadcaster.subscribe(CHANNEL, broken)
    broadcaster.subscribe(CHANNEL, calls.append)

    assert broadcaster.broadcast(CHANNEL, {"n": 1}) == 1
    assert calls == [{"n": 1}]


def test_same_callback_subscribed_twice():
    broadcaster = StatusBroadcaster()
    calls = []
    unsubscribe_a = broadcaster.subscribe(CHANNEL, calls.append)
    broadcaster.subscribe(CHANNEL, calls.append)

    unsubscribe_a()
    broadcaster.broadcast(CHANNEL, {"n": 1})
    assert calls == [{"n": 1}]


def test_dashboard_event_envelope():
    broadcaster = StatusBroadcaster()
    calls = []
    broadcaster.subscribe(CHANNEL, calls.append)

    broadcaster.emit_node_status("org-1", "run-1", "node-1", "error", error="boom")

    event = calls[0]
    assert event["type"] == "node-status"
    assert event["data"] == {"runId": "run-1", "nodeId": "node-1", "status": "error", "error": "boom"}
    assert "timestamp" in event


def test_notification_event():
    broadcaster = StatusBroadcaster()
    calls = []
    broadcaster.subscribe(CHANNEL, calls.append)

    broadcaster.emit_notification("org-1", "Heads up", "Something happened", level="warning")

    assert calls[0]["type"] == "notification"
    assert calls[0]["data"]["level"] == "warning"
