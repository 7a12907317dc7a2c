from core.events import AUTH_TOPIC, SIGNED_OUT, AuthStateChanged, EventBus


def test_publish_reaches_subscribers_in_order():
    bus = EventBus()
    seen = []
    bus.subscribe(AUTH_TOPIC, lambda ev: seen.append(("first", ev.event)))
    bus.subscribe(AUTH_TOPIC, lambda ev: seen.append(("second", ev.event)))
    assert bus.publish(AUTH_TOPIC, AuthStateChanged(SIGNED_OUT, "u1")) == 2
    assert seen == [("first", SIGNED_OUT), ("second", SIGNED_OUT)]


def test_unsubscribe_is_idempotent():
    bus = EventBus()
    sub = bus.subscribe("delete:users", lambda ev: None)
    assert bus.listener_count("delete:users") == 1
    sub.unsubscribe()
    sub.unsubscribe()
    assert bus.listener_count("delete:users") == 0
    assert bus.publish("delete:users", object()) == 0


def test_failing_listener_does_not_block_others():
    bus = EventBus()
    seen = []

    def broken(_ev):
        raise RuntimeError("boom")

    bus.subscribe(AUTH_TOPIC, broken)
    bus.subscribe(AUTH_TOPIC, seen.append)
    assert bus.publish(AUTH_TOPIC, "payload") == 1
    assert seen == ["payload"]


def test_listener_removed_during_publish_is_skipped():
    bus = EventBus()
    seen = []
    holder = {}

    def first(_ev):
        holder["second"].unsubscribe()

    bus.subscribe(AUTH_TOPIC, first)
    holder["second"] = bus.subscribe(AUTH_TOPIC, seen.append)
    bus.publish(AUTH_TOPIC, "payload")
    assert seen == []
