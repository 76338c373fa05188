from notifications import ChangeBus


class RecordingRedis:
    def __init__(self):
        self.published = []

    def publish_event(self, channel, event):
        self.published.append((channel, event))
        return True


def test_every_listener_gets_the_event():
    bus = ChangeBus()
    first, second = [], []
    bus.subscribe(first.append)
    bus.subscribe(second.append)

    event = bus.notify("table-items", 3)

    assert event == {"type": "table-items", "id": 3}
    assert first == [event] and second == [event]


def test_failing_listener_does_not_stop_the_others():
    bus = ChangeBus()
    received = []

    def broken(event):
        raise RuntimeError("socket closed")

    bus.subscribe(broken)
    bus.subscribe(received.append)

    bus.notify("tables")
    assert received == [{"type": "tables", "id": None}]


def test_unsubscribe():
    bus = ChangeBus()
    received = []
    unsubscribe = bus.subscribe(received.append)
    unsubscribe()
    unsubscribe()

    bus.notify("sales")
    assert received == []


def test_events_are_published_to_redis():
    redis = RecordingRedis()
    bus = ChangeBus(redis=redis, channel="pos:test")
    bus.notify("customers")
    assert redis.published == [("pos:test", {"type": "customers", "id": None})]
