from convertd.events import ConversionEvent, EventKind, EventPublisher


def test_subscribers_receive_matching_kinds():
    publisher = EventPublisher()
    progress, everything = [], []
    publisher.subscribe(EventKind.PROGRESS, progress.append)
    publisher.subscribe(None, everything.append)

    publisher.publish(ConversionEvent(EventKind.QUEUED, 1, file_name="a.mkv"))
    publisher.publish(ConversionEvent(EventKind.PROGRESS, 1, progress=50))

    assert [e.progress for e in progress] == [50]
    assert [e.kind for e in everything] == [EventKind.QUEUED, EventKind.PROGRESS]


def test_subscribe_accepts_kind_name():
    publisher = EventPublisher()
    seen = []
    publisher.subscribe("failed", seen.append)
    publisher.publish(ConversionEvent(EventKind.FAILED, 3, error="nope"))
    assert seen[0].error == "nope"


def test_unsubscribe_leaves_other_subscribers_alone():
    publisher = EventPublisher()
    first, second = [], []
    token = publisher.subscribe(None, first.append)
    publisher.subscribe(None, second.append)

    assert publisher.unsubscribe(token)
    assert not publisher.unsubscribe(token)
    publisher.publish(ConversionEvent(EventKind.STARTED, 2))

    assert first == []
    assert len(second) == 1
    assert publisher.subscriber_count == 1


def test_failing_handler_does_not_stop_delivery():
    publisher = EventPublisher()
    seen = []

    def broken(event):
        raise RuntimeError("socket closed")

    publisher.subscribe(None, broken)
    publisher.subscribe(None, seen.append)
    publisher.publish(ConversionEvent(EventKind.COMPLETED, 4, progress=100))
    assert len(seen) == 1


def test_handler_may_unsubscribe_itself_during_publish():
    publisher = EventPublisher()
    calls = []
    token = None

    def once(event):
        calls.append(event)
        publisher.unsubscribe(token)

    token = publisher.subscribe(None, once)
    publisher.publish(ConversionEvent(EventKind.QUEUED, 1))
    publisher.publish(ConversionEvent(EventKind.QUEUED, 2))
    assert len(calls) == 1


def test_event_to_dict_omits_empty_fields():
    assert ConversionEvent(EventKind.CANCELLED, 8).to_dict() == {"type": "cancelled", "item_id": 8}
    assert ConversionEvent(EventKind.PROGRESS, 8, file_name="x.mkv", progress=10).to_dict() == {
        "type": "progress", "item_id": 8, "file_name": "x.mkv", "progress": 10,
    }
