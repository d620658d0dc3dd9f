from imgpress.core.models import ProgressEvent
from imgpress.core.progress import ProgressBroadcaster


def test_publish_reaches_every_subscriber_in_order():
    b = ProgressBroadcaster()
    seen_a, seen_b = [], []
    b.subscribe(seen_a.append)
    b.subscribe(seen_b.append)
    ev = ProgressEvent("a.png", "started", {"size": 3})
    b.publish(ev)
    assert seen_a == [ev] and seen_b == [ev]


def test_failing_subscriber_does_not_block_others():
    b = ProgressBroadcaster()
    seen = []

    def boom(event):
        raise RuntimeError("listener broke")

    b.subscribe(boom)
    b.subscribe(seen.append)
    b.publish(ProgressEvent("a.png", "completed"))
    assert len(seen) == 1


def test_unsubscribe():
    b = ProgressBroadcaster()
    seen = []
    unsubscribe = b.subscribe(seen.append)
    assert len(b) == 1
    unsubscribe()
    unsubscribe()
    assert len(b) == 0
    b.publish(ProgressEvent("a.png", "error"))
    assert seen == []
