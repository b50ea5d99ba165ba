import threading

import pytest
from pydantic import ValidationError

from notifyhub.notifications import worker
from notifyhub.notifications.models import NotificationCreatedEvent
from notifyhub.observability import get_correlation_id

EVENT = {
    "id": 7,
    "subject": "Hello",
    "message": "World",
    "recipientId": 1,
    "created_at": "2026-01-02T03:04:05",
    "correlationId": "cid-7",
}


def test_handler_delivers_with_correlation_bound():
    seen = []

    def deliver(event):
        seen.append((event, get_correlation_id()))

    worker.make_handler(deliver)(EVENT)

    ((event, cid),) = seen
    assert isinstance(event, NotificationCreatedEvent)
    assert (event.id, event.recipient_id, event.correlation_id) == (7, 1, "cid-7")
    assert cid == "cid-7"
    assert get_correlation_id() is None


def test_handler_refuses_malformed_events():
    with pytest.raises(ValidationError):
        worker.make_handler(lambda event: None)({"subject": "no id"})


def test_start_acks_good_and_rejects_bad_events(broker):
    seen = []
    sub = worker.start(broker, seen.append)

    broker.publish("notifications.created", EVENT)
    broker.publish("notifications.created", {"id": "nope"})
    # the first read replays whatever a previous run left unacknowledged
    assert sub.poll() == 0
    assert sub.poll() == 2

    assert [e.id for e in seen] == [7]
    assert (sub.acked, sub.rejected) == (1, 1)


def test_run_until_stopped(broker):
    stop = threading.Event()
    seen = []

    def deliver(event):
        seen.append(event.id)
        stop.set()

    thread = threading.Thread(target=worker.run, args=(broker, stop, deliver))
    thread.start()
    try:
        # the subscription is declared at the tail, so publish until the worker is bound
        while not stop.wait(0.05):
            broker.publish("notifications.created", EVENT)
    finally:
        stop.set()
        thread.join(timeout=5)

    assert not thread.is_alive()
    assert seen[0] == 7


def test_log_delivery_accepts_an_event():
    worker.log_delivery(NotificationCreatedEvent.model_validate(EVENT))


def test_worker_binds_a_durable_group(broker, fake_redis):
    sub = worker.start(broker, lambda event: None, group="notification-worker", consumer="worker-a")

    assert sub.durable
    assert (sub.group, sub.consumer) == ("notification-worker", "worker-a")
    broker.close()
    assert ("notifications", "notification-worker") in fake_redis.groups


def test_replicas_share_the_group(broker):
    first, second = [], []
    a = worker.start(broker, first.append, group="notification-worker", consumer="worker-a")
    b = worker.start(broker, second.append, group="notification-worker", consumer="worker-b")
    a.poll()
    b.poll()

    broker.publish("notifications.created", EVENT)
    a.poll()
    b.poll()

    assert len(first) + len(second) == 1
