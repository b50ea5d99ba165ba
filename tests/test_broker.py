import json
import threading

import pytest
import redis

from notifyhub.errors import BrokerUnavailable
from notifyhub.notifications.broker import BrokerClient, topic_matches
from notifyhub.resilience import get_snapshot
from tests.fakes import FakeRedis, published

EXCHANGE = "notifications"


@pytest.mark.parametrize("binding,key,expected", [
    ("notifications.created", "notifications.created", True),
    ("notifications.*", "notifications.created", True),
    ("notifications.*", "notifications.created.v2", False),
    ("*.created", "notifications.created", True),
    ("notifications.#", "notifications", True),
    ("notifications.#", "notifications.created.v2", True),
    ("#", "anything.at.all", True),
    ("notifications.created", "notifications.deleted", False),
    ("notifications.created", "notifications", False),
])
def test_topic_matching(binding, key, expected):
    assert topic_matches(binding, key) is expected


def test_connection_is_opened_lazily_and_once():
    fake = FakeRedis()
    opened = []

    def factory():
        opened.append(1)
        return fake

    broker = BrokerClient(exchange=EXCHANGE, client_factory=factory)
    assert not broker.connected
    broker.publish("notifications.created", {"id": 1})
    broker.publish("notifications.created", {"id": 2})

    assert broker.connected
    assert opened == [1]


def test_publish_appends_routing_key_and_json_body(broker, fake_redis):
    msg_id = broker.publish("notifications.created", {"id": 1, "subject": "Olá"})

    (entry_id, fields), = fake_redis.entries(EXCHANGE)
    assert entry_id == msg_id
    assert fields["routing_key"] == "notifications.created"
    assert fields["content_type"] == "application/json"
    assert json.loads(fields["data"]) == {"id": 1, "subject": "Olá"}


def test_publish_to_unreachable_broker_raises(fake_redis):
    fake_redis.down = True
    broker = BrokerClient(exchange=EXCHANGE, client_factory=lambda: fake_redis)

    with pytest.raises(BrokerUnavailable):
        broker.publish("notifications.created", {"id": 1})
    assert not broker.connected


def test_publish_after_connection_drops_raises(broker, fake_redis):
    broker.publish("notifications.created", {"id": 1})
    fake_redis.down = True

    with pytest.raises(BrokerUnavailable):
        broker.publish("notifications.created", {"id": 2})


def test_subscription_only_sees_events_published_after_binding(broker, fake_redis):
    broker.publish("notifications.created", {"id": 1})
    seen = []
    sub = broker.subscribe("notifications.created", seen.append)
    broker.publish("notifications.created", {"id": 2})

    assert sub.poll() == 1
    assert seen == [{"id": 2}]


def test_handled_event_is_acknowledged(broker, fake_redis):
    seen = []
    sub = broker.subscribe("notifications.created", seen.append)
    broker.publish("notifications.created", {"id": 1, "correlationId": "cid-1"})

    sub.poll()

    assert seen == [{"id": 1, "correlationId": "cid-1"}]
    assert sub.acked == 1
    assert fake_redis.pending(EXCHANGE, sub.group) == {}
    assert sub.poll() == 0
    assert get_snapshot()["consume_success"] == 1


def test_failing_handler_rejects_without_requeue(broker, fake_redis):
    calls = []

    def handler(payload):
        calls.append(payload)
        raise RuntimeError("smtp down")

    sub = broker.subscribe("notifications.created", handler)
    broker.publish("notifications.created", {"id": 1, "correlationId": "cid-1"})

    sub.poll()
    sub.poll()

    assert len(calls) == 1
    assert sub.rejected == 1
    assert sub.acked == 0
    assert fake_redis.pending(EXCHANGE, sub.group) == {}
    snap = get_snapshot()
    assert snap["consume_fail"] == 1
    assert snap["recent"][-1]["correlation_id"] == "cid-1"


def test_undecodable_payload_is_rejected(broker, fake_redis):
    seen = []
    sub = broker.subscribe("notifications.created", seen.append)
    fake_redis.xadd(EXCHANGE, {"routing_key": "notifications.created", "data": "{not json"})

    sub.poll()

    assert seen == []
    assert sub.rejected == 1
    assert fake_redis.pending(EXCHANGE, sub.group) == {}


def test_other_routing_keys_are_skipped(broker, fake_redis):
    seen = []
    sub = broker.subscribe("notifications.created", seen.append)
    broker.publish("notifications.deleted", {"id": 1})

    assert sub.poll() == 1
    assert seen == []
    assert sub.acked == 0
    assert sub.rejected == 0
    assert fake_redis.pending(EXCHANGE, sub.group) == {}


def test_unacknowledged_event_is_redelivered_after_reconnect(broker, fake_redis):
    seen = []

    def handler(payload):
        seen.append(payload)
        if len(seen) == 1:
            # connection drops before the ack goes out
            fake_redis.down = True

    sub = broker.subscribe("notifications.created", handler)
    broker.publish("notifications.created", {"id": 1})

    with pytest.raises(BrokerUnavailable):
        sub.poll()
    assert list(fake_redis.pending(EXCHANGE, sub.group)) == [fake_redis.entries(EXCHANGE)[0][0]]

    fake_redis.down = False
    assert sub.poll() == 1
    assert seen == [{"id": 1}, {"id": 1}]
    assert sub.acked == 1
    assert fake_redis.pending(EXCHANGE, sub.group) == {}

    broker.publish("notifications.created", {"id": 2})
    sub.poll()
    sub.poll()
    assert seen[-1] == {"id": 2}


def test_missing_group_is_declared_again(broker, fake_redis):
    seen = []
    sub = broker.subscribe("notifications.created", seen.append)
    fake_redis.xgroup_destroy(EXCHANGE, sub.group)

    assert sub.poll() == 0
    broker.publish("notifications.created", {"id": 1})
    sub.poll()
    assert seen == [{"id": 1}]


def test_run_loop_survives_outage_until_stopped(broker, fake_redis):
    stop = threading.Event()
    seen = []

    def handler(payload):
        seen.append(payload)
        stop.set()

    sub = broker.subscribe("notifications.created", handler)
    fake_redis.down = True
    polls = []
    real_poll = sub.poll

    def poll(block_ms=None):
        polls.append(block_ms)
        if len(polls) == 2:
            fake_redis.down = False
            broker.publish("notifications.created", {"id": 1})
        return real_poll(block_ms)

    sub.poll = poll
    sub.run(stop, block_ms=10, backoff_s=0)

    assert seen == [{"id": 1}]
    assert get_snapshot()["consume_fail"] == 1


def test_close_destroys_exclusive_groups(fake_redis):
    broker = BrokerClient(exchange=EXCHANGE, client_factory=lambda: fake_redis)
    sub = broker.subscribe("notifications.created", lambda payload: None)
    assert (EXCHANGE, sub.group) in fake_redis.groups

    broker.close()

    assert (EXCHANGE, sub.group) not in fake_redis.groups
    assert fake_redis.closed
    assert not broker.connected


def test_each_subscription_gets_its_own_copy(broker, fake_redis):
    first, second = [], []
    a = broker.subscribe("notifications.created", first.append)
    b = broker.subscribe("notifications.#", second.append)
    broker.publish("notifications.created", {"id": 1})

    a.poll()
    b.poll()

    assert first == second == [{"id": 1}]
    assert published(fake_redis) == [("notifications.created", {"id": 1})]


def test_broker_refusing_the_handshake_is_unavailable(fake_redis):
    fake_redis.fail("ping", redis.exceptions.NoPermissionError("NOPERM this user has no permissions to run the 'ping' command"))
    broker = BrokerClient(exchange=EXCHANGE, client_factory=lambda: fake_redis)

    with pytest.raises(BrokerUnavailable):
        broker.publish("notifications.created", {"id": 1})
    assert not broker.connected


def test_server_error_on_publish_is_unavailable(broker, fake_redis):
    fake_redis.fail("xadd", redis.exceptions.ResponseError("OOM command not allowed when used memory > 'maxmemory'"))

    with pytest.raises(BrokerUnavailable):
        broker.publish("notifications.created", {"id": 1})


def test_run_loop_survives_server_errors(broker, fake_redis):
    stop = threading.Event()
    seen = []

    def handler(payload):
        seen.append(payload)
        stop.set()

    sub = broker.subscribe("notifications.created", handler)
    broker.publish("notifications.created", {"id": 1})
    fake_redis.fail("xreadgroup", redis.exceptions.ReadOnlyError("READONLY You can't write against a read only replica."), once=True)

    sub.run(stop, block_ms=10, backoff_s=0)

    assert seen == [{"id": 1}]
    assert get_snapshot()["consume_fail"] == 1


def test_failed_ack_on_server_error_is_redelivered(broker, fake_redis):
    seen = []
    sub = broker.subscribe("notifications.created", seen.append)
    broker.publish("notifications.created", {"id": 1})
    fake_redis.fail("xack", redis.exceptions.ReadOnlyError("READONLY You can't write against a read only replica."), once=True)

    with pytest.raises(BrokerUnavailable):
        sub.poll()
    assert sub.poll() == 1

    assert seen == [{"id": 1}, {"id": 1}]
    assert sub.acked == 1
    assert fake_redis.pending(EXCHANGE, sub.group) == {}


def test_declare_failure_is_unavailable(broker, fake_redis):
    fake_redis.fail("xgroup_create", redis.exceptions.ResponseError("ERR unknown command 'XGROUP'"))

    with pytest.raises(BrokerUnavailable):
        broker.subscribe("notifications.created", lambda payload: None)


def test_durable_group_outlives_the_client_and_resumes(fake_redis):
    seen = []

    def crash_before_ack(payload):
        seen.append(payload)
        fake_redis.down = True

    first = BrokerClient(exchange=EXCHANGE, client_factory=lambda: fake_redis)
    sub = first.subscribe("notifications.created", crash_before_ack, group="workers", consumer="worker-a")
    first.publish("notifications.created", {"id": 1})
    with pytest.raises(BrokerUnavailable):
        sub.poll()
    fake_redis.down = False
    first.close()

    assert sub.durable
    assert (EXCHANGE, "workers") in fake_redis.groups

    second = BrokerClient(exchange=EXCHANGE, client_factory=lambda: fake_redis)
    second.publish("notifications.created", {"id": 2})
    resumed = second.subscribe("notifications.created", seen.append, group="workers", consumer="worker-a")

    # pending replay, end of replay, then new entries
    assert resumed.poll() == 1
    assert resumed.poll() == 0
    assert resumed.poll() == 1

    assert seen == [{"id": 1}, {"id": 1}, {"id": 2}]
    assert fake_redis.pending(EXCHANGE, "workers") == {}
    second.close()
    assert (EXCHANGE, "workers") in fake_redis.groups
