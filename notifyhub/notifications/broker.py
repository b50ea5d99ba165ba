"""
Topic-routed event bus on top of Redis Streams.

The exchange is a single stream named after the domain; every entry carries
its routing key, and subscribers bind with AMQP-style topic patterns
(``*`` matches one word, ``#`` zero or more). By default a subscription owns
a consumer group created at the stream tail, which plays the part of an
exclusive, anonymous queue: it only sees entries published after it was
declared and is destroyed when the client closes. A subscription given a
``group`` name is durable instead: the group outlives the process, so a
restarted worker resumes where it stopped and no group is left behind when
it dies without closing.

Delivery is at-least-once. An entry stays in the group's pending list until
it is acknowledged; after a broker error the subscription re-reads its
own pending entries before asking for new ones. A handler failure rejects
the entry without requeue: it is acknowledged and logged, never retried here.
"""
import json
import logging
import os
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional

import redis

from notifyhub import config
from notifyhub.errors import BrokerUnavailable
from notifyhub.resilience import record_consume_success, record_consume_failure

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


def topic_matches(binding: str, routing_key: str) -> bool:
    return _match(binding.split("."), routing_key.split("."))


def _match(pattern: List[str], words: List[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    return head in ("*", words[0]) and _match(rest, words[1:])


def _default_client() -> redis.Redis:
    return redis.Redis(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        password=config.REDIS_PASSWORD,
        ssl=config.REDIS_SSL,
        decode_responses=True,
        socket_connect_timeout=config.REDIS_CONNECT_TIMEOUT,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
        retry_on_timeout=True,
    )


class BrokerClient:
    """One lazily opened connection shared by every publish/subscribe in the process.

    Any error raised by Redis surfaces as ``BrokerUnavailable``.
    """

    def __init__(
        self,
        exchange: Optional[str] = None,
        client_factory: Optional[Callable[[], redis.Redis]] = None,
        maxlen: Optional[int] = None,
    ):
        self.exchange = exchange or config.NOTIF_EXCHANGE
        self._factory = client_factory or _default_client
        self._maxlen = maxlen if maxlen is not None else config.NOTIF_STREAM_MAXLEN
        self._client: Optional[redis.Redis] = None
        self._init_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._subscriptions: List["Subscription"] = []

    def __enter__(self) -> "BrokerClient":
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def client(self) -> redis.Redis:
        if self._client is None:
            with self._init_lock:
                if self._client is None:
                    try:
                        client = self._factory()
                        client.ping()
                    except redis.exceptions.RedisError as e:
                        raise BrokerUnavailable(f"broker unreachable: {e!r}") from e
                    self._client = client
                    logger.info("broker_connected", extra={"extra": {
                        "event": "broker_connected", "exchange": self.exchange,
                    }})
        return self._client

    def publish(self, routing_key: str, message: Dict[str, Any]) -> str:
        fields = {
            "routing_key": routing_key,
            "content_type": "application/json",
            "data": json.dumps(message, ensure_ascii=False, default=str),
        }
        trim = {"maxlen": self._maxlen, "approximate": True} if self._maxlen else {}
        client = self.client()
        try:
            with self._publish_lock:
                msg_id = client.xadd(self.exchange, fields, **trim)
        except redis.exceptions.RedisError as e:
            raise BrokerUnavailable(f"publish failed: {e!r}") from e
        logger.debug("broker_published", extra={"extra": {
            "event": "broker_published", "exchange": self.exchange,
            "routing_key": routing_key, "msg_id": msg_id,
        }})
        return msg_id

    def subscribe(
        self,
        binding: str,
        handler: Handler,
        batch_size: Optional[int] = None,
        group: Optional[str] = None,
        consumer: Optional[str] = None,
    ) -> "Subscription":
        sub = Subscription(self, binding, handler, batch_size or config.NOTIF_WORKER_BATCH, group, consumer)
        sub.declare()
        self._subscriptions.append(sub)
        return sub

    def close(self):
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions.clear()
        if self._client is not None:
            try:
                self._client.close()
            except redis.exceptions.RedisError as e:
                logger.warning(f"broker close error: {e}")
            self._client = None


class Subscription:
    def __init__(
        self,
        broker: BrokerClient,
        binding: str,
        handler: Handler,
        batch_size: int,
        group: Optional[str] = None,
        consumer: Optional[str] = None,
    ):
        self.broker = broker
        self.binding = binding
        self.handler = handler
        self.batch_size = batch_size
        self.durable = group is not None
        self.group = group or f"{broker.exchange}.{binding}.{uuid.uuid4().hex[:12]}"
        self.consumer = consumer or f"consumer-{os.getpid()}"
        self.acked = 0
        self.rejected = 0
        # a durable group may hold entries this consumer read but never acked before a restart
        self._recovering = self.durable

    def declare(self):
        try:
            self.broker.client().xgroup_create(
                name=self.broker.exchange, groupname=self.group, id="$", mkstream=True,
            )
        except redis.exceptions.RedisError as e:
            if "BUSYGROUP" not in str(e):
                raise BrokerUnavailable(f"declare failed: {e!r}") from e
        logger.info("broker_bound", extra={"extra": {
            "event": "broker_bound", "exchange": self.broker.exchange,
            "binding": self.binding, "group": self.group, "durable": self.durable,
        }})

    def poll(self, block_ms: Optional[int] = None) -> int:
        """Read and dispatch one batch; returns the number of entries seen."""
        client = self.broker.client()
        # "0" replays this consumer's unacknowledged entries, ">" asks for new ones
        start = "0" if self._recovering else ">"
        try:
            resp = client.xreadgroup(
                groupname=self.group,
                consumername=self.consumer,
                streams={self.broker.exchange: start},
                count=self.batch_size,
                block=None if self._recovering else block_ms,
            )
        except redis.exceptions.RedisError as e:
            if "NOGROUP" in str(e):
                logger.warning("broker_group_missing", extra={"extra": {
                    "event": "broker_group_missing", "group": self.group,
                }})
                self.declare()
                return 0
            self._recovering = True
            raise BrokerUnavailable(f"consume failed: {e!r}") from e

        entries = [entry for _, batch in (resp or []) for entry in batch]
        if self._recovering and not entries:
            self._recovering = False
        for msg_id, fields in entries:
            self._dispatch(msg_id, fields)
        return len(entries)

    def run(self, stop: threading.Event, block_ms: Optional[int] = None, backoff_s: float = 1.0):
        block_ms = block_ms or config.NOTIF_WORKER_BLOCK_MS
        while not stop.is_set():
            try:
                self.poll(block_ms)
            except BrokerUnavailable as e:
                logger.warning(f"consumer loop: {e}", extra={"extra": {
                    "event": "consumer_broker_unavailable", "group": self.group,
                }})
                record_consume_failure(e)
                stop.wait(backoff_s)

    def close(self):
        # durable groups keep their position and pending entries for the next run
        if self.durable or not self.broker.connected:
            return
        try:
            self.broker.client().xgroup_destroy(self.broker.exchange, self.group)
        except redis.exceptions.RedisError as e:
            logger.warning(f"could not destroy group {self.group}: {e}")

    def _dispatch(self, msg_id: str, fields: Optional[Dict[str, str]]):
        if not fields:
            # entry trimmed from the stream while pending
            self._ack(msg_id)
            return
        routing_key = fields.get("routing_key", "")
        if not topic_matches(self.binding, routing_key):
            self._ack(msg_id)
            return
        try:
            payload = json.loads(fields.get("data") or "")
        except ValueError as e:
            self._reject(msg_id, routing_key, f"undecodable payload: {e}", None)
            return
        cid = payload.get("correlationId") if isinstance(payload, dict) else None
        try:
            self.handler(payload)
        except Exception as e:
            self._reject(msg_id, routing_key, e, cid)
            return
        self._ack(msg_id)
        self.acked += 1
        record_consume_success(cid)

    def _ack(self, msg_id: str):
        try:
            self.broker.client().xack(self.broker.exchange, self.group, msg_id)
        except redis.exceptions.RedisError as e:
            self._recovering = True
            raise BrokerUnavailable(f"ack failed: {e!r}") from e

    def _reject(self, msg_id: str, routing_key: str, error, correlation_id: Optional[str]):
        # no requeue: drop the entry from the pending list
        self._ack(msg_id)
        self.rejected += 1
        record_consume_failure(error, correlation_id)
        logger.warning(f"message rejected: {error}", extra={"extra": {
            "event": "message_rejected", "msg_id": msg_id, "routing_key": routing_key,
            "group": self.group, "correlation_id": correlation_id,
        }})
