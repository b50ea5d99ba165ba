"""
notification-worker: drains ``notifications.created`` and delivers each event.

Runs as its own process (``notifyhub-worker`` or
``python -m notifyhub.notifications.worker``) until SIGINT/SIGTERM.
A dropped event (undecodable, or the delivery raised) is an accepted loss:
it is rejected without requeue and logged, never retried here.
"""
import logging
import signal
import sys
import threading
from typing import Any, Callable, Dict, Optional

from notifyhub import config
from notifyhub.errors import BrokerUnavailable
from notifyhub.notifications.broker import BrokerClient, Subscription
from notifyhub.notifications.models import NotificationCreatedEvent
from notifyhub.observability import init_logging, correlation_scope

logger = logging.getLogger("notification-worker")

Deliver = Callable[[NotificationCreatedEvent], None]


def log_delivery(event: NotificationCreatedEvent) -> None:
    # Stand-in for email/SMS/push delivery
    logger.info("notification_delivered", extra={"extra": {
        "event": "notification_delivered", "notification_id": event.id,
        "recipient_id": event.recipient_id, "subject": event.subject,
    }})


def make_handler(deliver: Deliver = log_delivery) -> Callable[[Dict[str, Any]], None]:
    def handle(payload: Dict[str, Any]) -> None:
        # a ValidationError here rejects the message
        event = NotificationCreatedEvent.model_validate(payload)
        with correlation_scope(event.correlation_id):
            deliver(event)
    return handle


def start(
    broker: BrokerClient,
    deliver: Deliver = log_delivery,
    group: Optional[str] = config.NOTIF_WORKER_GROUP,
    consumer: Optional[str] = config.NOTIF_WORKER_CONSUMER,
) -> Subscription:
    # replicas sharing ``group`` split the events between them
    return broker.subscribe(config.ROUTING_KEY_CREATED, make_handler(deliver), group=group, consumer=consumer)


def run(broker: BrokerClient, stop: threading.Event, deliver: Deliver = log_delivery) -> Subscription:
    sub = start(broker, deliver)
    logger.info(f"waiting for {config.ROUTING_KEY_CREATED} events", extra={"extra": {
        "event": "worker_started", "exchange": broker.exchange, "group": sub.group,
    }})
    sub.run(stop)
    return sub


def main() -> int:
    init_logging("notification-worker", config.LOG_LEVEL)
    stop = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    with BrokerClient() as broker:
        try:
            run(broker, stop)
        except BrokerUnavailable as e:
            logger.error(f"notification-worker failed to start: {e}", exc_info=True)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
