import logging
from typing import Any, Optional, Tuple

import httpx

from notifyhub import config
from notifyhub.errors import UpstreamUnavailable
from notifyhub.observability import CORRELATION_HEADER
from notifyhub.resilience import BestEffort

logger = logging.getLogger(__name__)


class NotificationServiceClient:
    """The registry's side of the notification-service HTTP contract."""

    def __init__(self, http: httpx.Client, base_url: Optional[str] = None):
        self.http = http
        self.url = f"{(base_url or config.NOTIFICATION_SERVICE_URL).rstrip('/')}/notifications"

    def send_welcome(self, user_id: int, name: str, correlation_id: Optional[str] = None) -> BestEffort:
        """Fire-and-forget: failures are logged and reported, never raised."""
        body = {"subject": f"Welcome, {name}!", "message": "Thanks for joining.", "recipientId": user_id}
        headers = {CORRELATION_HEADER: correlation_id} if correlation_id else {}
        try:
            resp = self.http.post(self.url, json=body, headers=headers, timeout=config.WELCOME_TIMEOUT_S)
        except httpx.HTTPError as e:
            outcome = BestEffort.failed(repr(e))
        else:
            if resp.is_success:
                data = _json_or_text(resp)
                outcome = BestEffort.ok(str(data.get("id")) if isinstance(data, dict) else None)
            else:
                outcome = BestEffort.failed(f"status={resp.status_code}")
        if outcome.delivered:
            logger.info("welcome_notification_sent", extra={"extra": {
                "event": "welcome_notification_sent", "target_user_id": user_id, "notification_id": outcome.ref,
            }})
        else:
            logger.warning("welcome_notification_failed", extra={"extra": {
                "event": "welcome_notification_failed", "target_user_id": user_id, "error": outcome.error,
            }})
        return outcome

    def notify(self, user_id: int, subject: str, message: str, correlation_id: str) -> Tuple[int, Any]:
        """Synchronous create on behalf of a known user; status and body are returned untouched."""
        headers = {CORRELATION_HEADER: correlation_id, "x-origin": config.SELF_ORIGIN}
        body = {"subject": subject, "message": message, "recipientId": user_id}
        try:
            resp = self.http.post(self.url, json=body, headers=headers, timeout=config.NOTIFY_TIMEOUT_S)
        except httpx.HTTPError as e:
            logger.error(f"notify error: {e!r}", extra={"extra": {"event": "notify_failed", "target_user_id": user_id}})
            raise UpstreamUnavailable("notification-service unavailable") from e
        return resp.status_code, _json_or_text(resp)


def _json_or_text(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {"message": resp.text}
