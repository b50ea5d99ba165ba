import logging
from enum import Enum
from typing import Optional

import httpx

from notifyhub import config
from notifyhub.observability import CORRELATION_HEADER

logger = logging.getLogger(__name__)


class RecipientStatus(str, Enum):
    EXISTS = "exists"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class RecipientValidator:
    """Asks the user registry whether a recipient id exists.

    The lookup is bounded by ``timeout``; a timeout or any transport error
    aborts only this call and is reported as ``UNAVAILABLE``.
    """

    def __init__(self, http: httpx.Client, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.http = http
        self.base_url = (base_url or config.USER_SERVICE_URL).rstrip("/")
        self.timeout = timeout or config.RECIPIENT_CHECK_TIMEOUT_S

    def validate(self, recipient_id: int, correlation_id: Optional[str] = None) -> RecipientStatus:
        headers = {CORRELATION_HEADER: correlation_id} if correlation_id else {}
        try:
            resp = self.http.get(f"{self.base_url}/users/{recipient_id}", headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning(f"recipient check failed: {e!r}", extra={"extra": {
                "event": "recipient_check_error", "recipient_id": recipient_id,
            }})
            return RecipientStatus.UNAVAILABLE

        if resp.status_code == 404:
            status = RecipientStatus.NOT_FOUND
        elif resp.is_success:
            status = RecipientStatus.EXISTS
        else:
            status = RecipientStatus.UNAVAILABLE
        logger.info("recipient_checked", extra={"extra": {
            "event": "recipient_checked", "recipient_id": recipient_id,
            "http.status_code": resp.status_code, "result": status.value,
        }})
        return status
