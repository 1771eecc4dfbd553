import logging
import threading
from typing import Literal, Protocol, TypedDict

import requests

from backend.config import NOTIFY_TIMEOUT_SECONDS, NOTIFY_WEBHOOK_URL


logger = logging.getLogger(__name__)

ChainEventType = Literal["SEEDED", "TRANSFERRED", "REFRESHED", "HOLDER_SET", "STALLED", "CLOSED"]


class ChainEvent(TypedDict):
    sessionId: str
    chainId: str
    newHolderId: str | None
    rotationCount: int
    eventType: ChainEventType


class Notifier(Protocol):
    def publish(self, event: ChainEvent) -> None: ...


class LogNotifier:
    """Default sink when no push transport is configured."""

    def publish(self, event: ChainEvent) -> None:
        logger.info(
            "chain event %s chain=%s holder=%s rotation=%s",
            event["eventType"],
            event["chainId"],
            event["newHolderId"],
            event["rotationCount"],
        )


class WebhookNotifier:
    """
    POST each event as JSON to a push relay. Delivery runs on a daemon thread
    so a slow relay never holds up the scan request.
    """

    def __init__(self, url: str, *, timeout: float = NOTIFY_TIMEOUT_SECONDS):
        self.url = url
        self.timeout = timeout

    def publish(self, event: ChainEvent) -> None:
        thread = threading.Thread(target=self._deliver, args=(dict(event),), daemon=True)
        thread.start()

    def _deliver(self, payload: dict) -> None:
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout)
            if response.status_code >= 400:
                logger.warning(
                    "Push relay rejected %s for chain %s: HTTP %s",
                    payload.get("eventType"),
                    payload.get("chainId"),
                    response.status_code,
                )
        except requests.RequestException as exc:
            logger.warning("Push relay unreachable for chain %s: %s", payload.get("chainId"), exc)


def build_notifier() -> Notifier:
    if NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(NOTIFY_WEBHOOK_URL)
    return LogNotifier()


def notify_safely(notifier: Notifier | None, event: ChainEvent) -> None:
    """Publish without letting a sink failure reach the committed caller."""
    if notifier is None:
        return
    try:
        notifier.publish(event)
    except Exception:
        logger.exception("Notifier failed for chain %s (%s)", event["chainId"], event["eventType"])
