"""
Dispatchers hand notifications to the external alert router.

Delivery is at-least-once: a notification may be posted again after a
failure or on a repeat interval. Alertmanager deduplicates alerts by their
label-set, so re-posting is harmless there.
"""

import json
import logging
from typing import Optional

import requests

from src.alerting.router import DispatchError, Notification, isoformat
from src.utils.correlation import get_correlation_id

logger = logging.getLogger(__name__)


class LoggingDispatcher:
    """Writes notifications to the log; used when no router is configured."""

    def send(self, notification: Notification) -> None:
        logger.warning(
            f"ALERT {notification.status.upper()} {notification.group_key}: "
            f"{json.dumps(notification.to_dict(), sort_keys=True)}"
        )


class _HttpDispatcher:
    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, url: str, payload) -> None:
        headers = {"Content-Type": "application/json"}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id

        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise DispatchError(f"POST {url} failed: {e}")

        if not 200 <= response.status_code < 300:
            raise DispatchError(f"POST {url} returned HTTP {response.status_code}: {response.text[:200]}")

    def close(self) -> None:
        self.session.close()


class AlertmanagerDispatcher(_HttpDispatcher):
    """Posts alerts to the Alertmanager v2 API."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
        generator_url: Optional[str] = None,
    ):
        super().__init__(url, timeout, session)
        self.generator_url = generator_url

    def payload(self, notification: Notification):
        alerts = []
        for event in notification.events:
            alert = {
                "labels": dict(event.labels),
                "annotations": dict(event.annotations),
                "startsAt": isoformat(event.starts_at),
            }
            if event.ends_at is not None:
                alert["endsAt"] = isoformat(event.ends_at)
            if self.generator_url:
                alert["generatorURL"] = self.generator_url
            alerts.append(alert)
        return alerts

    def send(self, notification: Notification) -> None:
        self._post(f"{self.url}/api/v2/alerts", self.payload(notification))
        logger.debug(f"Posted {len(notification.events)} alerts to Alertmanager")


class WebhookDispatcher(_HttpDispatcher):
    """Posts the structured notification JSON to a generic webhook."""

    def send(self, notification: Notification) -> None:
        self._post(self.url, notification.to_dict())
        logger.debug(f"Posted notification {notification.group_key} to webhook")
