"""Webhook dispatch and HTTP delivery for Flux.

``WebhookDispatcher.trigger`` selects the webhooks subscribed to an event
and hands each one a payload through the registered handler. The handler
does the actual delivery; :class:`HttpDeliveryHandler` is the standard one.
It records a delivery, POSTs the signed JSON body and stores the outcome.
Failed deliveries are recorded and never retried.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from .errors import WebhookDeliveryError
from .flux_logging import log_error_with_context
from .models import WEBHOOK_EVENT_TYPES, Webhook, WebhookDelivery, WebhookPayload
from .store import FluxStore

logger = logging.getLogger("flux.webhooks")

TEST_EVENT = "test"
MAX_RESPONSE_BODY = 1000
SIGNATURE_HEADER = "X-Flux-Signature"
EVENT_HEADER = "X-Flux-Event"
DELIVERY_HEADER = "X-Flux-Delivery"

WebhookHandler = Callable[[str, WebhookPayload, Webhook], Any]


def sign_payload(secret: str, body: Union[str, bytes]) -> str:
    """HMAC-SHA256 hex digest of ``body`` keyed with ``secret``."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: Union[str, bytes], signature: str) -> bool:
    """Check a ``sha256=<hex>`` (or bare hex) signature in constant time."""
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(sign_payload(secret, body), signature)


class WebhookDispatcher:
    """Matches domain events to webhook subscriptions and invokes the handler."""

    def __init__(self, store: FluxStore, handler: Optional[WebhookHandler] = None):
        self.store = store
        self._handler = handler

    @property
    def handler(self) -> Optional[WebhookHandler]:
        return self._handler

    def set_handler(self, handler: Optional[WebhookHandler]) -> None:
        self._handler = handler

    @staticmethod
    def matches(webhook: Webhook, event: str, project_id: Optional[str] = None) -> bool:
        """True when the webhook is enabled, subscribed to ``event`` and in scope."""
        if not webhook.enabled or event not in webhook.events:
            return False
        if webhook.project_id and webhook.project_id != project_id:
            return False
        return True

    def matching_webhooks(self, event: str, project_id: Optional[str] = None) -> List[Webhook]:
        return [w for w in self.store.list_webhooks() if self.matches(w, event, project_id)]

    def build_payload(self, webhook: Webhook, event: str, data: Dict[str, Any]) -> WebhookPayload:
        return WebhookPayload(event=event, timestamp=self.store.now(), webhook_id=webhook.id, data=data)

    def trigger(self, event: str, data: Dict[str, Any], project_id: Optional[str] = None) -> int:
        """Dispatch ``event`` to every matching webhook.

        Returns the number of handler calls that completed. A handler failure
        is logged and does not stop dispatch to the remaining webhooks.
        """
        if self._handler is None:
            return 0
        if event not in WEBHOOK_EVENT_TYPES:
            logger.warning(f"Dispatching unrecognised event type '{event}'")

        delivered = 0
        for webhook in self.matching_webhooks(event, project_id):
            payload = self.build_payload(webhook, event, data)
            if self._invoke(event, payload, webhook):
                delivered += 1
        if delivered:
            logger.debug(f"Event {event} dispatched to {delivered} webhook(s)")
        return delivered

    def send_test(self, webhook_id: str) -> Optional[WebhookPayload]:
        """Send a test payload to one webhook regardless of its subscriptions."""
        with self.store.session():
            webhook = self.store.get_webhook(webhook_id)
        if webhook is None:
            return None
        payload = self.build_payload(
            webhook,
            TEST_EVENT,
            {"message": "Test delivery from Flux", "webhook": {"id": webhook.id, "name": webhook.name}},
        )
        if self._handler is None:
            logger.warning(f"No webhook handler registered; test for {webhook_id} not sent")
        else:
            self._invoke(TEST_EVENT, payload, webhook)
        return payload

    def _invoke(self, event: str, payload: WebhookPayload, webhook: Webhook) -> bool:
        try:
            self._handler(event, payload, webhook)
        except Exception as exc:
            log_error_with_context(
                exc,
                {"operation": "trigger_webhook", "event": event, "webhook_id": webhook.id},
            )
            return False
        return True


class HttpDeliveryHandler:
    """Deliver payloads with an HTTP POST and record the outcome on the store."""

    def __init__(self, store: FluxStore, *, client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.store = store
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)

    def __call__(self, event: str, payload: WebhookPayload, webhook: Webhook) -> WebhookDelivery:
        document = payload.to_dict()
        body = json.dumps(document, separators=(",", ":"), default=str).encode("utf-8")
        with self.store.session():
            if self.store.get_webhook(webhook.id) is None:
                raise WebhookDeliveryError(f"Webhook '{webhook.id}' no longer exists")
            delivery = self.store.create_webhook_delivery(webhook.id, event, document)

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Flux-Webhooks/1.0",
            EVENT_HEADER: event,
            DELIVERY_HEADER: delivery.id,
        }
        if webhook.secret:
            headers[SIGNATURE_HEADER] = f"sha256={sign_payload(webhook.secret, body)}"

        updates: Dict[str, Any] = {"attempts": delivery.attempts + 1}
        try:
            response = self.client.post(webhook.url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            updates.update(status="failed", error=str(exc) or type(exc).__name__, delivered_at=self.store.now())
            logger.warning(f"Webhook {webhook.id} delivery {delivery.id} failed: {exc}")
        else:
            updates["delivered_at"] = self.store.now()
            succeeded = response.is_success
            updates.update(
                status="success" if succeeded else "failed",
                response_code=response.status_code,
                response_body=response.text[:MAX_RESPONSE_BODY],
                error=None if succeeded else f"HTTP {response.status_code}",
            )
            logger.info(f"Webhook {webhook.id} delivery {delivery.id}: HTTP {response.status_code}")

        return self.store.update_webhook_delivery(delivery.id, updates) or delivery

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
