import logging
from typing import Any, Callable, Dict

from django.db import IntegrityError, transaction

from ..models import Payment, ProcessedWebhook
from ..repositories import ModelRepository

logger = logging.getLogger(__name__)


class WebhookService:
    """Apply verified gateway events to local payments and subscriptions.

    Events are recorded in ProcessedWebhook once handled, so a redelivered
    event is acknowledged without being applied twice.
    """

    def __init__(self, payment_service, subscription_service, events: ModelRepository = None,
                 payment_methods=None):
        self.events = events or ModelRepository(ProcessedWebhook, lookup_field="event_id")
        self.payment_service = payment_service
        self.subscription_service = subscription_service
        self.payment_methods = payment_methods
        self.handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "payment_intent.succeeded": self._payment_succeeded,
            "payment_intent.payment_failed": self._payment_failed,
            "payment_intent.canceled": self._payment_canceled,
            "payment_intent.processing": self._payment_processing,
            "customer.subscription.created": self._subscription_changed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_changed,
            "payment_method.attached": self._payment_method_changed,
            "payment_method.updated": self._payment_method_changed,
            "payment_method.automatically_updated": self._payment_method_changed,
            "payment_method.detached": self._payment_method_detached,
        }

    def handle_event(self, event: Dict[str, Any]) -> bool:
        """Returns False when the event was already processed or has no handler."""
        event_id = event.get("id", "")
        event_type = event.get("type", "")

        if self.events.exists({"event_id": event_id}):
            logger.info(f"Webhook {event_id} already processed, skipping")
            return False

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.debug(f"Ignoring unhandled webhook event {event_type}")
            return False

        obj = (event.get("data") or {}).get("object") or {}
        try:
            with transaction.atomic():
                self.events.insert(event_id=event_id, event_type=event_type)
                handler(obj)
        except IntegrityError:
            logger.info(f"Webhook {event_id} processed concurrently, skipping")
            return False

        logger.info(f"Processed webhook {event_type} ({event_id})")
        return True

    def _payment_for(self, intent: Dict[str, Any]):
        payment = self.payment_service.get_payment_by_intent(intent.get("id", ""))
        if payment is None:
            logger.warning(f"No local payment for payment intent {intent.get('id')}")
        return payment

    def _set_payment_status(self, intent: Dict[str, Any], status: str, **metadata):
        payment = self._payment_for(intent)
        if payment is None or payment.status == status:
            return
        self.payment_service.update_payment_status(payment.pk, status, metadata or None)

    def _payment_succeeded(self, intent: Dict[str, Any]):
        self._set_payment_status(intent, Payment.Status.COMPLETED)

    def _payment_failed(self, intent: Dict[str, Any]):
        error = intent.get("last_payment_error") or {}
        self._set_payment_status(intent, Payment.Status.FAILED,
                                 failure_reason=error.get("message") or "Payment failed")

    def _payment_canceled(self, intent: Dict[str, Any]):
        self._set_payment_status(intent, Payment.Status.CANCELLED)

    def _payment_processing(self, intent: Dict[str, Any]):
        self._set_payment_status(intent, Payment.Status.PROCESSING)

    def _subscription_changed(self, subscription: Dict[str, Any]):
        self.subscription_service.mirror_remote(subscription)

    def _payment_method_changed(self, method: Dict[str, Any]):
        if self.payment_methods is not None:
            self.payment_methods.mirror_remote(method)

    def _payment_method_detached(self, method: Dict[str, Any]):
        if self.payment_methods is not None and self.payment_methods.forget_remote(method):
            logger.info(f"Payment method {method.get('id')} detached at the gateway")
