"""
Subscription Service - recurring billing mirrored from the payment gateway.

The gateway owns subscription state. Every mutation is sent to the gateway
first and the returned object is copied onto the local row, so the local
table is a cache that ``sync_with_gateway`` can always rebuild.
"""

import logging
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import Count, DecimalField, F, Q, Sum
from django.utils import timezone

from ..calculators import ZERO, Proration, from_minor_units, money, prorate
from ..exceptions import GatewayFailure, InvalidState, ValidationFailure
from ..gateways.stripe import subscription_item
from ..models import BillingActivity, Subscription
from ..numbering import DocumentNumberAllocator
from ..repositories import ModelRepository
from ..types import CreateSubscriptionRequest, Page, SubscriptionFilters
from .common import log_activity, resolve_actor

logger = logging.getLogger(__name__)

GATEWAY_STATUS_MAP = {
    "active": Subscription.Status.ACTIVE,
    "canceled": Subscription.Status.CANCELLED,
    "incomplete": Subscription.Status.INACTIVE,
    "incomplete_expired": Subscription.Status.INACTIVE,
    "past_due": Subscription.Status.PAST_DUE,
    "trialing": Subscription.Status.TRIALING,
}

INTERVAL_MAP = {
    "day": Subscription.Interval.DAILY,
    "week": Subscription.Interval.WEEKLY,
    "month": Subscription.Interval.MONTHLY,
    "year": Subscription.Interval.YEARLY,
}

# Monthly-equivalent multipliers used for recurring revenue figures.
MONTHLY_FACTOR = {
    Subscription.Interval.DAILY: 30,
    Subscription.Interval.WEEKLY: 52 / 12,
    Subscription.Interval.MONTHLY: 1,
    Subscription.Interval.YEARLY: 1 / 12,
}


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)


def map_subscription_status(remote: Dict[str, Any]) -> str:
    if remote.get("pause_collection") and remote.get("status") in ("active", "trialing"):
        return Subscription.Status.PAUSED
    return GATEWAY_STATUS_MAP.get(remote.get("status") or "", Subscription.Status.INACTIVE)


def mirror_fields(remote: Dict[str, Any]) -> Dict[str, Any]:
    """Local field values for a gateway subscription object."""
    item = subscription_item(remote)
    price = item.get("price") or {}
    recurring = price.get("recurring") or {}
    pause = remote.get("pause_collection") or {}

    fields = {
        "status": map_subscription_status(remote),
        "gateway_customer_id": remote.get("customer") or "",
        # Newer API versions report the period on the subscription item.
        "current_period_start": from_timestamp(remote.get("current_period_start") or item.get("current_period_start")),
        "current_period_end": from_timestamp(remote.get("current_period_end") or item.get("current_period_end")),
        "trial_start": from_timestamp(remote.get("trial_start")),
        "trial_end": from_timestamp(remote.get("trial_end")),
        "cancelled_at": from_timestamp(remote.get("canceled_at")),
        "cancel_at": from_timestamp(remote.get("cancel_at")),
        "ended_at": from_timestamp(remote.get("ended_at")),
        "resume_at": from_timestamp(pause.get("resumes_at")),
        "quantity": item.get("quantity") or remote.get("quantity") or 1,
    }
    if price:
        fields["plan_id"] = price.get("id", "")
        fields["amount"] = from_minor_units(price.get("unit_amount"))
        fields["currency"] = (price.get("currency") or "usd").upper()
        fields["billing_interval"] = INTERVAL_MAP.get(recurring.get("interval"), Subscription.Interval.MONTHLY)
    return fields


class SubscriptionService:
    def __init__(self, repository: Optional[ModelRepository] = None,
                 numbering: Optional[DocumentNumberAllocator] = None, gateway=None):
        self.subscriptions = repository or ModelRepository(Subscription, lookup_field="subscription_id")
        self.numbering = numbering or DocumentNumberAllocator()
        self.gateway = gateway

    def _log(self, subscription: Subscription, actor, action: str, description: str = "", **metadata):
        log_activity(BillingActivity.DocumentType.SUBSCRIPTION, subscription, actor, action, description, metadata)

    def _mirror(self, subscription: Subscription, remote: Dict[str, Any], actor=None) -> Subscription:
        for name, value in mirror_fields(remote).items():
            if name == "plan_id" and not value:
                continue
            setattr(subscription, name, value)
        if subscription.status == Subscription.Status.PAUSED and not subscription.paused_at:
            subscription.paused_at = timezone.now()
        elif subscription.status != Subscription.Status.PAUSED:
            subscription.paused_at = None
        actor = resolve_actor(actor)
        if actor:
            subscription.updated_by = actor
        return self.subscriptions.save(subscription)

    # ------------------------------------------------------------------

    @transaction.atomic
    def create_subscription(self, request: CreateSubscriptionRequest, actor=None) -> Subscription:
        errors = {}
        if not request.customer_id:
            errors["customer_id"] = ["Customer is required"]
        if not request.gateway_customer_id:
            errors["gateway_customer_id"] = ["Gateway customer is required"]
        if not request.plan_id:
            errors["plan_id"] = ["Plan is required"]
        if request.quantity < 1:
            errors["quantity"] = ["Quantity must be at least 1"]
        if request.trial_days < 0:
            errors["trial_days"] = ["Trial days cannot be negative"]
        if errors:
            raise ValidationFailure(errors)

        subscription_id = self.numbering.subscription_id()
        remote = self.gateway.create_subscription(
            request.gateway_customer_id,
            request.plan_id,
            quantity=request.quantity,
            trial_days=request.trial_days,
            payment_method=request.payment_method_id,
            metadata={**request.metadata, "subscription_id": subscription_id, "customer_id": request.customer_id},
        )

        actor = resolve_actor(actor)
        subscription = Subscription(
            subscription_id=subscription_id,
            customer_id=request.customer_id,
            company_id=request.company_id,
            plan_id=request.plan_id,
            gateway_subscription_id=remote["id"],
            metadata=dict(request.metadata),
            created_by=actor,
        )
        self._mirror(subscription, remote, actor)
        self._log(subscription, actor, "created", f"Subscription to {subscription.plan_id} created")
        logger.info(f"Subscription {subscription.subscription_id} created ({remote['id']}, {subscription.status})")
        return subscription

    def get_subscription(self, identifier) -> Subscription:
        return self.subscriptions.get(identifier)

    def get_subscription_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        return self.subscriptions.find_one({"gateway_subscription_id": gateway_subscription_id})

    def get_customer_subscriptions(self, customer_id: str) -> List[Subscription]:
        return self.subscriptions.find({"customer_id": customer_id}, ordering=["-created_at"])

    def list_subscriptions(self, filters: Optional[SubscriptionFilters] = None) -> Page[Subscription]:
        filters = filters or SubscriptionFilters()
        lookups = filters.to_lookups()
        items = self.subscriptions.find(lookups, ordering=[filters.ordering], offset=filters.offset, limit=filters.page_size)
        return Page(items=items, total=self.subscriptions.count(lookups), page=filters.page, page_size=filters.page_size)

    @transaction.atomic
    def update_subscription(self, identifier, plan_id: Optional[str] = None, quantity: Optional[int] = None,
                            metadata: Optional[Dict[str, Any]] = None, actor=None) -> Subscription:
        subscription = self.get_subscription(identifier)
        if subscription.status == Subscription.Status.CANCELLED:
            raise InvalidState("Cannot update a cancelled subscription")
        if quantity is not None and quantity < 1:
            raise ValidationFailure({"quantity": ["Quantity must be at least 1"]})

        changes: Dict[str, Any] = {}
        if plan_id:
            changes["price_id"] = plan_id
        if quantity:
            changes["quantity"] = quantity
        if metadata:
            subscription.metadata = {**subscription.metadata, **metadata}
            changes["metadata"] = metadata
        if not changes:
            return subscription

        remote = self.gateway.update_subscription(subscription.gateway_subscription_id, **changes)
        self._mirror(subscription, remote, actor)
        self._log(subscription, actor, "updated", "Subscription updated", plan_id=plan_id, quantity=quantity)
        logger.info(f"Subscription {subscription.subscription_id} updated")
        return subscription

    @transaction.atomic
    def cancel_subscription(self, identifier, immediately: bool = False, reason: Optional[str] = None,
                            actor=None) -> Subscription:
        subscription = self.get_subscription(identifier)
        if subscription.status == Subscription.Status.CANCELLED:
            raise InvalidState("Subscription is already cancelled")

        remote = self.gateway.cancel_subscription(subscription.gateway_subscription_id, immediately=immediately)
        if reason:
            subscription.metadata = {**subscription.metadata, "cancellation_reason": reason}
        self._mirror(subscription, remote, actor)
        if not subscription.cancelled_at:
            subscription.cancelled_at = timezone.now()
        if immediately:
            subscription.status = Subscription.Status.CANCELLED
            subscription.ended_at = subscription.ended_at or timezone.now()
        self.subscriptions.save(subscription)
        self._log(subscription, actor, "cancelled", reason or "Subscription cancelled", immediately=immediately)
        logger.info(f"Subscription {subscription.subscription_id} cancelled (immediately={immediately})")
        return subscription

    @transaction.atomic
    def pause_subscription(self, identifier, resume_at: Optional[datetime] = None, actor=None) -> Subscription:
        subscription = self.get_subscription(identifier)
        if subscription.status not in (Subscription.Status.ACTIVE, Subscription.Status.TRIALING):
            raise InvalidState(f"Cannot pause subscription in status '{subscription.status}'")

        pause: Dict[str, Any] = {"behavior": "void"}
        if resume_at:
            pause["resumes_at"] = int(resume_at.timestamp())
        remote = self.gateway.update_subscription(subscription.gateway_subscription_id, pause_collection=pause)
        self._mirror(subscription, remote, actor)
        # Older API versions echo pause_collection without changing status.
        subscription.status = Subscription.Status.PAUSED
        subscription.paused_at = subscription.paused_at or timezone.now()
        subscription.resume_at = resume_at or subscription.resume_at
        self.subscriptions.save(subscription)
        self._log(subscription, actor, "paused", "Subscription paused")
        logger.info(f"Subscription {subscription.subscription_id} paused")
        return subscription

    @transaction.atomic
    def resume_subscription(self, identifier, actor=None) -> Subscription:
        subscription = self.get_subscription(identifier)
        if subscription.status != Subscription.Status.PAUSED:
            raise InvalidState("Only paused subscriptions can be resumed")

        remote = self.gateway.update_subscription(subscription.gateway_subscription_id, pause_collection="")
        self._mirror(subscription, remote, actor)
        subscription.paused_at = None
        subscription.resume_at = None
        self.subscriptions.save(subscription)
        self._log(subscription, actor, "resumed", "Subscription resumed")
        logger.info(f"Subscription {subscription.subscription_id} resumed ({subscription.status})")
        return subscription

    @transaction.atomic
    def sync_with_gateway(self, identifier) -> Subscription:
        subscription = self.get_subscription(identifier)
        remote = self.gateway.retrieve_subscription(subscription.gateway_subscription_id)
        previous = subscription.status
        self._mirror(subscription, remote)
        if previous != subscription.status:
            self._log(subscription, None, "synced", f"{previous} -> {subscription.status}")
        return subscription

    def mirror_remote(self, remote: Dict[str, Any]) -> Optional[Subscription]:
        """Copy a gateway subscription object (e.g. from a webhook) onto its local row."""
        subscription = self.get_subscription_by_gateway_id(remote.get("id", ""))
        if subscription is None:
            logger.warning(f"No local subscription for gateway subscription {remote.get('id')}")
            return None
        with transaction.atomic():
            previous = subscription.status
            self._mirror(subscription, remote)
            if previous != subscription.status:
                self._log(subscription, None, "synced", f"{previous} -> {subscription.status}")
        return subscription

    def sync_all(self) -> Dict[str, int]:
        results = {"synced": 0, "failed": 0}
        for subscription in self.subscriptions.iterate(~Q(status=Subscription.Status.CANCELLED)):
            try:
                self.sync_with_gateway(subscription.pk)
                results["synced"] += 1
            except GatewayFailure as exc:
                logger.error(f"Failed to sync subscription {subscription.subscription_id}: {exc.message}")
                results["failed"] += 1
        logger.info(f"Subscription sync complete: {results['synced']} synced, {results['failed']} failed")
        return results

    def calculate_proration(self, identifier, new_plan_id: str, change_date: Optional[datetime] = None) -> Proration:
        subscription = self.get_subscription(identifier)
        if not subscription.current_period_start or not subscription.current_period_end:
            raise InvalidState("Subscription has no current billing period")

        price = self.gateway.retrieve_price(new_plan_id)
        new_amount = from_minor_units(price.get("unit_amount")) * subscription.quantity
        return prorate(
            subscription.amount * subscription.quantity,
            new_amount,
            subscription.current_period_start,
            subscription.current_period_end,
            change_date or timezone.now(),
        )

    def get_expiring_subscriptions(self, days: int = 7) -> List[Subscription]:
        """Subscriptions scheduled to end (cancel at period end or trial end) within ``days``."""
        now = timezone.now()
        horizon = now + timedelta(days=days)
        query = Q(cancel_at__gte=now, cancel_at__lte=horizon) | Q(
            status=Subscription.Status.TRIALING, trial_end__gte=now, trial_end__lte=horizon
        )
        return self.subscriptions.find(query & ~Q(status=Subscription.Status.CANCELLED), ordering=["current_period_end"])

    def get_subscription_metrics(self) -> Dict[str, Any]:
        rows = self.subscriptions.aggregate(group_by=["status"], count=Count("id"))
        by_status = {row["status"]: row["count"] for row in rows}

        mrr = ZERO
        billing = self.subscriptions.aggregate(
            {"status": Subscription.Status.ACTIVE},
            group_by=["billing_interval"],
            revenue=Sum(F("amount") * F("quantity"), output_field=DecimalField(max_digits=15, decimal_places=2)),
        )
        for row in billing:
            factor = Decimal(str(MONTHLY_FACTOR.get(row["billing_interval"], 1)))
            mrr += (row["revenue"] or ZERO) * factor

        total = sum(by_status.values())
        cancelled = by_status.get(Subscription.Status.CANCELLED, 0)
        return {
            "total_subscriptions": total,
            "active_subscriptions": by_status.get(Subscription.Status.ACTIVE, 0),
            "trialing_subscriptions": by_status.get(Subscription.Status.TRIALING, 0),
            "by_status": by_status,
            "monthly_recurring_revenue": money(mrr),
            "churn_rate": round(cancelled / total * 100, 2) if total else 0.0,
        }
