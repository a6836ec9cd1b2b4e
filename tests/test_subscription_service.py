from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from decimal import Decimal

import pytest
from django.utils import timezone

from billing.exceptions import GatewayFailure, InvalidState, ValidationFailure
from billing.models import Subscription
from billing.services.subscription_service import map_subscription_status, mirror_fields
from billing.types import CreateSubscriptionRequest
from tests.conftest import remote_subscription
from tests.factories import SubscriptionFactory


def subscription_request(**overrides):
    data = {"customer_id": "cust-1", "gateway_customer_id": "cus_123", "plan_id": "price_basic"}
    data.update(overrides)
    return CreateSubscriptionRequest(**data)


@pytest.fixture
def subscription(services):
    return services.subscriptions.create_subscription(subscription_request())


class TestMirrorFields:
    def test_maps_price_and_period(self):
        fields = mirror_fields(remote_subscription(unit_amount=4999, interval="year", quantity=3))

        assert fields["status"] == Subscription.Status.ACTIVE
        assert fields["plan_id"] == "price_basic"
        assert fields["amount"] == Decimal("49.99")
        assert fields["currency"] == "USD"
        assert fields["billing_interval"] == Subscription.Interval.YEARLY
        assert fields["quantity"] == 3
        assert fields["current_period_start"] == datetime(2026, 1, 1, tzinfo=dt_timezone.utc)

    def test_period_read_from_item_when_missing_on_subscription(self):
        remote = remote_subscription(current_period_start=None, current_period_end=None)
        remote["items"]["data"][0]["current_period_start"] = 1767225600
        remote["items"]["data"][0]["current_period_end"] = 1769904000

        fields = mirror_fields(remote)
        assert fields["current_period_end"] == datetime(2026, 2, 1, tzinfo=dt_timezone.utc)

    @pytest.mark.parametrize("remote_status,expected", [
        ("active", Subscription.Status.ACTIVE),
        ("trialing", Subscription.Status.TRIALING),
        ("past_due", Subscription.Status.PAST_DUE),
        ("canceled", Subscription.Status.CANCELLED),
        ("incomplete", Subscription.Status.INACTIVE),
        ("unpaid", Subscription.Status.INACTIVE),
    ])
    def test_status_mapping(self, remote_status, expected):
        assert map_subscription_status({"status": remote_status}) == expected

    def test_pause_collection_means_paused(self):
        remote = {"status": "active", "pause_collection": {"behavior": "void"}}
        assert map_subscription_status(remote) == Subscription.Status.PAUSED


@pytest.mark.django_db
class TestCreateSubscription:
    def test_create_mirrors_gateway_state(self, subscription, gateway):
        assert subscription.subscription_id.startswith("SUB-")
        assert subscription.gateway_subscription_id.startswith("sub_")
        assert subscription.status == Subscription.Status.ACTIVE
        assert subscription.amount == Decimal("20.00")
        assert subscription.gateway_customer_id == "cus_123"

        _, args, kwargs = gateway.calls_to("create_subscription")[0]
        assert args == ("cus_123", "price_basic")
        assert kwargs["metadata"]["subscription_id"] == subscription.subscription_id

    def test_trial(self, services):
        subscription = services.subscriptions.create_subscription(subscription_request(trial_days=14))
        assert subscription.status == Subscription.Status.TRIALING

    def test_validation(self, services):
        with pytest.raises(ValidationFailure) as exc:
            services.subscriptions.create_subscription(subscription_request(plan_id="", quantity=0))
        assert set(exc.value.errors) == {"plan_id", "quantity"}

    def test_gateway_failure_creates_nothing(self, services, gateway):
        gateway.fail_with = GatewayFailure("No such customer: cus_123", code="resource_missing", status_code=400)
        with pytest.raises(GatewayFailure):
            services.subscriptions.create_subscription(subscription_request())
        assert Subscription.objects.count() == 0


@pytest.mark.django_db
class TestSubscriptionChanges:
    def test_change_plan_and_quantity(self, services, subscription):
        updated = services.subscriptions.update_subscription(subscription.pk, plan_id="price_pro", quantity=2)

        assert updated.plan_id == "price_pro"
        assert updated.amount == Decimal("50.00")
        assert updated.quantity == 2

    def test_no_changes_skips_gateway(self, services, gateway, subscription):
        services.subscriptions.update_subscription(subscription.pk)
        assert gateway.calls_to("update_subscription") == []

    def test_cancel_at_period_end(self, services, subscription):
        cancelled = services.subscriptions.cancel_subscription(subscription.pk, reason="Budget cuts")

        assert cancelled.status == Subscription.Status.ACTIVE
        assert cancelled.cancel_at is not None
        assert cancelled.cancelled_at is not None
        assert cancelled.metadata["cancellation_reason"] == "Budget cuts"

    def test_cancel_immediately(self, services, subscription):
        cancelled = services.subscriptions.cancel_subscription(subscription.pk, immediately=True)

        assert cancelled.status == Subscription.Status.CANCELLED
        assert cancelled.ended_at is not None

    def test_cannot_cancel_twice(self, services, subscription):
        services.subscriptions.cancel_subscription(subscription.pk, immediately=True)
        with pytest.raises(InvalidState):
            services.subscriptions.cancel_subscription(subscription.pk)

    def test_cancelled_subscription_cannot_be_updated(self, services, subscription):
        services.subscriptions.cancel_subscription(subscription.pk, immediately=True)
        with pytest.raises(InvalidState):
            services.subscriptions.update_subscription(subscription.pk, quantity=3)

    def test_pause_and_resume(self, services, gateway, subscription):
        resume_at = timezone.now() + timedelta(days=30)
        paused = services.subscriptions.pause_subscription(subscription.pk, resume_at=resume_at)

        assert paused.status == Subscription.Status.PAUSED
        assert paused.paused_at is not None
        pause = gateway.calls_to("update_subscription")[0][2]["pause_collection"]
        assert pause == {"behavior": "void", "resumes_at": int(resume_at.timestamp())}

        resumed = services.subscriptions.resume_subscription(subscription.pk)
        assert resumed.status == Subscription.Status.ACTIVE
        assert resumed.paused_at is None
        assert resumed.resume_at is None

    def test_only_paused_subscriptions_resume(self, services, subscription):
        with pytest.raises(InvalidState):
            services.subscriptions.resume_subscription(subscription.pk)

    def test_cancelled_subscription_cannot_pause(self, services, subscription):
        services.subscriptions.cancel_subscription(subscription.pk, immediately=True)
        with pytest.raises(InvalidState):
            services.subscriptions.pause_subscription(subscription.pk)


@pytest.mark.django_db
class TestGatewaySync:
    def test_sync_picks_up_remote_status(self, services, gateway, subscription):
        gateway.subscriptions[subscription.gateway_subscription_id]["status"] = "past_due"

        synced = services.subscriptions.sync_with_gateway(subscription.subscription_id)
        assert synced.status == Subscription.Status.PAST_DUE

    def test_mirror_remote_unknown_subscription(self, services):
        assert services.subscriptions.mirror_remote(remote_subscription(subscription_id="sub_unknown")) is None

    def test_sync_all_counts_failures(self, services, gateway, subscription):
        SubscriptionFactory(status=Subscription.Status.CANCELLED)
        results = services.subscriptions.sync_all()
        assert results == {"synced": 1, "failed": 0}

        gateway.fail_with = GatewayFailure("Stripe is down")
        assert services.subscriptions.sync_all() == {"synced": 0, "failed": 1}


@pytest.mark.django_db
class TestSubscriptionReporting:
    def test_proration_for_upgrade(self, services, subscription):
        change = subscription.current_period_start + (subscription.current_period_end - subscription.current_period_start) / 2
        proration = services.subscriptions.calculate_proration(subscription.pk, "price_pro", change_date=change)

        assert proration.current_amount == Decimal("20.00")
        assert proration.new_amount == Decimal("50.00")
        assert proration.prorated_amount > 0

    def test_proration_requires_period(self, services):
        subscription = SubscriptionFactory()
        with pytest.raises(InvalidState):
            services.subscriptions.calculate_proration(subscription.pk, "price_pro")

    def test_expiring_subscriptions(self, services):
        now = timezone.now()
        ending = SubscriptionFactory(cancel_at=now + timedelta(days=3))
        trial = SubscriptionFactory(status=Subscription.Status.TRIALING, trial_end=now + timedelta(days=5))
        SubscriptionFactory(cancel_at=now + timedelta(days=30))

        expiring = services.subscriptions.get_expiring_subscriptions(days=7)
        assert set(expiring) == {ending, trial}

    def test_metrics(self, services):
        SubscriptionFactory(amount=Decimal("20"), quantity=2)
        SubscriptionFactory(amount=Decimal("120"), billing_interval=Subscription.Interval.YEARLY)
        SubscriptionFactory(status=Subscription.Status.CANCELLED)
        SubscriptionFactory(status=Subscription.Status.TRIALING)

        metrics = services.subscriptions.get_subscription_metrics()

        assert metrics["total_subscriptions"] == 4
        assert metrics["active_subscriptions"] == 2
        assert metrics["trialing_subscriptions"] == 1
        assert metrics["monthly_recurring_revenue"] == Decimal("50.00")
        assert metrics["churn_rate"] == 25.0

    def test_customer_subscriptions(self, services, subscription):
        SubscriptionFactory(customer_id="someone-else")
        assert services.subscriptions.get_customer_subscriptions("cust-1") == [subscription]
