from decimal import Decimal

import pytest
from django.db.models import Count, Q, Sum

from billing.exceptions import NotFound
from billing.models import Invoice
from billing.repositories import ModelRepository
from tests.factories import InvoiceFactory


@pytest.fixture
def repository():
    return ModelRepository(Invoice, lookup_field="invoice_number")


@pytest.mark.django_db
class TestModelRepository:
    def test_get_by_primary_key_and_number(self, repository):
        invoice = InvoiceFactory(invoice_number="INV-2026-0042")

        assert repository.get(invoice.pk) == invoice
        assert repository.get(str(invoice.pk)) == invoice
        assert repository.get("INV-2026-0042") == invoice

    def test_get_missing_raises_not_found(self, repository):
        with pytest.raises(NotFound) as exc:
            repository.get("INV-1999-0001")
        assert "INV-1999-0001" in exc.value.message

    def test_find_by_id_empty_identifier(self, repository):
        assert repository.find_by_id(None) is None
        assert repository.find_by_id("") is None

    def test_find_with_mapping_and_q(self, repository):
        InvoiceFactory(status=Invoice.Status.SENT, customer_id="a")
        InvoiceFactory(status=Invoice.Status.PAID, customer_id="a")
        InvoiceFactory(status=Invoice.Status.SENT, customer_id="b")

        assert len(repository.find({"customer_id": "a"})) == 2
        assert len(repository.find(Q(status=Invoice.Status.SENT) & Q(customer_id="b"))) == 1

    def test_find_pagination(self, repository):
        for _ in range(5):
            InvoiceFactory()

        page = repository.find(ordering=["invoice_number"], offset=2, limit=2)
        everything = repository.find(ordering=["invoice_number"])
        assert page == everything[2:4]

    def test_insert_update_delete(self, repository):
        invoice = InvoiceFactory()

        updated = repository.update(invoice.pk, {"customer_name": "Umbrella"})
        assert updated.customer_name == "Umbrella"

        assert repository.delete(invoice.pk) is True
        assert repository.delete(invoice.pk) is False
        assert repository.count() == 0

    def test_count_and_exists(self, repository):
        InvoiceFactory(status=Invoice.Status.OVERDUE)

        assert repository.count({"status": Invoice.Status.OVERDUE}) == 1
        assert repository.exists({"status": Invoice.Status.PAID}) is False

    def test_aggregate_without_grouping(self, repository):
        InvoiceFactory(total_amount=Decimal("100.00"))
        InvoiceFactory(total_amount=Decimal("50.00"))

        result = repository.aggregate(total=Sum("total_amount"))
        assert result["total"] == Decimal("150.00")

    def test_aggregate_grouped(self, repository):
        InvoiceFactory(status=Invoice.Status.SENT)
        InvoiceFactory(status=Invoice.Status.SENT)
        InvoiceFactory(status=Invoice.Status.PAID)

        rows = repository.aggregate(group_by=["status"], count=Count("id"))
        assert {row["status"]: row["count"] for row in rows} == {"paid": 1, "sent": 2}
