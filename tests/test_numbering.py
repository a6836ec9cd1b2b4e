from datetime import datetime
from datetime import timezone as dt_timezone

import pytest

from billing.models import DocumentSequence
from billing.numbering import DocumentNumberAllocator


@pytest.mark.django_db
class TestDocumentNumberAllocator:
    def test_invoice_numbers_are_sequential_per_year(self):
        allocator = DocumentNumberAllocator()
        year = allocator.yearly()

        first = allocator.invoice_number()
        second = allocator.invoice_number()

        assert first == f"INV-{year}-0001"
        assert second == f"INV-{year}-0002"

    def test_prefixes_have_independent_sequences(self):
        allocator = DocumentNumberAllocator()
        allocator.invoice_number()
        allocator.invoice_number()

        assert allocator.quote_number().endswith("-0001")
        assert allocator.subscription_id().startswith("SUB-")

    def test_payment_and_refund_ids_use_monthly_period(self):
        allocator = DocumentNumberAllocator()
        period = allocator.monthly()

        assert allocator.payment_id() == f"PAY-{period}-0001"
        assert allocator.refund_id() == f"REF-{period}-0001"

    def test_sequence_row_tracks_last_value(self):
        allocator = DocumentNumberAllocator()
        for _ in range(3):
            allocator.next_number("INV", "2031")

        sequence = DocumentSequence.objects.get(prefix="INV", period="2031")
        assert sequence.last_value == 3

    def test_new_period_restarts_numbering(self):
        allocator = DocumentNumberAllocator()
        allocator.next_number("INV", "2030")
        allocator.next_number("INV", "2030")

        assert allocator.next_number("INV", "2031") == "INV-2031-0001"

    def test_width_is_configurable(self):
        assert DocumentNumberAllocator(width=6).next_number("QUO", "2030") == "QUO-2030-000001"

    def test_period_helpers(self):
        moment = datetime(2026, 3, 9, tzinfo=dt_timezone.utc)
        assert DocumentNumberAllocator.yearly(moment) == "2026"
        assert DocumentNumberAllocator.monthly(moment) == "202603"
