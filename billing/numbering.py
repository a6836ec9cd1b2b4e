"""
Atomic document numbering.

Numbers look like ``INV-2026-0001`` or ``PAY-202610-0001``. Each
``(prefix, period)`` pair owns one DocumentSequence row. The row is locked
with SELECT ... FOR UPDATE and incremented in the same transaction, so two
concurrent creations can never receive the same number.
"""

import logging
from datetime import datetime
from typing import Optional

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .models import DocumentSequence

logger = logging.getLogger(__name__)

INVOICE_PREFIX = "INV"
QUOTE_PREFIX = "QUO"
PAYMENT_PREFIX = "PAY"
REFUND_PREFIX = "REF"
SUBSCRIPTION_PREFIX = "SUB"


class DocumentNumberAllocator:
    def __init__(self, width: int = 4):
        self.width = width

    @staticmethod
    def yearly(moment: Optional[datetime] = None) -> str:
        return f"{(moment or timezone.now()).year}"

    @staticmethod
    def monthly(moment: Optional[datetime] = None) -> str:
        moment = moment or timezone.now()
        return f"{moment.year}{moment.month:02d}"

    @transaction.atomic
    def next_value(self, prefix: str, period: str) -> int:
        sequence, _ = DocumentSequence.objects.select_for_update().get_or_create(prefix=prefix, period=period)
        DocumentSequence.objects.filter(pk=sequence.pk).update(last_value=F("last_value") + 1)
        sequence.refresh_from_db(fields=["last_value"])
        return sequence.last_value

    def next_number(self, prefix: str, period: str) -> str:
        value = self.next_value(prefix, period)
        number = f"{prefix}-{period}-{value:0{self.width}d}"
        logger.debug(f"Allocated document number {number}")
        return number

    def invoice_number(self) -> str:
        return self.next_number(INVOICE_PREFIX, self.yearly())

    def quote_number(self) -> str:
        return self.next_number(QUOTE_PREFIX, self.yearly())

    def subscription_id(self) -> str:
        return self.next_number(SUBSCRIPTION_PREFIX, self.yearly())

    def payment_id(self) -> str:
        return self.next_number(PAYMENT_PREFIX, self.monthly())

    def refund_id(self) -> str:
        return self.next_number(REFUND_PREFIX, self.monthly())
