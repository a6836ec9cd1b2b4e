"""Helpers shared by the document services."""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

from django.utils import timezone

from ..models import BillingActivity, LineItem
from ..types import LineItemInput

logger = logging.getLogger(__name__)


def resolve_actor(actor):
    """Services accept request.user directly; anonymous users are recorded as the system."""
    if actor is None or not getattr(actor, "is_authenticated", False):
        return None
    return actor


def validate_line_items(items: Sequence[LineItemInput], required: bool = True) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    if not items:
        if required:
            errors["line_items"] = ["At least one line item is required"]
        return errors

    for i, item in enumerate(items):
        if not (item.description or "").strip():
            errors[f"line_items.{i}.description"] = ["Description is required"]
        if item.quantity <= 0:
            errors[f"line_items.{i}.quantity"] = ["Quantity must be greater than 0"]
        if item.unit_price < 0:
            errors[f"line_items.{i}.unit_price"] = ["Unit price cannot be negative"]
        if item.discount_amount < 0:
            errors[f"line_items.{i}.discount_amount"] = ["Discount cannot be negative"]
        if not Decimal("0") <= item.discount_percent <= Decimal("100"):
            errors[f"line_items.{i}.discount_percent"] = ["Discount percent must be between 0 and 100"]
    return errors


def build_line_items(model: Type[LineItem], items: Iterable[LineItemInput], start: int = 0) -> List[LineItem]:
    """Unsaved line item rows; the caller attaches the parent document before saving."""
    return [
        model(
            description=item.description.strip(),
            quantity=item.quantity,
            unit_price=item.unit_price,
            discount_percent=item.discount_percent,
            discount_amount=item.discount_amount,
            taxable=item.taxable,
            product_id=item.product_id,
            position=start + index,
        )
        for index, item in enumerate(items)
    ]


def clone_line_items(model: Type[LineItem], source: Iterable[LineItem]) -> List[LineItem]:
    return [
        model(
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            discount_percent=item.discount_percent,
            discount_amount=item.discount_amount,
            total_price=item.total_price,
            taxable=item.taxable,
            product_id=item.product_id,
            position=item.position,
        )
        for item in source
    ]


def save_line_items(items: Sequence[LineItem], parent_field: str, parent) -> None:
    new_items = []
    existing = []
    for item in items:
        setattr(item, parent_field, parent)
        if item.pk:
            existing.append(item)
        else:
            new_items.append(item)
    if existing:
        type(existing[0]).objects.bulk_update(existing, ["total_price", "position"])
    if new_items:
        type(new_items[0]).objects.bulk_create(new_items)


def append_note(existing: str, line: str) -> str:
    return f"{existing}\n{line}" if existing else line


def log_activity(document_type: str, document, actor, action: str, description: str = "",
                 metadata: Optional[Dict[str, Any]] = None) -> None:
    BillingActivity.objects.create(
        document_type=document_type,
        document_id=document.pk,
        actor=resolve_actor(actor),
        action=action,
        description=description,
        metadata=metadata or {},
    )


def today():
    return timezone.localdate()
