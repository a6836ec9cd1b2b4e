"""Request and filter structures passed into the billing services."""

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass
class LineItemInput:
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    taxable: bool = True
    product_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItemInput":
        return cls(
            description=data.get("description", ""),
            quantity=Decimal(str(data.get("quantity", 1))),
            unit_price=Decimal(str(data.get("unit_price", 0))),
            discount_percent=Decimal(str(data.get("discount_percent") or 0)),
            discount_amount=Decimal(str(data.get("discount_amount") or 0)),
            taxable=data.get("taxable", True),
            product_id=data.get("product_id") or "",
        )


@dataclass
class CreateInvoiceRequest:
    customer_id: str
    line_items: List[LineItemInput]
    due_date: Optional[date] = None
    issue_date: Optional[date] = None
    company_id: str = ""
    customer_name: str = ""
    customer_email: str = ""
    currency: str = ""
    tax_rate: Decimal = Decimal("0")
    tax_region: str = ""
    discount_amount: Decimal = Decimal("0")
    payment_terms: str = ""
    notes: str = ""
    terms: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CreateQuoteRequest:
    customer_id: str
    line_items: List[LineItemInput]
    expiration_date: Optional[date] = None
    issue_date: Optional[date] = None
    company_id: str = ""
    customer_name: str = ""
    customer_email: str = ""
    currency: str = ""
    tax_rate: Decimal = Decimal("0")
    tax_region: str = ""
    discount_amount: Decimal = Decimal("0")
    notes: str = ""
    terms: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CreatePaymentRequest:
    customer_id: str
    amount: Decimal
    currency: str = ""
    invoice_id: Union[int, str, None] = None
    payment_method: str = "card"
    payment_method_id: str = ""
    gateway_customer_id: str = ""
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CreateSubscriptionRequest:
    customer_id: str
    gateway_customer_id: str
    plan_id: str
    company_id: str = ""
    quantity: int = 1
    trial_days: int = 0
    payment_method_id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def lookups(self, field_name: str) -> Dict[str, Any]:
        result = {}
        if self.start:
            result[f"{field_name}__gte"] = self.start
        if self.end:
            result[f"{field_name}__lte"] = self.end
        return result


@dataclass
class _Filters:
    page: int = 1
    page_size: int = 20
    ordering: str = "-created_at"

    # filter field -> ORM lookup; unset options are skipped
    LOOKUPS: ClassVar[Dict[str, str]] = {}

    def to_lookups(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            lookup = self.LOOKUPS.get(f.name)
            value = getattr(self, f.name)
            if lookup and value not in (None, ""):
                result[lookup] = value
        return result

    @property
    def offset(self) -> int:
        return (max(self.page, 1) - 1) * self.page_size


@dataclass
class InvoiceFilters(_Filters):
    status: Optional[str] = None
    customer_id: Optional[str] = None
    company_id: Optional[str] = None
    issued_after: Optional[date] = None
    issued_before: Optional[date] = None
    due_before: Optional[date] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    LOOKUPS: ClassVar[Dict[str, str]] = {
        "status": "status",
        "customer_id": "customer_id",
        "company_id": "company_id",
        "issued_after": "issue_date__gte",
        "issued_before": "issue_date__lte",
        "due_before": "due_date__lt",
        "min_amount": "total_amount__gte",
        "max_amount": "total_amount__lte",
    }


@dataclass
class QuoteFilters(_Filters):
    status: Optional[str] = None
    customer_id: Optional[str] = None
    company_id: Optional[str] = None
    expires_before: Optional[date] = None

    LOOKUPS: ClassVar[Dict[str, str]] = {
        "status": "status",
        "customer_id": "customer_id",
        "company_id": "company_id",
        "expires_before": "expiration_date__lte",
    }


@dataclass
class PaymentFilters(_Filters):
    status: Optional[str] = None
    customer_id: Optional[str] = None
    invoice_id: Optional[int] = None
    payment_method: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None

    LOOKUPS: ClassVar[Dict[str, str]] = {
        "status": "status",
        "customer_id": "customer_id",
        "invoice_id": "invoice_id",
        "payment_method": "payment_method",
        "created_after": "created_at__gte",
        "created_before": "created_at__lte",
    }


@dataclass
class SubscriptionFilters(_Filters):
    status: Optional[str] = None
    customer_id: Optional[str] = None
    company_id: Optional[str] = None
    plan_id: Optional[str] = None

    LOOKUPS: ClassVar[Dict[str, str]] = {
        "status": "status",
        "customer_id": "customer_id",
        "company_id": "company_id",
        "plan_id": "plan_id",
    }


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size > 0 else 1
