"""Tax rates per region, applied to invoices and quotes created without an explicit rate."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from ..calculators import build_tax_details
from ..exceptions import ValidationFailure
from ..models import TaxRate
from ..repositories import ModelRepository

logger = logging.getLogger(__name__)


def normalize_region(region: Optional[str]) -> str:
    return (region or "").strip().upper()


class TaxRateService:
    UPDATABLE_FIELDS = ("name", "rate", "tax_type", "region", "is_active", "description")

    def __init__(self, repository: Optional[ModelRepository] = None):
        self.rates = repository or ModelRepository(TaxRate)

    def _validate(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        errors = {}
        cleaned = dict(fields)
        if "name" in fields:
            cleaned["name"] = (fields["name"] or "").strip()
            if not cleaned["name"]:
                errors["name"] = ["Name is required"]
        if "rate" in fields:
            try:
                cleaned["rate"] = Decimal(str(fields["rate"]))
            except (InvalidOperation, ValueError):
                errors["rate"] = ["Rate must be a number"]
            else:
                if not Decimal("0") <= cleaned["rate"] <= Decimal("100"):
                    errors["rate"] = ["Rate must be between 0 and 100"]
        if "tax_type" in fields and fields["tax_type"] not in TaxRate.TaxType.values:
            errors["tax_type"] = [f"Unknown tax type {fields['tax_type']!r}"]
        if "region" in fields:
            cleaned["region"] = normalize_region(fields["region"])
        if errors:
            raise ValidationFailure(errors)
        return cleaned

    def create_tax_rate(self, name: str, rate, tax_type: str = TaxRate.TaxType.SALES_TAX, region: str = "",
                        description: str = "", is_active: bool = True) -> TaxRate:
        fields = self._validate(
            {"name": name, "rate": rate, "tax_type": tax_type, "region": region}
        )
        tax_rate = self.rates.insert(description=description or "", is_active=is_active, **fields)
        logger.info(f"Created tax rate {tax_rate.display_name} for region {tax_rate.region or '-'}")
        return tax_rate

    def get_tax_rate(self, identifier) -> TaxRate:
        return self.rates.get(identifier)

    def update_tax_rate(self, identifier, changes: Mapping[str, Any]) -> TaxRate:
        unknown = set(changes) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise ValidationFailure({name: ["Field cannot be updated"] for name in sorted(unknown)})
        return self.rates.update(identifier, self._validate(changes))

    def deactivate_tax_rate(self, identifier) -> TaxRate:
        return self.rates.update(identifier, {"is_active": False})

    def get_active_tax_rates(self, region: Optional[str] = None) -> List[TaxRate]:
        filters: Dict[str, Any] = {"is_active": True}
        if region:
            filters["region"] = normalize_region(region)
        return self.rates.find(filters, ordering=["name"])

    def get_tax_rate_by_region(self, region: str, tax_type: Optional[str] = None) -> Optional[TaxRate]:
        filters: Dict[str, Any] = {"is_active": True, "region": normalize_region(region)}
        if tax_type:
            filters["tax_type"] = tax_type
        return self.rates.find_one(filters)

    def tax_details_for_region(self, region: str) -> List[Dict[str, str]]:
        """Tax details of the region's active rate; exempt regions carry none."""
        tax_rate = self.get_tax_rate_by_region(region)
        if tax_rate is None:
            raise ValidationFailure({"tax_region": [f"No active tax rate for region {normalize_region(region)}"]})
        if tax_rate.tax_type == TaxRate.TaxType.EXEMPT:
            return []
        return build_tax_details(tax_rate.rate, tax_type=tax_rate.tax_type, description=tax_rate.display_name)


def resolve_tax_details(tax_rates: Optional[TaxRateService], rate: Decimal, region: str = "") -> List[Dict[str, str]]:
    """An explicit rate wins; otherwise the region's configured rate applies."""
    if rate or not region:
        return build_tax_details(rate)
    return (tax_rates or TaxRateService()).tax_details_for_region(region)
