"""
Payment Method Service - cards and bank accounts customers saved at the gateway.

Each customer has at most one default method. Payments taken without an
explicit gateway payment method fall back to it.
"""

import logging
from typing import Any, Dict, List, Optional

from django.db import transaction

from ..exceptions import GatewayFailure, NotFound, ValidationFailure
from ..models import PaymentMethod
from ..repositories import ModelRepository

logger = logging.getLogger(__name__)

GATEWAY_TYPE_MAP = {
    "card": PaymentMethod.Type.CREDIT_CARD,
    "us_bank_account": PaymentMethod.Type.BANK_TRANSFER,
    "sepa_debit": PaymentMethod.Type.BANK_TRANSFER,
}

ADDRESS_FIELDS = ("line1", "line2", "city", "state", "postal_code", "country")


def map_gateway_type(remote: Dict[str, Any]) -> str:
    card = remote.get("card") or {}
    if remote.get("type") == "card" and card.get("funding") == "debit":
        return PaymentMethod.Type.DEBIT_CARD
    return GATEWAY_TYPE_MAP.get(remote.get("type") or "", PaymentMethod.Type.STRIPE)


def local_fields(remote: Dict[str, Any]) -> Dict[str, Any]:
    """Local column values for a Stripe PaymentMethod object."""
    fields: Dict[str, Any] = {"type": map_gateway_type(remote)}
    card = remote.get("card") or {}
    if card:
        fields.update(
            card_brand=card.get("brand") or "",
            card_last4=card.get("last4") or "",
            card_exp_month=card.get("exp_month"),
            card_exp_year=card.get("exp_year"),
        )
    bank = remote.get("us_bank_account") or remote.get("sepa_debit") or {}
    if bank:
        fields.update(bank_name=bank.get("bank_name") or "", bank_account_last4=bank.get("last4") or "")
    address = (remote.get("billing_details") or {}).get("address") or {}
    if any(address.values()):
        fields["billing_address"] = {key: address.get(key) or "" for key in ADDRESS_FIELDS}
    return fields


class PaymentMethodService:
    def __init__(self, repository: Optional[ModelRepository] = None, gateway=None):
        self.methods = repository or ModelRepository(PaymentMethod, lookup_field="gateway_payment_method_id")
        self.gateway = gateway

    def _clear_default(self, customer_id: str, keep=None):
        others = self.methods.queryset().filter(customer_id=customer_id, is_default=True)
        if keep is not None:
            others = others.exclude(pk=keep)
        others.update(is_default=False)

    def _owned(self, customer_id: str, identifier) -> PaymentMethod:
        method = self.methods.get(identifier)
        if method.customer_id != customer_id:
            raise NotFound.for_resource("Payment Method", identifier)
        return method

    def list_payment_methods(self, customer_id: str) -> List[PaymentMethod]:
        return self.methods.find({"customer_id": customer_id}, ordering=["-is_default", "-created_at"])

    def get_payment_method(self, identifier) -> PaymentMethod:
        return self.methods.get(identifier)

    def get_default_payment_method(self, customer_id: str) -> Optional[PaymentMethod]:
        if not customer_id:
            return None
        return self.methods.find_one({"customer_id": customer_id, "is_default": True})

    @transaction.atomic
    def save_payment_method(self, customer_id: str, gateway_payment_method_id: str, gateway_customer_id: str = "",
                            make_default: bool = False, metadata: Optional[Dict[str, Any]] = None) -> PaymentMethod:
        """Store a gateway payment method for the customer, attaching it to the gateway customer first.

        The customer's first saved method becomes the default.
        """
        errors = {}
        if not (customer_id or "").strip():
            errors["customer_id"] = ["Customer is required"]
        if not (gateway_payment_method_id or "").strip():
            errors["gateway_payment_method_id"] = ["Gateway payment method is required"]
        if errors:
            raise ValidationFailure(errors)

        method = self.methods.find_one({"gateway_payment_method_id": gateway_payment_method_id})
        if method is not None and method.customer_id != customer_id:
            raise ValidationFailure({"gateway_payment_method_id": ["Payment method belongs to another customer"]})

        remote = self.gateway.retrieve_payment_method(gateway_payment_method_id)
        if gateway_customer_id and remote.get("customer") != gateway_customer_id:
            remote = self.gateway.attach_payment_method(gateway_payment_method_id, gateway_customer_id)

        method = method or PaymentMethod(customer_id=customer_id, gateway_payment_method_id=gateway_payment_method_id)
        for name, value in local_fields(remote).items():
            setattr(method, name, value)
        method.gateway_customer_id = gateway_customer_id or remote.get("customer") or method.gateway_customer_id
        if metadata:
            method.metadata = {**method.metadata, **metadata}

        if make_default or self.get_default_payment_method(customer_id) is None:
            self._clear_default(customer_id, keep=method.pk)
            method.is_default = True
        self.methods.save(method)
        logger.info(f"Saved payment method {gateway_payment_method_id} for customer {customer_id}")
        return method

    @transaction.atomic
    def set_default_payment_method(self, customer_id: str, identifier) -> PaymentMethod:
        method = self._owned(customer_id, identifier)
        self._clear_default(customer_id, keep=method.pk)
        method.is_default = True
        self.methods.save(method, update_fields=["is_default"])
        logger.info(f"Default payment method for customer {customer_id} is now {method.gateway_payment_method_id}")
        return method

    @transaction.atomic
    def remove_payment_method(self, customer_id: str, identifier) -> None:
        """Delete a saved method; the newest remaining one takes over as default."""
        method = self._owned(customer_id, identifier)
        was_default = method.is_default
        if self.gateway is not None:
            try:
                self.gateway.detach_payment_method(method.gateway_payment_method_id)
            except GatewayFailure as exc:
                logger.warning(f"Detaching {method.gateway_payment_method_id} at the gateway failed: {exc}")
        method.delete()

        if was_default:
            remaining = self.methods.find({"customer_id": customer_id}, ordering=["-created_at"], limit=1)
            if remaining:
                remaining[0].is_default = True
                self.methods.save(remaining[0], update_fields=["is_default"])
        logger.info(f"Removed payment method {method.gateway_payment_method_id} for customer {customer_id}")

    def mirror_remote(self, remote: Dict[str, Any]) -> Optional[PaymentMethod]:
        """Refresh a saved method from a gateway event; unknown methods are ignored."""
        method = self.methods.find_one({"gateway_payment_method_id": remote.get("id", "")})
        if method is None:
            return None
        for name, value in local_fields(remote).items():
            setattr(method, name, value)
        self.methods.save(method)
        return method

    def forget_remote(self, remote: Dict[str, Any]) -> bool:
        """Drop the local copy of a method detached at the gateway."""
        method = self.methods.find_one({"gateway_payment_method_id": remote.get("id", "")})
        if method is None:
            return False
        customer_id = method.customer_id
        was_default = method.is_default
        method.delete()
        if was_default:
            remaining = self.methods.find({"customer_id": customer_id}, ordering=["-created_at"], limit=1)
            if remaining:
                remaining[0].is_default = True
                self.methods.save(remaining[0], update_fields=["is_default"])
        return True
