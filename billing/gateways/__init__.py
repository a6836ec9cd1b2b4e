from .stripe import StripeGateway

__all__ = ["StripeGateway"]
