"""Payment gateway implementations."""

from functools import lru_cache

from membella.core.config import settings
from membella.modules.payment.gateways.omise import OmiseGateway
from membella.modules.payment.interface import PaymentGatewayInterface

__all__ = ["OmiseGateway", "get_gateway"]


@lru_cache
def get_gateway() -> PaymentGatewayInterface:
    """FastAPI dependency returning the configured gateway client."""
    return OmiseGateway.from_settings(settings)
