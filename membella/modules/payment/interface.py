"""Payment gateway interface.

Defines the contract the payment workflow uses to talk to a gateway. The
implementation is injected into services, so tests can supply a scripted
gateway and production supplies :class:`OmiseGateway`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from membella.modules.payment.models import PaymentMethod, PaymentStatus


@dataclass
class ChargeRequest:
    """Data transfer object for creating a charge."""
    amount: int
    currency: str
    method: PaymentMethod
    description: str
    source: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    return_uri: Optional[str] = None


@dataclass
class ChargeResult:
    """Result from charge creation."""
    charge_id: str
    status: PaymentStatus
    source_id: Optional[str] = None
    qr_code_url: Optional[str] = None
    authorize_uri: Optional[str] = None
    expires_at: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    gateway_response: Optional[dict] = None


@dataclass
class ChargeSnapshot:
    """Current state of a charge as reported by the gateway."""
    charge_id: str
    status: PaymentStatus
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    gateway_response: Optional[dict] = None


class PaymentGatewayInterface(ABC):
    """Abstract interface for payment gateway implementations.

    Implementations raise :class:`membella.core.exceptions.GatewayError` when
    the gateway rejects a request or cannot be reached.
    """

    name: str = "gateway"

    @abstractmethod
    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Create a charge.

        Args:
            request: Amount, currency, method and optional source token

        Returns:
            ChargeResult with the gateway charge id and its mapped status

        Raises:
            GatewayError: If the gateway rejects the charge
        """

    @abstractmethod
    async def get_charge(self, charge_id: str) -> ChargeSnapshot:
        """Fetch the current state of a charge.

        Raises:
            GatewayError: If the charge cannot be retrieved
        """

    @abstractmethod
    def verify_webhook_signature(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> bool:
        """Check that a webhook delivery really came from the gateway.

        Args:
            payload: Raw request body
            headers: Request headers

        Returns:
            True when the delivery is authentic
        """

    def get_public_key(self) -> Optional[str]:
        """Key the client uses to tokenise cards, if the gateway has one."""
        return None
