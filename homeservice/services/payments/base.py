from abc import ABC, abstractmethod
from typing import Any, Dict


class GatewayUnavailable(Exception):
    """Transient gateway failure; the charge may be retried with the same reference."""


class BaseProvider(ABC):
    @abstractmethod
    def initiate(self, amount: int, method: str, reference: str) -> Dict[str, Any]:
        """Start a charge and return provider data; must include 'gateway_ref'.

        reference is an idempotency key: repeating a call with the same
        reference must not open a second charge.
        """

    @abstractmethod
    def verify_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate webhook payload and return {'gateway_ref', 'status'}."""

    @property
    def simulated(self) -> bool:
        """Simulated gateways never call back; confirmation is scheduled locally."""
        return False
