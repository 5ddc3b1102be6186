"""Payment gateway adapters, selected by PAYMENTS_PROVIDER."""
import logging
from functools import lru_cache
from typing import Dict, Type

from homeservice.config import settings
from homeservice.services.payments.base import BaseProvider
from homeservice.services.payments.mock import MockProvider

logger = logging.getLogger(__name__)

GATEWAYS: Dict[str, Type[BaseProvider]] = {
    "mock": MockProvider,
}


@lru_cache()
def get_provider() -> BaseProvider:
    name = settings.PAYMENTS_PROVIDER.strip().lower()
    try:
        gateway = GATEWAYS[name]
    except KeyError:
        raise ValueError(f"unknown payments provider: {name}") from None
    logger.info("Payment gateway: %s", name)
    return gateway()
