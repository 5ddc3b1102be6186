import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

PROVIDER_ASSIGNED = "provider_assigned"
SERVICE_ACCEPTED = "service_accepted"
ESCROW_RELEASED = "escrow_released"
ANTIFRAUD_FLAG_RAISED = "antifraud_flag_raised"

Handler = Callable[[Dict[str, Any]], None]


class EventDispatcher:
    """
    Domain events for external notifiers.
    Usage:
        events = EventDispatcher()
        events.subscribe("service_accepted", send_push)
        events.publish("service_accepted", {"service_request_id": 7})
    Delivery is best effort: a failing handler is logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers.setdefault(name, []).append(handler)

    def publish(self, name: str, payload: Dict[str, Any]) -> None:
        logger.info("event %s %s", name, payload)
        for handler in self._handlers.get(name, []):
            try:
                handler(payload)
            except Exception:
                logger.exception("event handler failed for %s", name)
