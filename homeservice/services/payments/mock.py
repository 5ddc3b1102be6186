import uuid
from typing import Any, Dict

from homeservice.services.payments.base import BaseProvider


class MockProvider(BaseProvider):
    def __init__(self):
        self._charges: Dict[str, Dict[str, Any]] = {}

    def initiate(self, amount: int, method: str, reference: str) -> Dict[str, Any]:
        if reference in self._charges:
            return self._charges[reference]
        gateway_ref = f"mock-{uuid.uuid4()}"
        data = {"gateway_ref": gateway_ref, "checkout_url": f"https://mock/checkout/{gateway_ref}"}
        if method == "pix":
            data["pix_code"] = f"00020126MOCKPIX{reference}{amount:010d}"
        self._charges[reference] = data
        return data

    def verify_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        # In tests we trust the payload
        if not payload.get("gateway_ref"):
            raise ValueError("webhook payload without gateway_ref")
        return {"gateway_ref": payload["gateway_ref"], "status": payload.get("status", "")}

    @property
    def simulated(self) -> bool:
        return True
