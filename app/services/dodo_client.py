"""
Dodo Payments (Merchant of Record) REST client.

One instance per process, created at startup and stored on app.state.
"""
import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class DodoAPIError(Exception):
    """Non-2xx answer from Dodo. status_code is surfaced to the caller."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"Dodo API error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class DodoClient:
    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _raise_for_status(r: httpx.Response) -> None:
        if r.status_code < 400:
            return
        raw_text = r.text or ""
        logger.warning("[Dodo] Non-2xx response: %s - %s", r.status_code, raw_text[:500])
        # Avoid leaking low-level messages like "Invalid bearer token" directly to users.
        if "Invalid bearer token" in raw_text:
            detail = (
                "Our payment provider rejected the request. "
                "Please try again or contact support if this continues."
            )
        else:
            detail = raw_text or str(r.status_code)
        raise DodoAPIError(r.status_code, detail)

    async def create_payment(
        self,
        billing: Dict[str, str],
        customer: Dict[str, Any],
        product_id: str,
        return_url: str,
        metadata: Dict[str, str],
        quantity: int = 1,
        amount: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Create a one-time payment and get back a hosted payment link.

        amount (minor units) prices a pay-what-you-want product per plan.
        """
        item: Dict[str, Any] = {"product_id": product_id, "quantity": quantity}
        if amount:
            item["amount"] = amount
        payload = {
            "billing": billing,
            "customer": {**customer, "create_new_customer": True},
            "product_cart": [item],
            "payment_link": True,
            "return_url": return_url,
            "metadata": metadata,
        }
        logger.info(
            "[Dodo] Creating payment for %s (product=%s, plan=%s)",
            customer.get("email"), product_id, metadata.get("plan_id"),
        )
        r = await self._client.post("/payments", json=payload)
        logger.info("[Dodo] Response status: %s", r.status_code)
        self._raise_for_status(r)
        return r.json()

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        r = await self._client.get(f"/payments/{payment_id}")
        self._raise_for_status(r)
        return r.json()
