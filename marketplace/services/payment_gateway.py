from __future__ import annotations

import logging
from typing import Any, Protocol

from marketplace.services.http_client import ServiceHttpClient


log = logging.getLogger(__name__)


class TransactionLookup(Protocol):
    async def find_by_reference(self, reference: str) -> dict[str, Any] | None: ...


class PaymentGatewayClient:
    """Read-only view of the gateway's transactions API."""

    def __init__(self, http: ServiceHttpClient, *, api_url: str):
        self.http = http
        self.api_url = api_url.rstrip("/")

    async def find_by_reference(self, reference: str) -> dict[str, Any] | None:
        res = await self.http.get_json(url=f"{self.api_url}/transactions", params={"reference": reference})
        if not res.ok:
            log.warning(
                "gateway lookup failed reference=%s status=%s error=%s",
                reference, res.status_code, res.error_code,
            )
            return None

        transactions = res.detail.get("data") or []
        if not isinstance(transactions, list):
            return None
        candidates = [tx for tx in transactions if isinstance(tx, dict)]
        if not candidates:
            return None
        # one reference can carry a declined attempt followed by an approved one
        for tx in candidates:
            if tx.get("status") == "APPROVED":
                return tx
        return candidates[0]

    async def aclose(self) -> None:
        await self.http.aclose()
