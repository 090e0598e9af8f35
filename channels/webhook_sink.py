"""
Webhook Sink — forwards a queued inbound webhook to one configured target.

The payload is POSTed verbatim. Targets with a verification secret receive
it in X-Webhook-Token so the receiving side can authenticate the relay.
"""
from __future__ import annotations

import structlog
from typing import Optional

import httpx

from channels.base import DeliveryResult, DeliverySink
from models.schemas import RoutingTarget, WorkItem

logger = structlog.get_logger()


class HttpWebhookSink(DeliverySink):
    """POST each work item's payload to its routing target."""

    name = "webhook"

    def __init__(
        self,
        forwarded_by: str = "Meta-Webhook-Forwarder",
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.forwarded_by = forwarded_by
        self.timeout_s = timeout_s
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout_s)
        return self.client

    def build_headers(self, target: RoutingTarget, attempt: int) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Forwarded-By": f"{self.forwarded_by}-Worker",
            "X-Attempt-Count": str(attempt),
        }
        if target.verification_secret:
            headers["X-Webhook-Token"] = target.verification_secret
        return headers

    async def deliver(self, item: WorkItem, target: RoutingTarget, attempt: int) -> DeliveryResult:
        client = await self._get_client()
        try:
            response = await client.post(
                target.endpoint,
                json=item.payload,
                headers=self.build_headers(target, attempt),
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as e:
            return DeliveryResult.failed(str(e) or type(e).__name__)

        if 200 <= response.status_code < 300:
            logger.info("webhook_forwarded",
                        item_id=item.id, target=target.name,
                        status_code=response.status_code)
            return DeliveryResult.succeeded(response.status_code)
        return DeliveryResult.failed(
            f"Non-success status code: {response.status_code}",
            status_code=response.status_code,
        )

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()
