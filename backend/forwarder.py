"""
Ingress Adapters — turn inbound events and API calls into queued work items.

Flow:
    Meta webhook POST → WebhookForwarder.forward_webhook
    → raw payload logged to received_webhooks
    → one webhook_jobs item per active routing target

    Send API call → MessageIngestionHandler.enqueue_message / enqueue_note
    → one chatwoot_messages item

Nothing here waits for delivery; the queue workers take it from there.
"""
from __future__ import annotations

import json
import re
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from database.store_base import BaseTargetDirectory, BaseWorkItemStore
from models.schemas import ChatMessagePayload, ChatMessageType, WorkItem

logger = structlog.get_logger()

_E164 = re.compile(r"^\+?[1-9]\d{1,14}$")


class IngressError(Exception):
    """Base class for ingress failures surfaced to the HTTP layer."""


class NoActiveTargetError(IngressError):
    def __init__(self):
        super().__init__("No active webhooks configured")


class InvalidMessageError(IngressError):
    pass


@dataclass
class ForwardedResponse:
    status_code: int
    data: Any
    headers: dict[str, str] = field(default_factory=dict)


class WebhookForwarder:
    """
    Fans inbound webhooks out to every active routing target.

    The directory is read directly (not through the worker's cache) so a
    target activated a moment ago already receives the next event.
    """

    def __init__(
        self,
        directory: BaseTargetDirectory,
        store: BaseWorkItemStore,
        forwarded_by: str = "Meta-Webhook-Forwarder",
        get_timeout_s: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.directory = directory
        self.store = store
        self.forwarded_by = forwarded_by
        self.get_timeout_s = get_timeout_s
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.get_timeout_s)
        return self.client

    async def forward_webhook(self, payload: Any) -> list[WorkItem]:
        """Log the raw payload and enqueue one item per active target."""
        targets = await self.directory.list_active_targets()

        try:
            await self.directory.save_received_webhook(payload)
        except Exception as e:
            # Audit log only; job creation goes ahead
            logger.error("received_webhook_save_failed", error=str(e))

        created: list[WorkItem] = []
        for target in targets:
            try:
                created.append(await self.store.enqueue(target.id, payload))
            except Exception as e:
                logger.error("webhook_job_create_failed",
                             target_id=target.id, target=target.name, error=str(e))

        logger.info("webhook_received",
                    active_targets=len(targets), jobs_created=len(created))
        return created

    async def forward_get_request(
        self,
        path: str,
        query_params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> ForwardedResponse:
        """Synchronously relay a GET to the first active target and return its response."""
        targets = await self.directory.list_active_targets()
        if not targets:
            raise NoActiveTargetError()

        target = targets[0]
        client = await self._get_client()
        try:
            response = await client.get(
                target.endpoint + path,
                params=query_params or {},
                headers={**(headers or {}), "X-Forwarded-By": self.forwarded_by},
                timeout=self.get_timeout_s,
            )
        except httpx.HTTPError as e:
            logger.error("get_forward_failed", target=target.name, error=str(e))
            raise

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        return ForwardedResponse(
            status_code=response.status_code,
            data=data,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()


class MessageIngestionHandler:
    """Validates send requests and queues them for the chat message worker."""

    def __init__(self, store: BaseWorkItemStore):
        self.store = store

    async def enqueue_message(
        self,
        phone_number: str,
        content: str,
        message_type: Optional[str] = "outgoing",
        contact_name: Optional[str] = None,
    ) -> WorkItem:
        if not phone_number or not content:
            raise InvalidMessageError("phone_number and content are required")
        if not _E164.match(phone_number):
            raise InvalidMessageError(
                "Invalid phone number format. Use E.164 format (e.g., +5511999998888)"
            )

        payload = ChatMessagePayload(
            phone_number=phone_number,
            content=content,
            message_type=(ChatMessageType.NOTE if message_type == ChatMessageType.NOTE.value
                          else ChatMessageType.OUTGOING),
            contact_name=contact_name or None,
        )
        item = await self.store.enqueue(None, payload.model_dump(mode="json"))
        logger.info("chat_message_queued", item_id=item.id, message_type=payload.message_type.value)
        return item

    async def enqueue_note(
        self,
        to: str,
        content: str,
        content_type: Optional[str] = None,
        template_params: Any = None,
        processed_params: Any = None,
        contact_name: Optional[str] = None,
    ) -> WorkItem:
        if not to or not content:
            raise InvalidMessageError("to and content are required")
        if not str(to).lstrip("+").isdigit():
            raise InvalidMessageError("Invalid phone number format. Only numbers are allowed")

        payload = ChatMessagePayload(
            phone_number=str(to),
            content=content,
            message_type=ChatMessageType.NOTE,
            contact_name=contact_name or None,
            content_type=content_type or None,
            template_params=_serialize_params(template_params),
            processed_params=_serialize_params(processed_params),
        )
        item = await self.store.enqueue(None, payload.model_dump(mode="json"))
        logger.info("chat_note_queued", item_id=item.id)
        return item


def _serialize_params(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)
