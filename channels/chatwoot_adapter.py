"""
Chatwoot Adapter — delivers queued chat messages through the Chatwoot API.

Provides:
- ChatwootClient: contact and conversation resolution, message posting
- ChatwootSink: the DeliverySink used by the message queue worker

Sending a message to a phone number takes up to four calls:
  1. find the contact (trying the number with and without the Brazilian
     mobile "9" prefix), creating it if missing
  2. reuse the most recently active open conversation in the inbox,
     creating one if there is none
  3. POST the message to that conversation
"""
from __future__ import annotations

import json
import re
import structlog
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from channels.base import ChannelError, DeliveryResult, DeliverySink
from config.settings import ChatwootConfig
from models.schemas import ChatMessagePayload, RoutingTarget, WorkItem

logger = structlog.get_logger()

# 55 (country) + 2-digit area code + 9 + 8 digits
_BR_MOBILE_WITH_NINE = re.compile(r"^55\d{2}9\d{8}$")


class ChatwootError(ChannelError):
    def __init__(self, message: str):
        super().__init__(message, channel="chatwoot", retryable=True)


def alternate_mobile_number(number: str) -> str:
    """
    The same Brazilian mobile number in its other historical form: drop the
    ninth digit if present, insert it after the area code otherwise.
    """
    if _BR_MOBILE_WITH_NINE.match(number):
        return number[:4] + number[5:]
    return number[:4] + "9" + number[4:]


class ChatwootClient:
    """Thin async client over the Chatwoot application API."""

    def __init__(
        self,
        config: ChatwootConfig,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.timeout_s = timeout_s
        self.client: Optional[httpx.AsyncClient] = client

    @property
    def _account_path(self) -> str:
        return f"/api/v1/accounts/{self.config.account_id}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={
                    "Content-Type": "application/json",
                    "api_access_token": self.config.api_token,
                },
                timeout=self.timeout_s,
            )
        return self.client

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        client = await self._get_client()
        response = await client.request(method, path, **kwargs)
        response.raise_for_status()
        return response.json()

    # ── Contacts ──────────────────────────────────────────

    async def search_contact(self, phone_number: str) -> Optional[dict[str, Any]]:
        """Exact phone/identifier match if any, else the first hit. Errors count as not found."""
        try:
            data = await self._request(
                "GET", f"{self._account_path}/contacts/search",
                params={"q": phone_number},
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("chatwoot_contact_search_failed", phone=phone_number, error=str(e))
            return None

        contacts = (data or {}).get("payload") or []
        if not contacts:
            return None
        for contact in contacts:
            if phone_number in (contact.get("phone_number"), contact.get("identifier")):
                return contact
        return contacts[0]

    async def create_contact(self, phone_number: str, name: Optional[str] = None) -> dict[str, Any]:
        try:
            data = await self._request(
                "POST", f"{self._account_path}/contacts",
                json={
                    "name": name or self.config.default_contact_name,
                    "identifier": phone_number,
                    "phone_number": phone_number,
                    "custom_attributes": {"source": "external-whatsapp-system"},
                },
            )
            return data["payload"]["contact"]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.error("chatwoot_contact_create_failed", phone=phone_number, error=str(e))
            raise ChatwootError("Failed to create contact") from e

    async def get_or_create_contact(self, phone_number: str, name: Optional[str] = None) -> dict[str, Any]:
        clean = phone_number.lstrip("+")

        contact = await self.search_contact(clean)
        if contact:
            return contact

        alternate = alternate_mobile_number(clean)
        contact = await self.search_contact(alternate)
        if contact:
            logger.info("chatwoot_contact_found_alternate", phone=clean, alternate=alternate)
            return contact

        contact = await self.create_contact(clean, name)
        logger.info("chatwoot_contact_created", contact_id=contact.get("id"), phone=clean)
        return contact

    # ── Conversations ─────────────────────────────────────

    async def get_contact_conversations(self, contact_id: int) -> list[dict[str, Any]]:
        try:
            data = await self._request(
                "GET", f"{self._account_path}/conversations",
                params={"inbox_id": self.config.inbox_id, "status": "open"},
            )
            conversations = data["data"]["payload"]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("chatwoot_conversations_fetch_failed", contact_id=contact_id, error=str(e))
            return []
        return [
            c for c in conversations
            if ((c.get("meta") or {}).get("sender") or {}).get("id") == contact_id
        ]

    async def create_conversation(self, contact_id: int) -> dict[str, Any]:
        try:
            return await self._request(
                "POST", f"{self._account_path}/conversations",
                json={
                    "source_id": None,
                    "inbox_id": self.config.inbox_id,
                    "contact_id": contact_id,
                    "additional_attributes": {"created_by": "webhook-relay"},
                },
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error("chatwoot_conversation_create_failed", contact_id=contact_id, error=str(e))
            raise ChatwootError("Failed to create conversation") from e

    async def get_or_create_conversation(self, contact_id: int) -> dict[str, Any]:
        existing = await self.get_contact_conversations(contact_id)
        if existing:
            return max(existing, key=lambda c: c.get("last_activity_at") or 0)
        conversation = await self.create_conversation(contact_id)
        logger.info("chatwoot_conversation_created",
                    contact_id=contact_id, conversation_id=conversation.get("id"))
        return conversation

    # ── Messages ──────────────────────────────────────────

    def conversation_messages_url(self, conversation_id: int) -> str:
        return (f"{self.config.base_url.rstrip('/')}{self._account_path}"
                f"/conversations/{conversation_id}/messages")

    async def send_message(self, message: ChatMessagePayload) -> str:
        """Resolve contact and conversation, post the message, return its endpoint URL."""
        contact = await self.get_or_create_contact(message.phone_number, message.contact_name)
        conversation = await self.get_or_create_conversation(contact["id"])

        body: dict[str, Any] = {
            "content": message.content,
            "message_type": "outgoing",
            "private": message.is_private,
        }
        if message.content_type:
            body["content_type"] = message.content_type
        if message.template_params:
            try:
                body["template_params"] = json.loads(message.template_params)
            except ValueError as e:
                logger.warning("chatwoot_template_params_invalid", error=str(e))

        try:
            await self._request(
                "POST",
                f"{self._account_path}/conversations/{conversation['id']}/messages",
                json=body,
            )
        except httpx.HTTPStatusError as e:
            raise ChatwootError(
                f"Message rejected with status {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise ChatwootError(f"Message request failed: {e}") from e

        return self.conversation_messages_url(conversation["id"])

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()


class ChatwootSink(DeliverySink):
    """DeliverySink for the single-target chat message queue."""

    name = "chatwoot"

    def __init__(self, client: ChatwootClient):
        self.client = client

    async def deliver(self, item: WorkItem, target: RoutingTarget, attempt: int) -> DeliveryResult:
        try:
            message = ChatMessagePayload.model_validate(item.payload)
        except ValidationError as e:
            return DeliveryResult.failed(f"Invalid message payload: {e.error_count()} error(s)")

        try:
            url = await self.client.send_message(message)
        except ChannelError as e:
            return DeliveryResult.failed(str(e))
        except httpx.HTTPError as e:
            return DeliveryResult.failed(str(e) or type(e).__name__)

        logger.info("chatwoot_message_sent",
                    item_id=item.id, phone=message.phone_number,
                    private=message.is_private, endpoint=url)
        return DeliveryResult.succeeded()

    async def close(self) -> None:
        await self.client.close()
