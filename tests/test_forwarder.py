"""Tests for webhook fan-out, GET passthrough and message ingestion."""
import json
import pytest

import httpx

from backend.forwarder import (
    InvalidMessageError, MessageIngestionHandler, NoActiveTargetError, WebhookForwarder,
)
from database.store_memory import InMemoryTargetDirectory, InMemoryWorkItemStore
from models.schemas import ChatMessagePayload, ChatMessageType, WorkItemStatus


EVENT = {"object": "whatsapp_business_account", "entry": [{"id": "WABA", "changes": [{"field": "messages"}]}]}


class TestWebhookFanOut:
    @pytest.mark.asyncio
    async def test_one_item_per_active_target(self, directory, store):
        a = await directory.create_target("crm", "https://crm.example.com/hook")
        b = await directory.create_target("bot", "https://bot.example.com/hook")
        forwarder = WebhookForwarder(directory, store)

        created = await forwarder.forward_webhook(EVENT)

        assert len(created) == 2
        assert sorted(i.target_ref for i in created) == [a.id, b.id]
        for item in created:
            assert item.status == WorkItemStatus.PENDING
            assert item.attempt_count == 0
            assert item.payload == EVENT

    @pytest.mark.asyncio
    async def test_inactive_targets_skipped(self, directory, store):
        a = await directory.create_target("crm", "https://crm.example.com/hook")
        b = await directory.create_target("bot", "https://bot.example.com/hook")
        await directory.update_target(b.id, "bot", b.endpoint, is_active=False)

        created = await WebhookForwarder(directory, store).forward_webhook(EVENT)

        assert [i.target_ref for i in created] == [a.id]

    @pytest.mark.asyncio
    async def test_no_targets_still_logs_event(self, directory, store):
        created = await WebhookForwarder(directory, store).forward_webhook(EVENT)

        assert created == []
        received = await directory.recent_received_webhooks()
        assert [r.payload for r in received] == [EVENT]

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_block_jobs(self, store):
        class NoAuditDirectory(InMemoryTargetDirectory):
            async def save_received_webhook(self, payload):
                raise ConnectionError("disk full")

        directory = NoAuditDirectory()
        await directory.create_target("crm", "https://crm.example.com/hook")

        created = await WebhookForwarder(directory, store).forward_webhook(EVENT)
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_one_enqueue_failure_does_not_block_others(self, directory, clock):
        class PickyStore(InMemoryWorkItemStore):
            async def enqueue(self, target_ref, payload):
                if target_ref == 1:
                    raise ConnectionError("constraint violated")
                return await super().enqueue(target_ref, payload)

        await directory.create_target("crm", "https://crm.example.com/hook")
        b = await directory.create_target("bot", "https://bot.example.com/hook")

        created = await WebhookForwarder(directory, PickyStore(clock=clock)).forward_webhook(EVENT)

        assert [i.target_ref for i in created] == [b.id]


class TestGetPassthrough:
    @pytest.mark.asyncio
    async def test_forwards_to_first_active_target(self, directory, store):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            return httpx.Response(200, json={"status": "ok"})

        first = await directory.create_target("crm", "https://crm.example.com")
        await directory.create_target("bot", "https://bot.example.com")
        await directory.update_target(first.id, "crm", first.endpoint, is_active=False)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        forwarder = WebhookForwarder(directory, store, client=client)

        response = await forwarder.forward_get_request("/status", {"id": "42"}, {"Accept": "application/json"})

        assert response.status_code == 200
        assert response.data == {"status": "ok"}
        assert seen["url"] == "https://bot.example.com/status?id=42"
        assert seen["headers"]["x-forwarded-by"] == "Meta-Webhook-Forwarder"
        await forwarder.close()

    @pytest.mark.asyncio
    async def test_non_json_body_returned_as_text(self, directory, store):
        await directory.create_target("crm", "https://crm.example.com")
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(404, text="not here")
        ))
        response = await WebhookForwarder(directory, store, client=client).forward_get_request("/x")

        assert response.status_code == 404
        assert response.data == "not here"

    @pytest.mark.asyncio
    async def test_no_active_target(self, directory, store):
        with pytest.raises(NoActiveTargetError):
            await WebhookForwarder(directory, store).forward_get_request("/status")

    @pytest.mark.asyncio
    async def test_upstream_error_propagates(self, directory, store):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        await directory.create_target("crm", "https://crm.example.com")
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(httpx.HTTPError):
            await WebhookForwarder(directory, store, client=client).forward_get_request("/status")


class TestMessageIngestion:
    @pytest.fixture
    def messages(self, clock):
        return InMemoryWorkItemStore(queue="message", clock=clock)

    @pytest.mark.asyncio
    async def test_enqueue_outgoing(self, messages):
        handler = MessageIngestionHandler(messages)
        item = await handler.enqueue_message("+5511999998888", "Olá", contact_name="Maria")

        assert item.target_ref is None
        payload = ChatMessagePayload.model_validate(item.payload)
        assert payload.phone_number == "+5511999998888"
        assert payload.message_type == ChatMessageType.OUTGOING
        assert payload.contact_name == "Maria"

    @pytest.mark.asyncio
    async def test_enqueue_note_type(self, messages):
        item = await MessageIngestionHandler(messages).enqueue_message("5511999998888", "x", "note")
        assert item.payload["message_type"] == "note"

    @pytest.mark.asyncio
    async def test_unknown_type_defaults_to_outgoing(self, messages):
        item = await MessageIngestionHandler(messages).enqueue_message("5511999998888", "x", "broadcast")
        assert item.payload["message_type"] == "outgoing"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone", ["", "abc", "+0123456", "12345678901234567", "+55 11 99999"])
    async def test_invalid_phone_rejected(self, messages, phone):
        with pytest.raises(InvalidMessageError):
            await MessageIngestionHandler(messages).enqueue_message(phone, "hi")
        assert await messages.fetch_due(10) == []

    @pytest.mark.asyncio
    async def test_empty_content_rejected(self, messages):
        with pytest.raises(InvalidMessageError):
            await MessageIngestionHandler(messages).enqueue_message("+5511999998888", "")

    @pytest.mark.asyncio
    async def test_enqueue_note_serializes_params(self, messages):
        item = await MessageIngestionHandler(messages).enqueue_note(
            "5511999998888", "Template sent",
            content_type="text",
            template_params={"name": "welcome"},
            processed_params='{"1": "Maria"}',
        )

        payload = ChatMessagePayload.model_validate(item.payload)
        assert payload.is_private
        assert json.loads(payload.template_params) == {"name": "welcome"}
        assert payload.processed_params == '{"1": "Maria"}'
        assert payload.content_type == "text"

    @pytest.mark.asyncio
    async def test_enqueue_note_requires_digits(self, messages):
        with pytest.raises(InvalidMessageError):
            await MessageIngestionHandler(messages).enqueue_note("55-11-9999", "x")
