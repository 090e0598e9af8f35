"""
FastAPI Application — webhook ingress, message send API, queue workers.

Provides:
- Meta webhook verification and intake (fan-out to configured targets)
- Pass-through GET forwarding to the first active target
- Token-protected API to queue Chatwoot messages and notes
- Queue status endpoints
- Lifespan management for the webhook and message queue workers
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional, Union

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from backend.forwarder import (
    InvalidMessageError, MessageIngestionHandler, NoActiveTargetError, WebhookForwarder,
)
from channels.chatwoot_adapter import ChatwootClient, ChatwootSink
from channels.webhook_sink import HttpWebhookSink
from config.settings import Settings, get_settings
from database.session import close_db, init_db
from database.store_base import BaseTargetDirectory, BaseWorkItemStore
from database.store_factory import create_target_directory, create_work_item_store
from job_queue.directory_cache import RoutingDirectoryCache, StaticTargetResolver
from job_queue.retry import RetrySchedule
from job_queue.worker import QueueWorker
from models.schemas import ChatMessagePayload, RoutingTarget, WorkItem, WorkItemStatus

logger = structlog.get_logger()

_HOP_BY_HOP = {"host", "content-length", "connection", "transfer-encoding", "keep-alive"}
# The relayed body is re-encoded, so the upstream framing headers no longer apply.
_UPSTREAM_DROPPED = _HOP_BY_HOP | {"content-encoding", "content-type"}


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class RelayServices:
    settings: Settings
    directory: BaseTargetDirectory
    webhook_store: BaseWorkItemStore
    message_store: BaseWorkItemStore
    forwarder: WebhookForwarder
    messages: MessageIngestionHandler
    workers: list[QueueWorker] = field(default_factory=list)


def build_services(settings: Optional[Settings] = None) -> RelayServices:
    """Wire stores, sinks and workers from configuration."""
    settings = settings or get_settings()
    store_config = {"store_backend": settings.database.store_backend}

    directory = create_target_directory(store_config)
    webhook_store = create_work_item_store("webhook", store_config)
    message_store = create_work_item_store("message", store_config)

    workers: list[QueueWorker] = []

    wq = settings.webhook_queue
    if wq.enabled:
        workers.append(QueueWorker(
            name="webhook",
            store=webhook_store,
            resolver=RoutingDirectoryCache(
                directory, refresh_interval_s=settings.forwarder.directory_refresh_seconds,
            ),
            sink=HttpWebhookSink(
                forwarded_by=settings.forwarder.forwarded_by,
                timeout_s=wq.delivery_timeout_seconds,
            ),
            schedule=RetrySchedule.from_seconds(wq.retry_schedule_seconds),
            batch_size=wq.batch_size,
            poll_interval_s=wq.poll_interval_seconds,
            delivery_timeout_s=wq.delivery_timeout_seconds,
        ))

    mq = settings.message_queue
    if mq.enabled:
        if not settings.chatwoot.base_url:
            logger.warning("chatwoot_base_url_missing")
        chatwoot = RoutingTarget(
            id=0, name="chatwoot",
            endpoint=settings.chatwoot.base_url,
        )
        workers.append(QueueWorker(
            name="message",
            store=message_store,
            resolver=StaticTargetResolver(chatwoot),
            sink=ChatwootSink(ChatwootClient(settings.chatwoot, timeout_s=mq.delivery_timeout_seconds)),
            schedule=RetrySchedule.from_seconds(mq.retry_schedule_seconds),
            batch_size=mq.batch_size,
            poll_interval_s=mq.poll_interval_seconds,
            delivery_timeout_s=mq.delivery_timeout_seconds,
        ))

    return RelayServices(
        settings=settings,
        directory=directory,
        webhook_store=webhook_store,
        message_store=message_store,
        forwarder=WebhookForwarder(
            directory, webhook_store,
            forwarded_by=settings.forwarder.forwarded_by,
            get_timeout_s=settings.forwarder.get_timeout_seconds,
        ),
        messages=MessageIngestionHandler(message_store),
        workers=workers,
    )


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class SendMessageRequest(BaseModel):
    phone_number: str = ""
    content: str = ""
    message_type: Optional[str] = None
    contact_name: Optional[str] = None


class SendNoteRequest(BaseModel):
    to: Union[str, int] = ""
    content: str = ""
    content_type: Optional[str] = None
    template_params: Any = None
    processed_params: Any = None
    contact_name: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Dependencies
# ──────────────────────────────────────────────────────────────

def get_services(request: Request) -> RelayServices:
    return request.app.state.services


def require_api_token(request: Request, services: RelayServices = Depends(get_services)) -> None:
    """Accept the token from X-API-Token, X-API-Key, Authorization: Bearer or ?token=."""
    expected = services.settings.security.verify_token
    if not expected:
        logger.critical("verify_token_not_configured")
        raise HTTPException(500, "Server configuration error")

    auth = request.headers.get("authorization", "")
    token = (
        request.headers.get("x-api-token")
        or request.headers.get("x-api-key")
        or (auth[len("Bearer "):] if auth.startswith("Bearer ") else auth)
        or request.query_params.get("token")
    )
    if not token:
        raise HTTPException(
            401,
            "API token required. Provide token in X-API-Token header or Authorization: Bearer <token>",
        )
    if token != expected:
        raise HTTPException(403, "Invalid API token")


def _message_summary(item: WorkItem) -> dict[str, Any]:
    message = ChatMessagePayload.model_validate(item.payload)
    return {
        "id": item.id,
        "phone_number": message.phone_number,
        "contact_name": message.contact_name,
        "content": message.content,
        "message_type": message.message_type.value,
        "status": item.status.value,
        "created_at": item.created_at.isoformat(),
    }


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(services: Optional[RelayServices] = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services.settings.database.store_backend == "sql":
            await init_db()
        for worker in services.workers:
            await worker.start()
        logger.info("webhook_relay_started",
                    workers=[w.name for w in services.workers],
                    store_backend=services.settings.database.store_backend)
        yield

        for worker in services.workers:
            await worker.stop()
            await worker.sink.close()
        await services.forwarder.close()
        if services.settings.database.store_backend == "sql":
            await close_db()
        logger.info("webhook_relay_stopped")

    app = FastAPI(
        title="Webhook Relay",
        description="Durable webhook fan-out and chat message delivery",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(svc: RelayServices = Depends(get_services)):
        return {
            "status": "healthy",
            "workers": {w.name: w.running for w in svc.workers},
            "queues": {
                "webhook": await svc.webhook_store.counts_by_status(),
                "message": await svc.message_store.counts_by_status(),
            },
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS (Meta)
    # ══════════════════════════════════════════════════════════

    @app.get("/webhook")
    async def webhook_verify(request: Request, svc: RelayServices = Depends(get_services)):
        mode = request.query_params.get("hub.mode")
        token = request.query_params.get("hub.verify_token")
        challenge = request.query_params.get("hub.challenge", "")

        if not (mode and token):
            raise HTTPException(400, "Missing hub.mode or hub.verify_token")
        expected = svc.settings.security.verify_token
        if mode == "subscribe" and expected and token == expected:
            logger.info("webhook_verified")
            return PlainTextResponse(challenge)
        raise HTTPException(403, "Verification failed")

    @app.post("/webhook")
    async def webhook_receive(
        request: Request,
        background_tasks: BackgroundTasks,
        svc: RelayServices = Depends(get_services),
    ):
        """Acknowledge immediately; fan-out happens after the response is sent."""
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(400, "Body must be JSON")
        background_tasks.add_task(_forward_webhook, svc.forwarder, payload)
        return PlainTextResponse("EVENT_RECEIVED")

    @app.get("/forward/{path:path}")
    async def forward_get(path: str, request: Request, svc: RelayServices = Depends(get_services)):
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP}
        try:
            forwarded = await svc.forwarder.forward_get_request(
                "/" + path, dict(request.query_params), headers,
            )
        except NoActiveTargetError as e:
            raise HTTPException(503, str(e))
        except httpx.HTTPError as e:
            raise HTTPException(502, f"Upstream request failed: {e}")

        relayed = {k: v for k, v in forwarded.headers.items() if k.lower() not in _UPSTREAM_DROPPED}
        if isinstance(forwarded.data, str):
            return PlainTextResponse(forwarded.data, status_code=forwarded.status_code, headers=relayed)
        return JSONResponse(content=forwarded.data, status_code=forwarded.status_code, headers=relayed)

    # ══════════════════════════════════════════════════════════
    #  CHATWOOT MESSAGES
    # ══════════════════════════════════════════════════════════

    @app.post("/api/chatwoot/send", status_code=201, dependencies=[Depends(require_api_token)])
    async def chatwoot_send(req: SendMessageRequest, svc: RelayServices = Depends(get_services)):
        try:
            item = await svc.messages.enqueue_message(
                req.phone_number, req.content, req.message_type, req.contact_name,
            )
        except InvalidMessageError as e:
            raise HTTPException(400, str(e))
        return {"success": True, "message": "Message queued successfully", "data": _message_summary(item)}

    @app.post("/api/chatwoot/send-note", status_code=201, dependencies=[Depends(require_api_token)])
    async def chatwoot_send_note(req: SendNoteRequest, svc: RelayServices = Depends(get_services)):
        try:
            item = await svc.messages.enqueue_note(
                str(req.to), req.content,
                content_type=req.content_type,
                template_params=req.template_params,
                processed_params=req.processed_params,
                contact_name=req.contact_name,
            )
        except InvalidMessageError as e:
            raise HTTPException(400, str(e))
        return {"success": True, "message": "Note queued successfully", "data": _message_summary(item)}

    @app.get("/api/chatwoot/messages", dependencies=[Depends(require_api_token)])
    async def chatwoot_messages(
        limit: int = Query(20, ge=1, le=500),
        status: Optional[WorkItemStatus] = None,
        svc: RelayServices = Depends(get_services),
    ):
        items = await svc.message_store.list_recent(limit=limit, status=status)
        return [item.model_dump(mode="json") for item in items]

    @app.get("/api/chatwoot/status", dependencies=[Depends(require_api_token)])
    async def chatwoot_status(svc: RelayServices = Depends(get_services)):
        return await svc.message_store.counts_by_status()

    @app.get("/api/jobs/status", dependencies=[Depends(require_api_token)])
    async def jobs_status(svc: RelayServices = Depends(get_services)):
        return await svc.webhook_store.counts_by_status()

    return app


async def _forward_webhook(forwarder: WebhookForwarder, payload: Any) -> None:
    try:
        await forwarder.forward_webhook(payload)
    except Exception as e:
        logger.error("webhook_forward_failed", error=str(e))


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=3005)
