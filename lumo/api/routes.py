"""FastAPI route definitions for the Lumo assistant API."""

from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request

from lumo.api.schemas import (
    BlockRequest,
    BlockResponse,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    SlotCreateRequest,
    SlotOut,
    WebhookPayload,
    WebhookResponse,
)
from lumo.models import BlockEntry, BlockKind
from lumo.pipeline import APOLOGY_REPLY, Channel, InboundMessage, MessagePipeline

logger = logging.getLogger(__name__)

router = APIRouter()
webhook_router = APIRouter()
admin_router = APIRouter()

_INTERNAL_ERROR = "An internal error occurred. Please try again."


def _get_pipeline(request: Request) -> MessagePipeline:
    """Retrieve the message pipeline from app state.

    The pipeline is built once during the FastAPI lifespan (see
    ``server.py``); until then every endpoint that needs it answers 503.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return pipeline


# ── Dependencies ─────────────────────────────────────────────────────


def enforce_chat_rate_limit(request: Request) -> None:
    """Per-IP window limit, checked before the body is processed."""
    limiter = getattr(request.app.state, "chat_rate_limiter", None)
    if limiter is None:
        return
    client_ip = request.client.host if request.client else "unknown"
    if not limiter.check_and_increment(client_ip):
        logger.warning("Rate limit exceeded for %s", client_ip)
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please wait a moment before trying again.",
        )


def require_admin(
    request: Request,
    auth_key: str | None = Header(default=None, alias="Auth-Key"),
) -> None:
    """Reject the request unless ``Auth-Key`` matches the admin secret."""
    secret = getattr(request.app.state, "admin_secret", None)
    if not secret or not auth_key or not hmac.compare_digest(
        auth_key.encode("utf-8"), secret.encode("utf-8"),
    ):
        logger.warning("Rejected admin request to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")


# ── Public endpoints ─────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post(
    "/chat",
    response_model=ChatResponse,
    dependencies=[Depends(enforce_chat_rate_limit)],
)
async def chat(payload: ChatRequest, http_request: Request):
    """Send a message to the assistant and get the reply synchronously.

    Pipeline failures come back as a friendly apology with status 200 so a
    chat UI keeps working; nothing about the failure is exposed.
    """
    pipeline = _get_pipeline(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    inbound = InboundMessage(
        identity=payload.user_id,
        text=payload.message,
        display_name=payload.name,
        email=payload.email,
        channel=Channel.WEB,
    )
    try:
        result = await pipeline.process(inbound)
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR) from e

    if not result.success:
        logger.error("[%s] Pipeline failed: %s", request_id, result.error)
        return ChatResponse(message=APOLOGY_REPLY)

    return ChatResponse(message=result.reply or "")


@webhook_router.post("/webhook", response_model=WebhookResponse)
async def webhook(payload: WebhookPayload, request: Request, background_tasks: BackgroundTasks):
    """Acknowledge a gateway message immediately and process it afterwards."""
    if not payload.has_content:
        raise HTTPException(status_code=400, detail="Message must include text or media.")

    pipeline = _get_pipeline(request)
    inbound = InboundMessage(
        identity=payload.sender,
        text=(payload.text or "").strip(),
        display_name=payload.display_name,
        plain_phone=payload.plain_phone,
        message_id=payload.message_id,
        media_mimetype=payload.media_mimetype,
        channel=Channel.WHATSAPP,
    )
    background_tasks.add_task(pipeline.process, inbound)
    return WebhookResponse()


# ── Admin endpoints ──────────────────────────────────────────────────


@admin_router.post(
    "/slots",
    response_model=SlotOut,
    status_code=201,
    dependencies=[Depends(require_admin)],
)
async def create_slot(payload: SlotCreateRequest, request: Request):
    """Open a bookable appointment slot."""
    pipeline = _get_pipeline(request)
    if pipeline.scheduler is None:
        raise HTTPException(status_code=404, detail="Appointments are not enabled.")
    try:
        slot = await pipeline.scheduler.create_slot(payload.slot_datetime)
    except Exception as e:
        logger.exception("Failed to create slot")
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR) from e
    return SlotOut(
        id=slot.id,
        slot_datetime=slot.slot_datetime,
        status=slot.status.value,
        version=slot.version,
    )


@admin_router.post(
    "/block",
    response_model=BlockResponse,
    dependencies=[Depends(require_admin)],
)
async def block_identity(payload: BlockRequest, request: Request):
    """Add an identity to the silent block list."""
    pipeline = _get_pipeline(request)
    try:
        await pipeline.store.add_block(
            BlockEntry(identity=payload.identity, reason=payload.reason, kind=BlockKind.SILENT)
        )
    except Exception as e:
        logger.exception("Failed to block %s", payload.identity)
        raise HTTPException(status_code=500, detail=_INTERNAL_ERROR) from e
    logger.info("Silently blocked %s: %s", payload.identity, payload.reason)
    return BlockResponse(identity=payload.identity)
