"""Per-message orchestration, built as a LangGraph state graph.

Graph::

    screen ─▶ register ─▶ load_context ─▶ classify ─┬─▶ deflect ─────────────▶ END
                                                    ├─▶ scheduling ─▶ generate ─▶ act ─▶ deliver ─▶ END
                                                    └─▶ generate ─▶ ...

Every node may set ``result``; once it is set the run ends at the next edge.

* **screen**: silent block list, abuse block list, spam-burst counter.
* **register**: upsert the user, short-circuit attachments, persist the turn.
* **load_context**: bounded history (recent + flagged turns).
* **classify**: regex context tags; injections go to **deflect**, which
  replies with a fixed redirect (or auto-blocks repeat offenders) without
  ever calling the model.
* **scheduling**: open slots and the user's appointments, for appointment
  conversations only.
* **generate**: assemble the system prompt and call the model.
* **act**: booking side effects, interaction log, admin notification.
* **deliver**: leak guard, send, persist the assistant turn.

Any exception escaping a node is caught in :meth:`MessagePipeline.process`,
which sends one apology and reports a ``failed`` result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from lumo.classifier import Classification, classify
from lumo.config import (
    APPOINTMENTS_ENABLED,
    DATABASE_URL,
    INJECTION_BLOCK_THRESHOLD,
    INJECTION_WINDOW_SECONDS,
    OWNER_NAME,
    SPAM_MAX_MESSAGES,
    SPAM_WINDOW_SECONDS,
)
from lumo.guard import ResponseGuard
from lumo.models import (
    BlockEntry,
    BlockKind,
    InteractionLog,
    Message,
    Role,
    Sentiment,
    User,
)
from lumo.prompts import assemble_prompt
from lumo.services.abuse import WindowCounter
from lumo.services.conversation import ConversationStore
from lumo.services.delivery import DeliveryClient
from lumo.services.llm_gateway import (
    AssistantReply,
    LLMGateway,
    format_slot_time,
    sanitize_message,
)
from lumo.services.metrics import metrics
from lumo.services.scheduler import AppointmentScheduler
from lumo.storage import build_store
from lumo.storage.base import Store

logger = logging.getLogger(__name__)

# ── Fixed replies ───────────────────────────────────────────────────
DEFLECTION_REPLY = "I'd be happy to help you! 😊 What can I do for you today?"
APOLOGY_REPLY = "Oops, something went wrong on my end! 😔 Please try again in a moment."


class Channel(StrEnum):
    """``whatsapp`` replies go out through delivery; ``web`` replies are returned."""

    WHATSAPP = "whatsapp"
    WEB = "web"


@dataclass
class InboundMessage:
    identity: str
    text: str = ""
    display_name: str | None = None
    plain_phone: str | None = None
    email: str | None = None
    message_id: str | None = None
    media_mimetype: str | None = None
    channel: Channel = Channel.WHATSAPP


@dataclass
class PipelineResult:
    success: bool
    action: str
    reply: str | None = None
    blocked: bool = False
    error: str | None = None


class PipelineState(TypedDict, total=False):
    inbound: InboundMessage
    user: User | None
    message_db_id: int | None
    history: list[Message]
    classification: Classification | None
    scheduling: dict[str, Any]
    reply: AssistantReply | None
    outgoing: str | None
    result: PipelineResult | None


class MessagePipeline:
    """Runs one inbound message through screening, generation and delivery."""

    def __init__(
        self,
        store: Store,
        *,
        delivery: DeliveryClient,
        gateway: LLMGateway | None = None,
        conversation: ConversationStore | None = None,
        scheduler: AppointmentScheduler | None = None,
        guard: ResponseGuard | None = None,
        spam_counter: WindowCounter | None = None,
        injection_counter: WindowCounter | None = None,
    ) -> None:
        self.store = store
        self.delivery = delivery
        self.gateway = gateway or LLMGateway()
        self.conversation = conversation or ConversationStore(store)
        self.scheduler = scheduler
        self.guard = guard or ResponseGuard()
        self.spam_counter = spam_counter or WindowCounter(SPAM_MAX_MESSAGES, SPAM_WINDOW_SECONDS)
        # the attempt that reaches the threshold is the one that blocks
        self.injection_counter = injection_counter or WindowCounter(
            max(INJECTION_BLOCK_THRESHOLD - 1, 0), INJECTION_WINDOW_SECONDS,
        )
        self._graph = self._build_graph()

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(PipelineState)

        graph.add_node("screen", self._screen)
        graph.add_node("register", self._register)
        graph.add_node("load_context", self._load_context)
        graph.add_node("classify", self._classify)
        graph.add_node("deflect", self._deflect)
        graph.add_node("scheduling", self._scheduling)
        graph.add_node("generate", self._generate)
        graph.add_node("act", self._act)
        graph.add_node("deliver", self._deliver)

        graph.set_entry_point("screen")
        for node, nxt in (
            ("screen", "register"),
            ("register", "load_context"),
            ("load_context", "classify"),
            ("scheduling", "generate"),
            ("generate", "act"),
            ("act", "deliver"),
        ):
            graph.add_conditional_edges(node, _halt_or(nxt), {nxt: nxt, END: END})
        graph.add_conditional_edges(
            "classify",
            self._route_after_classify,
            {"deflect": "deflect", "scheduling": "scheduling", "generate": "generate", END: END},
        )
        graph.add_edge("deflect", END)
        graph.add_edge("deliver", END)

        return graph.compile()

    def _route_after_classify(self, state: PipelineState) -> str:
        if state.get("result") is not None:
            return END
        classification = state["classification"]
        if classification.is_injection:
            return "deflect"
        if self.scheduler is not None and "appointment" in classification.tags:
            return "scheduling"
        return "generate"

    # ── Entry point ──────────────────────────────────────────────────

    async def process(self, inbound: InboundMessage) -> PipelineResult:
        """Handle one message end to end.  Never raises."""
        logger.info(
            "Inbound from %s (%s): %.100s",
            inbound.display_name or "unknown", inbound.identity, inbound.text or "[no text]",
        )
        initial: PipelineState = {
            "inbound": inbound,
            "user": None,
            "message_db_id": None,
            "history": [],
            "classification": None,
            "scheduling": {},
            "reply": None,
            "outgoing": None,
            "result": None,
        }
        try:
            final = await self._graph.ainvoke(initial)
        except Exception as exc:
            logger.exception("Pipeline failed for %s", inbound.identity)
            metrics.record_event("failed")
            if inbound.channel == Channel.WHATSAPP:
                await self.delivery.send(inbound.identity, APOLOGY_REPLY)
            return PipelineResult(False, "failed", reply=APOLOGY_REPLY, error=type(exc).__name__)

        result = final["result"]
        metrics.record_event(result.action)
        logger.info("Finished %s: %s", inbound.identity, result.action)
        return result

    # ── Nodes ────────────────────────────────────────────────────────

    async def _screen(self, state: PipelineState) -> dict:
        inbound = state["inbound"]
        identity = inbound.identity

        if await self._is_blocked(identity, BlockKind.SILENT):
            logger.info("Silently ignoring blocked identity %s", identity)
            return {"result": PipelineResult(True, "silent_block", blocked=True)}

        if await self._is_blocked(identity, BlockKind.ABUSE):
            logger.info("Ignoring message from abuse-blocked identity %s", identity)
            return {"result": PipelineResult(True, "spam_block", blocked=True)}

        if not self.spam_counter.check_and_increment(identity):
            count = self.spam_counter.count(identity)
            logger.warning("Identity %s exceeded the spam threshold (%d messages)", identity, count)
            await self._block(identity, f"Spam: {count} messages within {SPAM_WINDOW_SECONDS:g}s")
            return {"result": PipelineResult(True, "spam_threshold", blocked=True)}

        return {}

    async def _register(self, state: PipelineState) -> dict:
        inbound = state["inbound"]
        user = await self.store.upsert_user(
            inbound.identity,
            display_name=inbound.display_name,
            plain_phone=inbound.plain_phone,
            email=inbound.email,
        )

        if inbound.media_mimetype:
            return {"user": user, "result": await self._handle_attachment(inbound, user)}

        message_db_id = await self.conversation.append(
            user.identity, Role.USER, inbound.text, message_id=inbound.message_id,
        )
        return {"user": user, "message_db_id": message_db_id}

    async def _load_context(self, state: PipelineState) -> dict:
        exclude = () if state.get("message_db_id") is None else (state["message_db_id"],)
        history = await self.conversation.get_context(state["user"].identity, exclude_ids=exclude)
        return {"history": history}

    async def _classify(self, state: PipelineState) -> dict:
        inbound = state["inbound"]
        classification = classify(inbound.text, state["history"])
        logger.debug("Context tags for %s: %s", inbound.identity, ", ".join(classification.tags))
        return {"classification": classification}

    async def _deflect(self, state: PipelineState) -> dict:
        inbound, user = state["inbound"], state["user"]
        identity = inbound.identity
        allowed = self.injection_counter.check_and_increment(identity)
        attempts = self.injection_counter.count(identity)
        metrics.record_event("injection_attempt")
        logger.warning("Injection attempt #%d from %s", attempts, identity)

        if not allowed:
            await self._block(identity, f"Auto-blocked: {attempts} prompt injection attempts")
            await self._log_interaction(
                None,
                "security_block",
                Sentiment.NEGATIVE,
                {"identity": identity, "reason": "repeated_injection_attempts", "count": attempts},
            )
            await self.delivery.notify_admin(
                "🚨 AUTO-BLOCKED - Repeated Injection Attempts\n\n"
                f"{self._describe(inbound, user)}\n"
                f"Identity: {identity}\n\n"
                f"Message: {inbound.text[:300]}"
            )
            return {"result": PipelineResult(True, "blocked", blocked=True)}

        await self._send(inbound, DEFLECTION_REPLY)
        await self.conversation.append(identity, Role.ASSISTANT, DEFLECTION_REPLY)
        await self._log_interaction(
            identity,
            "security_alert",
            Sentiment.NEGATIVE,
            {"reason": "prompt_injection_attempt", "message": inbound.text[:200]},
        )
        await self.delivery.notify_admin(
            f"🚨 SECURITY ALERT - Prompt Injection Attempt #{attempts}\n\n"
            f"{self._describe(inbound, user)}\n\n"
            f"Message: {inbound.text[:300]}"
        )
        return {"result": PipelineResult(True, "security_alert", reply=DEFLECTION_REPLY)}

    async def _scheduling(self, state: PipelineState) -> dict:
        identity = state["inbound"].identity
        slots = await self.scheduler.list_available()
        appointments = await self.scheduler.list_for_user(identity)
        logger.debug(
            "Scheduling context for %s: %d open, %d upcoming, %d past",
            identity, len(slots), len(appointments.upcoming), len(appointments.past),
        )
        return {
            "scheduling": {
                "slots": slots,
                "upcoming": appointments.upcoming,
                "past": appointments.past,
            }
        }

    async def _generate(self, state: PipelineState) -> dict:
        inbound, user = state["inbound"], state["user"]
        prompt = assemble_prompt(state["classification"].tags)
        reply = await self.gateway.generate(
            sanitize_message(inbound.text),
            state["history"],
            system_prompt=prompt,
            user_name=user.display_name or inbound.display_name,
            **state.get("scheduling", {}),
        )
        return {"reply": reply, "outgoing": reply.reply_text}

    async def _act(self, state: PipelineState) -> dict:
        inbound, user, reply = state["inbound"], state["user"], state["reply"]
        text = state["outgoing"]

        if self.scheduler is not None and reply.appointment_action is not None:
            text += await self._apply_appointment_action(inbound, user, reply)

        if reply.interaction_log is not None:
            log = reply.interaction_log
            await self._log_interaction(user.identity, log.type, Sentiment(log.sentiment), log.details)
        else:
            await self._log_interaction(
                user.identity,
                "chat",
                Sentiment.NEUTRAL,
                {"message_length": len(inbound.text), "response_length": len(text)},
            )

        if reply.notify_admin and reply.admin_text:
            await self.delivery.notify_admin(
                f"💬 Message from {inbound.display_name or user.identity}\n\n{reply.admin_text}"
            )

        return {"outgoing": text}

    async def _deliver(self, state: PipelineState) -> dict:
        inbound, user, reply = state["inbound"], state["user"], state["reply"]
        candidate = state["outgoing"]

        scan = self.guard.scan(candidate)
        image_url = reply.image_url
        if scan.leaked:
            metrics.record_event("leak_suppressed")
            image_url = None
            await self.delivery.notify_admin(
                "🚨 CRITICAL: Response Leak Prevented\n\n"
                f"User: {inbound.display_name or 'unknown'} ({inbound.identity})\n"
                f"Query: {inbound.text[:200]}\n\n"
                f"Suppressed: {candidate[:300]}"
            )

        await self._send(inbound, scan.text, image_url)
        await self.conversation.append(user.identity, Role.ASSISTANT, scan.text)
        return {"result": PipelineResult(True, "replied", reply=scan.text)}

    # ── Helpers ──────────────────────────────────────────────────────

    async def _handle_attachment(self, inbound: InboundMessage, user: User) -> PipelineResult:
        ack = f"Got your file! 📎 I'll make sure {OWNER_NAME} sees this."
        logger.info("Attachment (%s) from %s", inbound.media_mimetype, inbound.identity)
        await self._send(inbound, ack)
        await self.conversation.append(
            user.identity,
            Role.USER,
            inbound.text or "[Attachment]",
            metadata={"media_mimetype": inbound.media_mimetype},
            message_id=inbound.message_id,
        )
        await self.conversation.append(user.identity, Role.ASSISTANT, ack)
        await self.delivery.notify_admin(
            "📎 File Received\n\n"
            f"{self._describe(inbound, user)}\n"
            f"Type: {inbound.media_mimetype}\n"
            f"Message: {inbound.text or 'No text'}"
        )
        return PipelineResult(True, "attachment", reply=ack)

    async def _apply_appointment_action(
        self, inbound: InboundMessage, user: User, reply: AssistantReply,
    ) -> str:
        action = reply.appointment_action
        name = inbound.display_name or user.display_name

        if action.action == "book" and action.slot_id is not None:
            outcome = await self.scheduler.book(action.slot_id, user.identity, name, action.reason)
            if not outcome.success:
                return f"\n\n❌ {outcome.error}"
            when = format_slot_time(outcome.appointment.slot_datetime)
            await self.delivery.notify_admin(
                "📅 New Appointment!\n\n"
                f"{self._describe(inbound, user)}\n"
                f"Time: {when}\n"
                f"Reason: {action.reason or 'Not specified'}"
            )
            return f"\n\n✅ Booked for {when}"

        target = action.appointment_id if action.appointment_id is not None else action.slot_id
        if action.action == "cancel" and target is not None:
            outcome = await self.scheduler.cancel(target, user.identity)
            if not outcome.success:
                return f"\n\n❌ {outcome.error}"
            when = format_slot_time(outcome.appointment.slot_datetime)
            await self.delivery.notify_admin(
                "❌ Appointment Cancelled\n\n"
                f"{self._describe(inbound, user)}\n"
                f"Time: {when}"
            )
            return f"\n\n✅ Cancelled your appointment on {when}"

        return ""

    async def _send(self, inbound: InboundMessage, text: str, image_url: str | None = None) -> None:
        if inbound.channel == Channel.WEB:
            return
        if not await self.delivery.send(inbound.identity, text, image_url):
            logger.warning("Reply to %s was not delivered", inbound.identity)

    async def _is_blocked(self, identity: str, kind: BlockKind) -> bool:
        try:
            return await self.store.is_blocked(identity, kind)
        except Exception:
            logger.exception("Block-list lookup (%s) failed for %s", kind, identity)
            return False

    async def _block(self, identity: str, reason: str) -> None:
        metrics.record_event("auto_block")
        try:
            await self.store.add_block(BlockEntry(identity=identity, reason=reason, kind=BlockKind.ABUSE))
        except Exception:
            logger.exception("Failed to persist block for %s", identity)
        else:
            logger.warning("Blocked %s: %s", identity, reason)

    async def _log_interaction(
        self,
        user_id: str | None,
        action_type: str,
        sentiment: Sentiment,
        details: dict[str, Any],
    ) -> None:
        try:
            await self.store.add_interaction(
                InteractionLog(user_id=user_id, action_type=action_type, sentiment=sentiment, details=details)
            )
        except Exception:
            logger.exception("Failed to log %s interaction", action_type)

    @staticmethod
    def _describe(inbound: InboundMessage, user: User | None) -> str:
        name = inbound.display_name or (user.display_name if user else None) or "unknown"
        phone = inbound.plain_phone or (user.plain_phone if user else None) or "n/a"
        return f"User: {name}\nPhone: {phone}"


def _halt_or(next_node: str):
    """Edge condition: stop once a node has produced a result."""

    def route(state: PipelineState) -> str:
        return END if state.get("result") is not None else next_node

    return route


def create_message_pipeline() -> MessagePipeline:
    """Wire the default pipeline from configuration."""
    store = build_store(DATABASE_URL)
    scheduler = AppointmentScheduler(store) if APPOINTMENTS_ENABLED else None
    pipeline = MessagePipeline(
        store,
        delivery=DeliveryClient(),
        gateway=LLMGateway(),
        scheduler=scheduler,
    )
    logger.info(
        "Message pipeline ready (store=%s, appointments=%s, demo=%s)",
        type(store).__name__, scheduler is not None, pipeline.gateway.demo_mode,
    )
    return pipeline
