"""Decide whether the automated agent answers a conversation.

The event path (:meth:`ResponseArbiter.on_inbound`) and the periodic sweep
(:meth:`ResponseArbiter.evaluate_conversation`) share one guard: a customer
message is answered at most once, and never after a human replied to it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .. import notifications
from ..conversations import schemas
from ..conversations.models import ConversationMode
from ..conversations.repository import ChatRepository
from ..gateway.messenger import SENDER_AI, OutboundMessenger
from ..tickets.templates import render_template, template_variables
from .completion import CompletionClient, CompletionError
from .prompts import HISTORY_LIMIT, PromptBuilder, history_messages

logger = logging.getLogger(__name__)

ALL_WEEKDAYS = frozenset(range(7))


class ArbiterOutcome(str, Enum):
    HUMAN_MODE = "human_mode"
    DISABLED = "disabled"
    ESCALATED = "escalated"
    NO_CUSTOMER_MESSAGE = "no_customer_message"
    HUMAN_REPLIED = "human_replied"
    ALREADY_REPLIED = "already_replied"
    WAITING = "waiting"
    OUT_OF_HOURS = "out_of_hours"
    NO_COMPLETION_CLIENT = "no_completion_client"
    FAILED = "failed"
    REPLIED = "replied"


def matched_keyword(content: str | None, keywords: list[str]) -> str | None:
    """Return the first escalation keyword contained in ``content``."""

    lowered = (content or "").lower()
    for keyword in keywords:
        if keyword and keyword.strip().lower() in lowered:
            return keyword
    return None


def within_working_hours(config: schemas.AIAgentConfig, now: datetime) -> bool:
    """Check ``now`` against the configured local window and weekdays.

    Weekdays count from 0 = Sunday; an empty list means every day. A window
    whose end precedes its start wraps past midnight.
    """

    try:
        tz = ZoneInfo(config.working_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s; using UTC", config.working_timezone)
        tz = timezone.utc
    local = now.astimezone(tz)
    weekday = (local.weekday() + 1) % 7
    days = {int(day) for day in config.working_days} if config.working_days else ALL_WEEKDAYS
    if weekday not in days:
        return False
    current = local.strftime("%H:%M")
    start, end = config.working_hours_start, config.working_hours_end
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


class ResponseArbiter:
    """Runs the ai/human/hybrid policy and sends automated replies."""

    def __init__(
        self,
        repository: ChatRepository,
        messenger: OutboundMessenger,
        realtime: notifications.RealtimeNotifier,
        webhooks: notifications.WebhookNotifier,
        completion: CompletionClient | None,
        *,
        prompts: PromptBuilder | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._messenger = messenger
        self._realtime = realtime
        self._webhooks = webhooks
        self._completion = completion
        self._prompts = prompts or PromptBuilder()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Entry points

    def on_inbound(
        self, conversation: schemas.Conversation, message: schemas.Message
    ) -> ArbiterOutcome:
        """Evaluate a freshly stored customer message."""

        current = self._repository.get_conversation(conversation.id) or conversation
        return self._evaluate(current, message)

    def evaluate_conversation(self, conversation: schemas.Conversation) -> ArbiterOutcome:
        """Re-evaluate a conversation against its latest customer message."""

        customer = self._repository.latest_customer_message(conversation.id)
        if customer is None:
            return ArbiterOutcome.NO_CUSTOMER_MESSAGE
        return self._evaluate(conversation, customer)

    # ------------------------------------------------------------------
    # Policy

    def _evaluate(
        self, conversation: schemas.Conversation, trigger: schemas.Message
    ) -> ArbiterOutcome:
        mode = conversation.conversation_mode
        if mode == ConversationMode.HUMAN:
            return ArbiterOutcome.HUMAN_MODE

        config = (
            self._repository.get_ai_config(conversation.sector_id)
            if conversation.sector_id is not None
            else None
        )
        if config is None or not config.is_enabled or not config.auto_reply_enabled:
            return ArbiterOutcome.DISABLED

        keyword = matched_keyword(trigger.content, config.escalation_keywords)
        if keyword:
            self._escalate(conversation, trigger, keyword)
            return ArbiterOutcome.ESCALATED

        if mode == ConversationMode.HYBRID:
            outcome = self._hybrid_guard(conversation, config)
            if outcome is not None:
                return outcome

        if not within_working_hours(config, self._clock()):
            return self._out_of_hours(conversation, config)

        return self._reply(conversation, config, trigger)

    def _hybrid_guard(
        self, conversation: schemas.Conversation, config: schemas.AIAgentConfig
    ) -> ArbiterOutcome | None:
        customer = self._repository.latest_customer_message(conversation.id)
        if customer is None:
            return ArbiterOutcome.NO_CUSTOMER_MESSAGE
        answered = self._answered(conversation, customer)
        if answered is not None:
            return answered
        elapsed = self._clock() - customer.timestamp
        if elapsed < timedelta(minutes=config.hybrid_timeout_minutes):
            logger.debug(
                "Hybrid conversation %s: last customer message %.1f min ago, waiting %s min",
                conversation.id,
                elapsed.total_seconds() / 60,
                config.hybrid_timeout_minutes,
            )
            return ArbiterOutcome.WAITING
        logger.info(
            "Hybrid conversation %s timed out after %.1f min; automated reply allowed",
            conversation.id,
            elapsed.total_seconds() / 60,
        )
        return None

    def _answered(
        self, conversation: schemas.Conversation, customer: schemas.Message
    ) -> ArbiterOutcome | None:
        """Shared "already handled" check for both entry points."""

        if self._repository.has_outbound_after(
            conversation.id, customer.timestamp, automated=False
        ):
            return ArbiterOutcome.HUMAN_REPLIED
        if self._repository.has_outbound_after(
            conversation.id, customer.timestamp, automated=True
        ):
            return ArbiterOutcome.ALREADY_REPLIED
        return None

    def _escalate(
        self, conversation: schemas.Conversation, trigger: schemas.Message, keyword: str
    ) -> None:
        self._repository.set_conversation_mode(conversation.id, ConversationMode.HUMAN)
        logger.info(
            "Escalation keyword %r on conversation %s; switched to human mode",
            keyword,
            conversation.id,
        )
        notifications.publish_quietly(
            self._realtime,
            notifications.CONVERSATION_UPDATED,
            {"conversation_id": conversation.id, "conversation_mode": ConversationMode.HUMAN.value},
        )
        notifications.dispatch_quietly(
            self._webhooks,
            notifications.AI_ESCALATION,
            {
                "conversation_id": conversation.id,
                "message_id": trigger.message_id,
                "keyword": keyword,
                "previous_mode": conversation.conversation_mode.value,
            },
        )

    def _out_of_hours(
        self, conversation: schemas.Conversation, config: schemas.AIAgentConfig
    ) -> ArbiterOutcome:
        if not config.out_of_hours_message:
            logger.debug("Conversation %s outside working hours; staying silent", conversation.id)
            return ArbiterOutcome.OUT_OF_HOURS
        contact = self._repository.get_contact(conversation.contact_id)
        text = render_template(
            config.out_of_hours_message,
            template_variables(
                customer_name=contact.name if contact else None,
                customer_phone=contact.phone_number if contact else None,
                agent_name=config.agent_name,
                now=self._clock(),
                tz_name=config.working_timezone,
            ),
        )
        try:
            self._messenger.send_text(conversation, text, sender=SENDER_AI)
        except Exception:
            logger.exception("Out-of-hours message failed for conversation %s", conversation.id)
            return ArbiterOutcome.FAILED
        logger.info("Sent out-of-hours message on conversation %s", conversation.id)
        return ArbiterOutcome.OUT_OF_HOURS

    # ------------------------------------------------------------------
    # Generation

    def _reply(
        self,
        conversation: schemas.Conversation,
        config: schemas.AIAgentConfig,
        trigger: schemas.Message,
    ) -> ArbiterOutcome:
        if self._completion is None:
            logger.warning(
                "Automated reply skipped for conversation %s: no completion provider",
                conversation.id,
            )
            return ArbiterOutcome.NO_COMPLETION_CLIENT

        history = history_messages(
            self._repository.list_recent_messages(conversation.id, HISTORY_LIMIT)
        )
        system_prompt = self._prompts.system_prompt(config)
        try:
            text = self._completion.complete(
                model=config.default_model,
                messages=[{"role": "system", "content": system_prompt}, *history],
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            )
        except CompletionError as exc:
            logger.warning("Completion failed for conversation %s: %s", conversation.id, exc)
            return ArbiterOutcome.FAILED

        if config.response_delay_seconds > 0:
            self._sleep(config.response_delay_seconds)

        if conversation.conversation_mode == ConversationMode.HYBRID:
            customer = self._repository.latest_customer_message(conversation.id) or trigger
            answered = self._answered(conversation, customer)
            if answered is not None:
                logger.info(
                    "Dropping automated reply for conversation %s: %s during generation",
                    conversation.id,
                    answered.value,
                )
                return answered

        try:
            sent = self._messenger.send_text(
                conversation, f"_{config.agent_name}_\n\n{text}", sender=SENDER_AI
            )
        except Exception:
            logger.exception("Automated reply send failed for conversation %s", conversation.id)
            return ArbiterOutcome.FAILED

        self._repository.record_ai_log(
            config_id=config.id,
            conversation_id=conversation.id,
            message_content=trigger.content,
            response_content=text,
            model_used=config.default_model,
            prompt_context={
                "system_prompt": system_prompt,
                "history_length": len(history),
                "trigger_message_id": trigger.message_id,
                "mode": conversation.conversation_mode.value,
                "sent_message_id": sent.message_id if sent else None,
            },
        )
        logger.info("Automated reply sent on conversation %s", conversation.id)
        return ArbiterOutcome.REPLIED
