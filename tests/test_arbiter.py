from datetime import datetime, timezone

import pytest
from conftest import BASE_TIME, text

from chatops import notifications
from chatops.agents.arbiter import (
    ArbiterOutcome,
    ResponseArbiter,
    matched_keyword,
    within_working_hours,
)
from chatops.agents.completion import CompletionError
from chatops.agents.prompts import PromptBuilder
from chatops.conversations import schemas
from chatops.conversations.models import ConversationMode


@pytest.fixture
def agent_world(world):
    instance_id = world.repo.get_instance_by_name("main").id
    sector = world.repo.add_sector(instance_id, "Atendimento", is_default=True)
    world.repo.add_ai_config(
        sector.id,
        agent_name="Ana",
        escalation_keywords=["atendente", "humano"],
        response_delay_seconds=1.5,
    )
    return world


def _config(world) -> schemas.AIAgentConfig:
    return next(iter(world.repo.ai_configs.values()))


def _receive(world, body="Qual o horário de vocês?", message_id="MSG1", mode=None):
    """Store an inbound message without running the arbiter, then evaluate it."""

    world.pipeline(arbiter=None).process(text(body, message_id=message_id))
    if mode is not None:
        world.repo.set_conversation_mode(1, mode)
    conversation = world.repo.get_conversation(1)
    message = world.repo.get_message_by_gateway_id(message_id)
    return conversation, message


def _outgoing_texts(world):
    return [item["text"] for item in world.gateway.sent]


def test_ai_mode_replies_with_agent_prefix(agent_world):
    conversation, message = _receive(agent_world)

    outcome = agent_world.arbiter().on_inbound(conversation, message)

    assert outcome == ArbiterOutcome.REPLIED
    assert _outgoing_texts(agent_world) == ["_Ana_\n\nOlá! Como posso ajudar?"]
    assert agent_world.sleeps == [1.5]

    [call] = agent_world.completion.calls
    assert call["model"] == "llama-3.3-70b-versatile"
    assert call["messages"][0]["role"] == "system"
    assert call["messages"][-1] == {"role": "user", "content": "Qual o horário de vocês?"}

    [log] = agent_world.repo.ai_logs
    assert log.message_content == "Qual o horário de vocês?"
    assert log.response_content == "Olá! Como posso ajudar?"
    assert log.prompt_context["trigger_message_id"] == "MSG1"
    assert agent_world.repo.get_message_by_gateway_id("OUT1").metadata["sender"] == "ai"


def test_pipeline_runs_arbiter_for_inbound_messages(agent_world):
    agent_world.pipeline().process(text("Oi"))

    assert _outgoing_texts(agent_world) == ["_Ana_\n\nOlá! Como posso ajudar?"]


def test_human_mode_never_replies(agent_world):
    conversation, message = _receive(agent_world, mode=ConversationMode.HUMAN)

    assert agent_world.arbiter().on_inbound(conversation, message) == ArbiterOutcome.HUMAN_MODE
    assert agent_world.completion.calls == []


def test_disabled_config_is_silent(agent_world):
    _config(agent_world).auto_reply_enabled = False
    conversation, message = _receive(agent_world)

    assert agent_world.arbiter().on_inbound(conversation, message) == ArbiterOutcome.DISABLED
    assert agent_world.gateway.sent == []


def test_conversation_without_sector_has_no_agent(world):
    conversation, message = _receive(world)

    assert world.arbiter().on_inbound(conversation, message) == ArbiterOutcome.DISABLED


def test_escalation_keyword_switches_to_human(agent_world):
    conversation, message = _receive(agent_world, body="Quero falar com um ATENDENTE")

    outcome = agent_world.arbiter().on_inbound(conversation, message)

    assert outcome == ArbiterOutcome.ESCALATED
    assert agent_world.repo.get_conversation(1).conversation_mode == ConversationMode.HUMAN
    assert agent_world.gateway.sent == []
    escalation = agent_world.notifier.webhooks[-1]
    assert escalation["event"] == notifications.AI_ESCALATION
    assert escalation["data"]["keyword"] == "atendente"
    assert escalation["data"]["previous_mode"] == "ai"


def test_hybrid_waits_for_timeout_then_replies(agent_world):
    conversation, message = _receive(agent_world, mode=ConversationMode.HYBRID)
    arbiter = agent_world.arbiter()

    assert arbiter.on_inbound(conversation, message) == ArbiterOutcome.WAITING

    agent_world.clock.advance(minutes=6)
    assert arbiter.evaluate_conversation(conversation) == ArbiterOutcome.REPLIED
    assert arbiter.evaluate_conversation(conversation) == ArbiterOutcome.ALREADY_REPLIED
    assert len(agent_world.gateway.sent) == 1


def test_hybrid_human_reply_blocks_automation(agent_world):
    conversation, _ = _receive(agent_world, mode=ConversationMode.HYBRID)
    agent_world.pipeline(arbiter=None).process(
        text("Já te respondo!", message_id="H1", from_me=True)
    )
    agent_world.clock.advance(minutes=10)

    outcome = agent_world.arbiter().evaluate_conversation(conversation)

    assert outcome == ArbiterOutcome.HUMAN_REPLIED
    assert agent_world.completion.calls == []


def test_hybrid_reply_dropped_when_human_answers_during_generation(agent_world):
    conversation, _ = _receive(agent_world, mode=ConversationMode.HYBRID)
    agent_world.clock.advance(minutes=6)
    agent_world.completion.on_complete = lambda: agent_world.pipeline(arbiter=None).process(
        text("Deixa comigo", message_id="H1", from_me=True)
    )

    outcome = agent_world.arbiter().evaluate_conversation(conversation)

    assert outcome == ArbiterOutcome.HUMAN_REPLIED
    assert agent_world.gateway.sent == []
    assert agent_world.repo.ai_logs == []


def test_out_of_hours_message_is_sent_once(agent_world):
    _config(agent_world).out_of_hours_message = "Estamos fechados, {{clienteNome}}."
    # 23:30 in São Paulo.
    agent_world.clock.now = datetime(2025, 3, 6, 2, 30, tzinfo=timezone.utc)
    conversation, message = _receive(agent_world, mode=ConversationMode.HYBRID)
    arbiter = agent_world.arbiter()
    agent_world.clock.advance(minutes=6)

    assert arbiter.evaluate_conversation(conversation) == ArbiterOutcome.OUT_OF_HOURS
    assert arbiter.evaluate_conversation(conversation) == ArbiterOutcome.ALREADY_REPLIED
    assert _outgoing_texts(agent_world) == ["Estamos fechados, Maria."]
    assert agent_world.completion.calls == []


def test_out_of_hours_without_message_stays_silent(agent_world):
    _config(agent_world).working_days = [1, 2, 4, 5]
    conversation, message = _receive(agent_world)

    assert agent_world.arbiter().on_inbound(conversation, message) == ArbiterOutcome.OUT_OF_HOURS
    assert agent_world.gateway.sent == []


def test_missing_completion_client_skips_reply(agent_world):
    agent_world.completion = None
    conversation, message = _receive(agent_world)

    outcome = agent_world.arbiter().on_inbound(conversation, message)

    assert outcome == ArbiterOutcome.NO_COMPLETION_CLIENT
    assert agent_world.gateway.sent == []


def test_completion_error_sends_nothing(agent_world):
    agent_world.completion.error = CompletionError("timeout")
    conversation, message = _receive(agent_world)

    assert agent_world.arbiter().on_inbound(conversation, message) == ArbiterOutcome.FAILED
    assert agent_world.gateway.sent == []
    assert agent_world.sleeps == []


def test_send_failure_is_reported_without_log(agent_world):
    agent_world.gateway.fail_sends = True
    conversation, message = _receive(agent_world)

    assert agent_world.arbiter().on_inbound(conversation, message) == ArbiterOutcome.FAILED
    assert agent_world.repo.ai_logs == []


def _hours(**fields):
    return schemas.AIAgentConfig(id=1, sector_id=1, **fields)


def test_working_hours_window_and_days():
    noon_wednesday = BASE_TIME

    assert within_working_hours(_hours(), noon_wednesday)
    assert within_working_hours(_hours(working_days=[3]), noon_wednesday)
    assert not within_working_hours(_hours(working_days=[0, 6]), noon_wednesday)
    assert not within_working_hours(
        _hours(working_hours_start="13:00", working_hours_end="18:00"), noon_wednesday
    )


def test_working_hours_window_wraps_midnight():
    config = _hours(working_hours_start="22:00", working_hours_end="06:00")

    assert within_working_hours(config, datetime(2025, 3, 6, 2, 30, tzinfo=timezone.utc))
    assert not within_working_hours(config, BASE_TIME)


def test_matched_keyword_is_case_insensitive():
    assert matched_keyword("Preciso de um HUMANO", ["atendente", "humano"]) == "humano"
    assert matched_keyword(None, ["humano"]) is None
    assert matched_keyword("tudo certo", ["", "ajuda"]) is None


def test_system_prompt_sections():
    prompt = PromptBuilder().system_prompt(
        _hours(
            agent_name="Ana",
            persona_description="Especialista em planos",
            tone_of_voice="friendly",
            business_context="Provedor de internet",
            faq_context="Suporte 24h",
        )
    )

    assert prompt.startswith("Você é Ana. Especialista em planos.")
    assert "Tom de voz: amigável e acolhedor" in prompt
    assert "Contexto do negócio: Provedor de internet" in prompt
    assert "FAQ: Suporte 24h" in prompt
    assert "- Seja educado e simpático" in prompt


class _BrokenRealtime:
    def publish(self, event, payload):
        raise RuntimeError("socket hub offline")


def test_escalation_webhook_survives_realtime_failure(agent_world):
    conversation, message = _receive(agent_world, body="quero um humano")
    arbiter = ResponseArbiter(
        agent_world.repo,
        agent_world.messenger(),
        _BrokenRealtime(),
        agent_world.notifier,
        agent_world.completion,
        clock=agent_world.clock,
        sleep=agent_world.sleeps.append,
    )

    assert arbiter.on_inbound(conversation, message) == ArbiterOutcome.ESCALATED
    assert agent_world.notifier.webhook_events()[-1] == notifications.AI_ESCALATION
