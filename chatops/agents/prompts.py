"""Instruction block and dialogue history for automated replies."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from ..conversations import schemas

HISTORY_LIMIT = 20
EMPTY_CONTENT = "[mídia]"


class PromptBuilder:
    """Compose the system prompt from the sector's agent configuration."""

    _TONES: Mapping[str, str] = {
        "professional": "profissional e cortês",
        "friendly": "amigável e acolhedor",
        "casual": "casual e descontraído",
    }
    _RULES = (
        "REGRAS IMPORTANTES:\n"
        "- Responda de forma concisa e útil\n"
        "- Use português do Brasil\n"
        "- Seja educado e {manner}\n"
        "- Se não souber algo, ofereça transferir para um atendente humano\n"
        "- Não invente informações que não estão no contexto fornecido"
    )

    def __init__(self, tones: Mapping[str, str] | None = None):
        self._tones = dict(self._TONES)
        if tones:
            self._tones.update(tones)

    def tone_description(self, tone: str | None) -> str:
        return self._tones.get((tone or "").lower(), self._tones["casual"])

    def system_prompt(self, config: schemas.AIAgentConfig) -> str:
        intro = f"Você é {config.agent_name}"
        if config.persona_description:
            intro += f". {config.persona_description}"
        sections = [
            f"{intro}.",
            f"Tom de voz: {self.tone_description(config.tone_of_voice)}",
        ]
        if config.business_context:
            sections.append(f"Contexto do negócio: {config.business_context}")
        if config.faq_context:
            sections.append(f"FAQ: {config.faq_context}")
        if config.system_prompt:
            sections.append(config.system_prompt)
        manner = "profissional" if config.tone_of_voice == "professional" else "simpático"
        sections.append(self._RULES.format(manner=manner))
        return "\n\n".join(sections)


def history_messages(messages: Iterable[schemas.Message]) -> list[dict[str, str]]:
    """Map stored messages (oldest first) to chat roles."""

    return [
        {
            "role": "assistant" if message.is_from_me else "user",
            "content": message.content or EMPTY_CONTENT,
        }
        for message in messages
        if not message.is_internal
    ]
