"""One-shot agent assignment for unassigned conversations."""

from __future__ import annotations

import logging

from .. import notifications
from ..conversations import schemas
from ..conversations.models import AssignmentStrategy
from ..conversations.repository import ChatRepository

logger = logging.getLogger(__name__)


class AssignmentEngine:
    """Applies the instance's assignment rule to a conversation.

    The rule with the conversation's sector wins over the instance-wide rule.
    Existing assignments are never overwritten, and a missing rule is a no-op.
    """

    def __init__(
        self,
        repository: ChatRepository,
        realtime: notifications.RealtimeNotifier,
    ) -> None:
        self._repository = repository
        self._realtime = realtime

    def assign(self, conversation: schemas.Conversation) -> str | None:
        """Return the agent id assigned by this call, or ``None``."""

        if conversation.assigned_to:
            return None
        rule = self._repository.find_assignment_rule(
            conversation.instance_id, conversation.sector_id
        )
        if rule is None:
            logger.debug("No assignment rule for conversation %s", conversation.id)
            return None

        agent_id = self._pick_agent(rule)
        if not agent_id:
            logger.warning("Assignment rule %s has no agent to assign", rule.id)
            return None
        if not self._repository.assign_conversation(conversation.id, agent_id):
            logger.info("Conversation %s was assigned concurrently; keeping it", conversation.id)
            return None

        logger.info(
            "Assigned conversation %s to %s (rule %s, %s)",
            conversation.id,
            agent_id,
            rule.id,
            rule.rule_type.value,
        )
        notifications.publish_quietly(
            self._realtime,
            notifications.CONVERSATION_UPDATED,
            {"conversation_id": conversation.id, "assigned_to": agent_id},
        )
        return agent_id

    def _pick_agent(self, rule: schemas.AssignmentRule) -> str | None:
        if rule.rule_type == AssignmentStrategy.FIXED:
            return rule.fixed_agent_id
        if rule.rule_type == AssignmentStrategy.ROUND_ROBIN:
            return self._repository.advance_round_robin(rule.id)
        return None
