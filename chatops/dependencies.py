"""Process-wide collaborators and per-connection service builders."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import requests

from . import notifications
from .agents.arbiter import ResponseArbiter
from .agents.completion import CompletionClient, OpenAICompletionClient
from .channels import get_adapter
from .conversations.identity import IdentityResolver
from .conversations.media import MediaRehoster
from .conversations.models import ConversationMode
from .conversations.repository import ChatRepository
from .conversations.service import IngestionPipeline
from .conversations.status import StatusReconciler
from .gateway.client import GatewayClient
from .gateway.messenger import OutboundMessenger
from .routing.assignment import AssignmentEngine
from .settings import Settings, get_settings
from .storage import LocalDiskStorage, ObjectStorage, S3ObjectStorage
from .tickets.service import TicketManager

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    """External ports shared by every request."""

    settings: Settings
    gateway: GatewayClient
    realtime: notifications.RealtimeNotifier
    webhooks: notifications.WebhookNotifier
    completion: CompletionClient | None
    storage: ObjectStorage | None
    local_storage: LocalDiskStorage


def _object_storage(settings: Settings) -> ObjectStorage | None:
    if not settings.media_bucket:
        return None
    try:
        return S3ObjectStorage(settings.media_bucket, endpoint_url=settings.media_endpoint_url)
    except RuntimeError as exc:
        logger.warning("Durable media storage disabled: %s", exc)
        return None


@lru_cache(maxsize=1)
def get_collaborators() -> Collaborators:
    settings = get_settings()
    session = requests.Session()
    return Collaborators(
        settings=settings,
        gateway=GatewayClient.from_settings(settings, session=session),
        realtime=notifications.LoggingRealtimeNotifier(),
        webhooks=notifications.HttpWebhookNotifier(
            settings.webhook_dispatcher_url, session=session
        ),
        completion=OpenAICompletionClient.from_settings(settings),
        storage=_object_storage(settings),
        local_storage=LocalDiskStorage(settings.media_storage_dir),
    )


def reset_collaborators_cache() -> None:
    get_collaborators.cache_clear()


def build_messenger(repository: ChatRepository, ports: Collaborators) -> OutboundMessenger:
    return OutboundMessenger(repository, ports.gateway, ports.realtime)


def build_ticket_manager(
    repository: ChatRepository, ports: Collaborators | None = None
) -> TicketManager:
    ports = ports or get_collaborators()
    return TicketManager(
        repository,
        build_messenger(repository, ports),
        ports.realtime,
        ports.webhooks,
        tz_name=ports.settings.display_timezone,
    )


def build_arbiter(
    repository: ChatRepository, ports: Collaborators | None = None
) -> ResponseArbiter:
    ports = ports or get_collaborators()
    return ResponseArbiter(
        repository,
        build_messenger(repository, ports),
        ports.realtime,
        ports.webhooks,
        ports.completion,
    )


def build_pipeline(
    repository: ChatRepository,
    ports: Collaborators | None = None,
    *,
    gateway_name: str = "evolution",
) -> IngestionPipeline:
    """Wire an :class:`IngestionPipeline` around ``repository``."""

    ports = ports or get_collaborators()
    settings = ports.settings
    return IngestionPipeline(
        repository,
        adapter=get_adapter(gateway_name)(),
        resolver=IdentityResolver(repository, ports.gateway),
        rehoster=MediaRehoster(ports.gateway, ports.storage, ports.local_storage),
        reconciler=StatusReconciler(repository, ports.realtime, ports.webhooks),
        realtime=ports.realtime,
        webhooks=ports.webhooks,
        assignment=AssignmentEngine(repository, ports.realtime),
        tickets=build_ticket_manager(repository, ports),
        arbiter=build_arbiter(repository, ports),
        default_mode=ConversationMode.parse(settings.default_conversation_mode),
    )
