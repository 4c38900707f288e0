import pathlib
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from chatops.agents.arbiter import ResponseArbiter
from chatops.app_logging import init_logging
from chatops.channels import EvolutionAdapter
from chatops.conversations.identity import IdentityResolver
from chatops.conversations.media import MediaRehoster
from chatops.conversations.repository import InMemoryChatRepository
from chatops.conversations.service import IngestionPipeline
from chatops.conversations.status import StatusReconciler
from chatops.gateway.client import GatewayError, SendResult
from chatops.gateway.messenger import OutboundMessenger
from chatops.notifications import RecordingNotifier
from chatops.routing.assignment import AssignmentEngine
from chatops.storage import LocalDiskStorage
from chatops.tickets.service import TicketManager

# Wednesday 2025-03-05 12:00 in America/Sao_Paulo.
BASE_TIME = datetime(2025, 3, 5, 15, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class FakeGateway:
    """Duck-typed stand-in for :class:`chatops.gateway.client.GatewayClient`."""

    media: bytes | None = None
    downloads: dict[str, bytes] = field(default_factory=dict)
    groups: dict[str, dict[str, Any]] = field(default_factory=dict)
    fail_sends: bool = False
    sent: list[dict[str, Any]] = field(default_factory=list)
    media_requests: list[dict[str, Any]] = field(default_factory=list)

    def send_text(self, instance, destination, text, *, quoted_message_id=None):
        if self.fail_sends:
            raise GatewayError("gateway down")
        self.sent.append({"instance": instance.instance_name, "to": destination, "text": text})
        return SendResult(message_id=f"OUT{len(self.sent)}", remote_jid=f"{destination}@s.whatsapp.net")

    def send_media(
        self, instance, destination, media_url, mimetype, *, caption=None, quoted_message_id=None
    ):
        if self.fail_sends:
            raise GatewayError("gateway down")
        self.sent.append(
            {
                "instance": instance.instance_name,
                "to": destination,
                "media": media_url,
                "mimetype": mimetype,
                "caption": caption,
            }
        )
        return SendResult(message_id=f"OUT{len(self.sent)}", remote_jid=f"{destination}@s.whatsapp.net")

    def fetch_media_base64(self, instance, key):
        self.media_requests.append(key)
        return self.media

    def download(self, url):
        return self.downloads.get(url)

    def fetch_group_info(self, instance, group_jid):
        return self.groups.get(group_jid, {})


class FakeCompletion:
    def __init__(self, reply: str = "Olá! Como posso ajudar?", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.on_complete = None

    def complete(self, *, model, messages, temperature, max_tokens):
        self.calls.append(
            {"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.on_complete is not None:
            self.on_complete()
        if self.error is not None:
            raise self.error
        return self.reply


@dataclass
class ChatWorld:
    """Everything an ingestion test needs, wired around one in-memory store."""

    repo: InMemoryChatRepository
    notifier: RecordingNotifier
    gateway: FakeGateway
    completion: FakeCompletion
    clock: FrozenClock
    storage_dir: pathlib.Path
    sleeps: list[float] = field(default_factory=list)
    object_storage: Any = None

    def messenger(self) -> OutboundMessenger:
        return OutboundMessenger(self.repo, self.gateway, self.notifier, clock=self.clock)

    def arbiter(self) -> ResponseArbiter:
        return ResponseArbiter(
            self.repo,
            self.messenger(),
            self.notifier,
            self.notifier,
            self.completion,
            clock=self.clock,
            sleep=self.sleeps.append,
        )

    def tickets(self) -> TicketManager:
        return TicketManager(
            self.repo, self.messenger(), self.notifier, self.notifier, clock=self.clock
        )

    def pipeline(self, **overrides: Any) -> IngestionPipeline:
        components: dict[str, Any] = {
            "adapter": EvolutionAdapter(),
            "resolver": IdentityResolver(self.repo, self.gateway, clock=self.clock),
            "rehoster": MediaRehoster(
                self.gateway, self.object_storage, LocalDiskStorage(self.storage_dir)
            ),
            "reconciler": StatusReconciler(self.repo, self.notifier, self.notifier, clock=self.clock),
            "realtime": self.notifier,
            "webhooks": self.notifier,
            "assignment": AssignmentEngine(self.repo, self.notifier),
            "tickets": self.tickets(),
            "arbiter": self.arbiter(),
        }
        components.update(overrides)
        return IngestionPipeline(self.repo, **components)


@pytest.fixture
def world(tmp_path) -> ChatWorld:
    repo = InMemoryChatRepository()
    repo.add_instance("main", name="Main line")
    return ChatWorld(
        repo=repo,
        notifier=RecordingNotifier(),
        gateway=FakeGateway(),
        completion=FakeCompletion(),
        clock=FrozenClock(),
        storage_dir=tmp_path / "storage",
    )


def epoch(moment: datetime) -> int:
    return int(moment.timestamp())


def upsert(
    message: dict[str, Any],
    *,
    message_id: str = "MSG1",
    remote_jid: str = "5511999990000@s.whatsapp.net",
    from_me: bool = False,
    push_name: str | None = "Maria",
    sent_at: datetime = BASE_TIME,
    instance: str = "main",
    event: str = "messages.upsert",
    **key_extra: Any,
) -> dict[str, Any]:
    """Build a gateway webhook payload carrying one message."""

    data: dict[str, Any] = {
        "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me, **key_extra},
        "message": message,
        "messageTimestamp": epoch(sent_at),
    }
    if push_name is not None:
        data["pushName"] = push_name
    return {"event": event, "instance": instance, "data": data}


def text(body: str, **kwargs: Any) -> dict[str, Any]:
    return upsert({"conversation": body}, **kwargs)


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
