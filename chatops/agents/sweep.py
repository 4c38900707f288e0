"""Fixed-interval re-evaluation of hybrid conversations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import AbstractContextManager
from threading import Event

from ..conversations.models import ConversationMode
from ..conversations.repository import ChatRepository
from .arbiter import ArbiterOutcome, ResponseArbiter

logger = logging.getLogger(__name__)

SweepSession = Callable[[], AbstractContextManager[tuple[ChatRepository, ResponseArbiter]]]


def sweep_hybrid_conversations(
    repository: ChatRepository, arbiter: ResponseArbiter
) -> dict[int, ArbiterOutcome]:
    """Evaluate every open hybrid conversation once.

    A failure on one conversation is logged and rolled back to its savepoint
    without affecting the others.
    """

    outcomes: dict[int, ArbiterOutcome] = {}
    for conversation in repository.list_open_conversations_by_mode(ConversationMode.HYBRID):
        try:
            with repository.savepoint():
                outcomes[conversation.id] = arbiter.evaluate_conversation(conversation)
        except Exception:
            logger.exception("Hybrid sweep failed for conversation %s", conversation.id)
    replied = sum(1 for outcome in outcomes.values() if outcome == ArbiterOutcome.REPLIED)
    logger.info("Hybrid sweep evaluated %d conversations, %d replies", len(outcomes), replied)
    return outcomes


class HybridSweeper:
    """Background loop that runs :func:`sweep_hybrid_conversations`.

    The loop lives on a single-worker :class:`ThreadPoolExecutor`; a
    :class:`threading.Event` stops it between runs. ``session_factory``
    yields a repository and arbiter and commits when the block exits.
    """

    def __init__(
        self,
        session_factory: SweepSession,
        *,
        interval_seconds: float = 60.0,
        initial_delay_seconds: float = 5.0,
    ):
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._initial_delay = initial_delay_seconds
        self._stop = Event()
        self._executor: ThreadPoolExecutor | None = None
        self._future: Future | None = None

    @property
    def running(self) -> bool:
        return self._future is not None and not self._future.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hybrid-sweep")
        self._future = self._executor.submit(self._loop)
        logger.info(
            "Hybrid sweep started (every %ss, first run in %ss)",
            self._interval,
            self._initial_delay,
        )

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
        self._executor = None
        self._future = None

    def run_once(self) -> dict[int, ArbiterOutcome]:
        with self._session_factory() as (repository, arbiter):
            return sweep_hybrid_conversations(repository, arbiter)

    def _loop(self) -> None:
        if self._stop.wait(self._initial_delay):
            return
        while True:
            try:
                self.run_once()
            except Exception:
                logger.exception("Hybrid sweep run failed")
            if self._stop.wait(self._interval):
                return
