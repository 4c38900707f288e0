"""Operator ticket transition routes."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ..conversations import schemas as convo_schemas
from ..conversations.repository import PostgresChatRepository
from ..dependencies import build_ticket_manager
from ..tickets.service import TicketManager, TicketNotFoundError, TicketTransitionError

router = APIRouter(tags=["tickets"])

_DATABASE_URL = os.getenv("DATABASE_URL")


class TicketTransitionRequest(BaseModel):
    agent_name: str | None = None


def _get_conn() -> psycopg.Connection:
    if not _DATABASE_URL:
        raise HTTPException(status_code=500, detail="DATABASE_URL not configured")
    try:
        return psycopg.connect(_DATABASE_URL)
    except Exception as exc:  # pragma: no cover - defensive
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@contextmanager
def _service_context() -> Iterator[TicketManager]:
    conn = _get_conn()
    manager = build_ticket_manager(PostgresChatRepository(conn))
    try:
        yield manager
        conn.commit()
    except TicketNotFoundError as exc:
        conn.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TicketTransitionError as exc:
        conn.rollback()
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except HTTPException:
        conn.rollback()
        raise
    except Exception as exc:  # pragma: no cover - defensive
        conn.rollback()
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        conn.close()


@router.post(
    "/api/tickets/{ticket_id}/close",
    response_model=convo_schemas.TicketTransitionResponse,
)
def close_ticket(
    ticket_id: int, payload: TicketTransitionRequest | None = None
) -> convo_schemas.TicketTransitionResponse:
    agent_name = payload.agent_name if payload else None
    with _service_context() as tickets:
        return tickets.close(ticket_id, agent_name=agent_name)


@router.post(
    "/api/tickets/{ticket_id}/reopen",
    response_model=convo_schemas.TicketTransitionResponse,
)
def reopen_ticket(
    ticket_id: int, payload: TicketTransitionRequest | None = None
) -> convo_schemas.TicketTransitionResponse:
    agent_name = payload.agent_name if payload else None
    with _service_context() as tickets:
        return tickets.reopen(ticket_id, agent_name=agent_name)
