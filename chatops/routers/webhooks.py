"""Webhook ingestion routes for the messaging gateway."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import psycopg
from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool

from ..channels import get_adapter
from ..conversations import schemas as convo_schemas
from ..conversations.repository import PostgresChatRepository
from ..conversations.service import IngestionPipeline, UnknownInstanceError
from ..dependencies import build_pipeline
from ..settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

_DATABASE_URL = os.getenv("DATABASE_URL")


def _get_conn() -> psycopg.Connection:
    if not _DATABASE_URL:
        raise HTTPException(status_code=500, detail="DATABASE_URL not configured")
    try:
        return psycopg.connect(_DATABASE_URL)
    except Exception as exc:  # pragma: no cover - defensive
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@contextmanager
def _service_context() -> Iterator[IngestionPipeline]:
    conn = _get_conn()
    pipeline = build_pipeline(PostgresChatRepository(conn))
    try:
        yield pipeline
        conn.commit()
    except (HTTPException, UnknownInstanceError):
        conn.rollback()
        raise
    except Exception as exc:  # pragma: no cover - defensive
        conn.rollback()
        logger.exception("Webhook ingestion failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        conn.close()


def _event_from_path(event: str) -> str:
    # Per-event webhook URLs use dashes ("messages-upsert").
    return event.strip().lower().replace("-", ".").replace("_", ".")


async def _read_payload(request: Request) -> tuple[bytes, dict[str, Any]]:
    body_bytes = await request.body()
    try:
        payload = json.loads(body_bytes.decode("utf-8")) if body_bytes else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid JSON payload: {exc}"
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be an object")
    return body_bytes, payload


def _ingest(request: Request, body_bytes: bytes, payload: dict[str, Any]) -> Response:
    settings = get_settings()
    adapter = get_adapter(settings.gateway_provider)()
    config = {"webhook_token": settings.gateway_webhook_token}
    if not adapter.verify_signature(body_bytes, request.headers, config):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token"
        )

    event = payload.get("event")
    try:
        with _service_context() as pipeline:
            outcomes = pipeline.process(payload)
    except UnknownInstanceError as exc:
        logger.warning("Webhook for unknown instance ignored: %s", exc)
        ack = convo_schemas.WebhookAck(status="ignored", event=event)
        return Response(
            content=ack.model_dump_json(),
            status_code=status.HTTP_202_ACCEPTED,
            media_type="application/json",
        )

    ack = convo_schemas.WebhookAck(
        status="ok" if outcomes else "ignored",
        event=event,
        processed=len(outcomes),
        results=[
            convo_schemas.IngestResponse(
                status=outcome.status,
                event=event,
                message_id=outcome.message_id,
                conversation_id=outcome.conversation_id,
                duplicate=outcome.duplicate,
                detail=outcome.detail,
            )
            for outcome in outcomes
        ],
    )
    return Response(
        content=ack.model_dump_json(),
        status_code=status.HTTP_200_OK if outcomes else status.HTTP_202_ACCEPTED,
        media_type="application/json",
    )


@router.post("/api/webhooks/evolution")
async def evolution_webhook(request: Request) -> Response:
    """Receive a gateway event and run it through the ingestion pipeline."""

    body_bytes, payload = await _read_payload(request)
    # Ingestion blocks on the database, the gateway and the reply delay.
    return await run_in_threadpool(_ingest, request, body_bytes, payload)


@router.post("/api/webhooks/evolution/{event}")
async def evolution_event_webhook(event: str, request: Request) -> Response:
    """Variant for gateways configured with one URL per event type."""

    body_bytes, payload = await _read_payload(request)
    payload.setdefault("event", _event_from_path(event))
    return await run_in_threadpool(_ingest, request, body_bytes, payload)
