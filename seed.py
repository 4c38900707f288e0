"""Bootstrap a database: apply migrations, then create a gateway instance with
a default sector (and optionally an automated agent for it).

Connection details come from ``DATABASE_URL`` or the libpq ``PG*`` variables;
everything else from ``SEED_*`` variables.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass

import psycopg
from dotenv import load_dotenv
from psycopg.types.json import Jsonb
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from chatops.schema import ensure_schema

logger = logging.getLogger("seed")

TRUTHY = frozenset({"1", "true", "yes", "y", "on"})


@dataclass(slots=True)
class SeedConfig:
    db_url: str
    instance_name: str
    instance_label: str
    sector_name: str
    ticket_individual: bool
    ticket_group: bool
    welcome_message: str | None
    closing_message: str | None
    agent_name: str | None
    escalation_keywords: list[str]


def _to_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUTHY


def _safe_url(db_url: str) -> str:
    """``db_url`` with the password masked, for log lines."""

    try:
        return make_url(db_url).render_as_string(hide_password=True)
    except ArgumentError:
        return db_url


def _build_database_url() -> str:
    if os.getenv("DATABASE_URL"):
        return os.environ["DATABASE_URL"]

    pg = {name: os.getenv(f"PG{name.upper()}") for name in ("host", "database", "user", "password")}
    missing = [f"PG{name.upper()}" for name in ("host", "database", "user") if not pg[name]]
    if missing:
        raise RuntimeError(f"DATABASE_URL is not set and {', '.join(missing)} missing")

    credentials = pg["user"] if not pg["password"] else f"{pg['user']}:{pg['password']}"
    port = os.getenv("PGPORT", "5432")
    return f"postgresql://{credentials}@{pg['host']}:{port}/{pg['database']}"


def _load_config() -> SeedConfig:
    """Read the ``SEED_*`` variables; defaults give a Portuguese-language sector."""

    instance_name = os.getenv("SEED_INSTANCE_NAME", "main").strip()
    keywords = os.getenv("SEED_ESCALATION_KEYWORDS", "atendente,humano")
    return SeedConfig(
        db_url=_build_database_url(),
        instance_name=instance_name,
        instance_label=os.getenv("SEED_INSTANCE_LABEL", instance_name).strip(),
        sector_name=os.getenv("SEED_SECTOR_NAME", "Atendimento").strip(),
        ticket_individual=_to_bool(os.getenv("SEED_TICKET_INDIVIDUAL", "true")),
        ticket_group=_to_bool(os.getenv("SEED_TICKET_GROUP")),
        welcome_message=os.getenv(
            "SEED_WELCOME_MESSAGE",
            "Olá {{clienteNome}}! Seu atendimento #{{ticketNumero}} foi aberto no setor {{setorNome}}.",
        )
        or None,
        closing_message=os.getenv(
            "SEED_CLOSING_MESSAGE",
            "Atendimento #{{ticketNumero}} encerrado por {{atendenteNome}}. Obrigado!",
        )
        or None,
        agent_name=os.getenv("SEED_AGENT_NAME") or None,
        escalation_keywords=[k.strip() for k in keywords.split(",") if k.strip()],
    )


def wait_for_database(max_attempts: int = 10, delay: float = 3.0) -> None:
    """Block until ``SELECT 1`` succeeds or ``max_attempts`` are used up."""

    db_url = _build_database_url()
    last_error: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            with psycopg.connect(db_url, connect_timeout=5) as conn, conn.cursor() as cur:
                cur.execute("SELECT 1")
        except psycopg.Error as exc:  # pragma: no cover - depends on external DB
            last_error = exc
            logger.info("Waiting for %s (%d/%d): %s", _safe_url(db_url), attempt, max_attempts, exc)
            if attempt < max_attempts:
                time.sleep(delay)
        else:
            logger.info("Database reachable at %s", _safe_url(db_url))
            return
    raise RuntimeError("Database did not become ready in time") from last_error


def provision(conn: psycopg.Connection, config: SeedConfig) -> int:
    """Create or reuse the instance and its default sector; returns the instance id."""

    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO instances (name, instance_name)
            VALUES (%s, %s)
            ON CONFLICT (instance_name) DO UPDATE SET updated_at = now()
            RETURNING id
            """,
            (config.instance_label, config.instance_name),
        )
        instance_id = cur.fetchone()[0]

        cur.execute(
            "SELECT id FROM sectors WHERE instance_id = %s AND is_default LIMIT 1",
            (instance_id,),
        )
        row = cur.fetchone()
        if row is not None:
            logger.info("Default sector already present for instance %s", config.instance_name)
            conn.commit()
            return instance_id

        cur.execute(
            """
            INSERT INTO sectors (
                instance_id, name, is_default, ticket_individual, ticket_group,
                welcome_message, closing_message
            )
            VALUES (%s, %s, true, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                instance_id,
                config.sector_name,
                config.ticket_individual,
                config.ticket_group,
                config.welcome_message,
                config.closing_message,
            ),
        )
        sector_id = cur.fetchone()[0]
        logger.info("Created default sector %s (%s)", config.sector_name, sector_id)

        if config.agent_name:
            cur.execute(
                """
                INSERT INTO ai_agent_configs (sector_id, agent_name, escalation_keywords)
                VALUES (%s, %s, %s)
                ON CONFLICT (sector_id) DO NOTHING
                """,
                (sector_id, config.agent_name, Jsonb(config.escalation_keywords)),
            )
            logger.info("Automated agent %s enabled for sector %s", config.agent_name, sector_id)
    conn.commit()
    return instance_id


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    wait_for_database()
    config = _load_config()
    with psycopg.connect(config.db_url) as conn:
        applied = ensure_schema(conn)
        instance_id = provision(conn, config)
    logger.info(
        "Seeded %s: instance %r -> id %s, %d migration(s) applied",
        _safe_url(config.db_url),
        config.instance_name,
        instance_id,
        len(applied),
    )


if __name__ == "__main__":
    main()
