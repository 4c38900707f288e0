"""Placeholder substitution for sector message templates."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CUSTOMER_NAME = "Cliente"
DEFAULT_AGENT_NAME = "Sistema"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def _local_now(now: datetime | None, tz_name: str) -> datetime:
    moment = now or datetime.now(timezone.utc)
    try:
        return moment.astimezone(ZoneInfo(tz_name))
    except ZoneInfoNotFoundError:
        return moment.astimezone(timezone.utc)


def template_variables(
    *,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    agent_name: str | None = None,
    ticket_number: int | None = None,
    sector_name: str | None = None,
    now: datetime | None = None,
    tz_name: str = "America/Sao_Paulo",
) -> dict[str, str]:
    local = _local_now(now, tz_name)
    return {
        "clienteNome": customer_name or customer_phone or DEFAULT_CUSTOMER_NAME,
        "clienteTelefone": customer_phone or "",
        "atendenteNome": agent_name or DEFAULT_AGENT_NAME,
        "ticketNumero": str(ticket_number) if ticket_number is not None else "",
        "setorNome": sector_name or "",
        "dataAtual": local.strftime("%d/%m/%Y"),
        "horaAtual": local.strftime("%H:%M"),
    }


def render_template(template: str, variables: dict[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left untouched."""

    def _substitute(match: re.Match[str]) -> str:
        name = match.group(1)
        return variables[name] if name in variables else match.group(0)

    return _PLACEHOLDER_RE.sub(_substitute, template)
