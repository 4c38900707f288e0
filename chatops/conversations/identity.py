"""Resolve gateway sender identifiers to one canonical contact."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from ..gateway.client import GatewayClient
from . import schemas
from .models import (
    GROUP_SUFFIX,
    SenderIdentifiers,
    is_transient_jid,
    merge_ids,
    strip_suffix,
)
from .repository import ChatRepository

logger = logging.getLogger(__name__)

HEURISTIC_WINDOW = timedelta(minutes=30)
# Two rows are enough to tell "exactly one candidate" from "ambiguous".
HEURISTIC_CANDIDATE_LIMIT = 2

# Identifier quality, used to decide whether the canonical phone is replaced.
_RANK_TRANSIENT = 1
_RANK_ROUTABLE = 2
_RANK_PHONE = 3


@dataclass
class ResolvedContact:
    contact: schemas.Contact
    matched_by: str
    created: bool = False


class IdentityResolver:
    """Maps a sender to an existing contact or creates one.

    Lookups run from the most to the least reliable identifier; the first hit
    wins and any newly seen identifier is merged into the contact metadata.
    """

    def __init__(
        self,
        repository: ChatRepository,
        gateway: GatewayClient | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Individual contacts

    def resolve(self, instance: schemas.Instance, ids: SenderIdentifiers) -> ResolvedContact:
        if ids.is_group:
            return self.resolve_group(instance, ids)

        resolved = self._lookup(instance, ids)
        if resolved is None:
            return self._create(instance, ids)

        contact = resolved.contact
        if ids.push_name and not ids.from_me and contact.name != ids.push_name:
            contact = self._repository.update_contact(contact.id, name=ids.push_name)
        if ids.from_me and ids.remote_jid and contact.metadata.get("last_remote_jid") != ids.remote_jid:
            metadata = dict(contact.metadata)
            metadata["last_remote_jid"] = ids.remote_jid
            contact = self._repository.update_contact(contact.id, metadata=metadata)
        resolved.contact = contact
        return resolved

    def _lookup(self, instance: schemas.Instance, ids: SenderIdentifiers) -> ResolvedContact | None:
        repo = self._repository
        sender_phones = [p for p in (ids.explicit_phone, ids.sender_pn) if p]
        for phone in dict.fromkeys(sender_phones):
            contact = repo.find_contact_by_sender(instance.id, phone)
            if contact:
                return ResolvedContact(self._merge(contact, ids), "sender")

        if ids.remote_jid_phone and ids.remote_jid_phone not in sender_phones:
            contact = repo.find_contact_by_phone(instance.id, ids.remote_jid_phone)
            if contact:
                return ResolvedContact(self._merge(contact, ids), "routable_phone")

        if ids.remote_jid:
            contact = repo.find_contact_by_remote_jid(instance.id, ids.remote_jid)
            if contact:
                return ResolvedContact(self._merge(contact, ids), "remote_jid")

        if ids.lid_id:
            contact = repo.find_contact_by_transient_id(instance.id, ids.lid_id)
            if contact:
                return ResolvedContact(self._merge(contact, ids), "transient_id")

        if ids.only_transient and not ids.from_me:
            contact = self._heuristic_link(instance, ids)
            if contact:
                return ResolvedContact(contact, "heuristic")
        return None

    def _heuristic_link(
        self, instance: schemas.Instance, ids: SenderIdentifiers
    ) -> schemas.Contact | None:
        lid_id = ids.lid_id or ""
        candidates = self._repository.find_recent_outbound_contacts(
            instance.id,
            exclude_phone=lid_id,
            since=self._clock() - HEURISTIC_WINDOW,
            limit=HEURISTIC_CANDIDATE_LIMIT,
        )
        if not candidates:
            return None
        if len(candidates) > 1:
            logger.warning(
                "Heuristic link skipped for transient id %s: %d candidate contacts (%s)",
                lid_id,
                len(candidates),
                ", ".join(str(c.id) for c in candidates),
            )
            return None
        candidate = candidates[0]
        metadata = dict(candidate.metadata)
        metadata["lid_id"] = lid_id
        metadata["alternate_ids"] = merge_ids(candidate.alternate_ids, [lid_id])
        linked = self._repository.update_contact(
            candidate.id, remote_jid=ids.remote_jid or None, metadata=metadata
        )
        logger.info(
            "Heuristic link: transient id %s -> contact %s (%s); single candidate with "
            "outbound message in the last %d minutes",
            lid_id,
            linked.id,
            linked.phone_number,
            int(HEURISTIC_WINDOW.total_seconds() // 60),
        )
        return linked

    def _create(self, instance: schemas.Instance, ids: SenderIdentifiers) -> ResolvedContact:
        phone = ids.phone_number or ids.lid_id or ""
        metadata: dict[str, Any] = {
            "lid_id": ids.lid_id,
            "sender_pn": ids.sender_pn,
            "alternate_ids": ids.alternate_ids(),
        }
        if ids.explicit_phone:
            metadata["explicit_phone"] = ids.explicit_phone
        if ids.from_me and ids.remote_jid:
            metadata["last_remote_jid"] = ids.remote_jid
        contact = self._repository.create_contact(
            instance.id,
            phone,
            remote_jid=ids.remote_jid if is_transient_jid(ids.remote_jid) else None,
            name=None if ids.from_me else ids.push_name,
            metadata=metadata,
        )
        logger.info("Created contact %s for phone=%s lid=%s", contact.id, phone, ids.lid_id)
        return ResolvedContact(contact, "created", created=True)

    def _merge(self, contact: schemas.Contact, ids: SenderIdentifiers) -> schemas.Contact:
        """Fold newly seen identifiers into ``contact`` without dropping any."""

        metadata = dict(contact.metadata)
        phone = contact.phone_number
        remote_jid = None

        candidate, rank = _best_identifier(ids)
        if candidate and candidate != phone and rank > _phone_rank(contact):
            phone = candidate
        if ids.sender_pn:
            metadata["sender_pn"] = ids.sender_pn
        if ids.explicit_phone:
            metadata["explicit_phone"] = ids.explicit_phone
        if ids.lid_id:
            metadata["lid_id"] = ids.lid_id
            if is_transient_jid(ids.remote_jid) and contact.remote_jid != ids.remote_jid:
                remote_jid = ids.remote_jid
        metadata["alternate_ids"] = merge_ids(
            contact.alternate_ids,
            [contact.phone_number if phone != contact.phone_number else None]
            + ids.alternate_ids(),
        )
        if phone == contact.phone_number and remote_jid is None and metadata == contact.metadata:
            return contact
        if phone != contact.phone_number:
            logger.info(
                "Contact %s canonical phone %s -> %s", contact.id, contact.phone_number, phone
            )
        return self._repository.update_contact(
            contact.id,
            phone_number=phone if phone != contact.phone_number else None,
            remote_jid=remote_jid,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Groups

    def resolve_group(self, instance: schemas.Instance, ids: SenderIdentifiers) -> ResolvedContact:
        full_jid = ids.remote_jid
        group_id = group_only_id(full_jid)
        contact_jid = f"{group_id}{GROUP_SUFFIX}"
        info = self._group_info(instance, full_jid)

        contact = self._repository.find_group_contact(instance.id, contact_jid, group_id)
        if contact is None:
            contact = self._repository.create_contact(
                instance.id,
                group_id,
                remote_jid=contact_jid,
                name=info.get("name") or f"Grupo {group_id[:8]}...",
                is_group=True,
                profile_picture_url=info.get("picture_url"),
                metadata={"group_id": group_id, "full_jid": full_jid},
            )
            logger.info("Created group contact %s for %s", contact.id, full_jid)
            return ResolvedContact(contact, "group_created", created=True)

        metadata = dict(contact.metadata)
        metadata.setdefault("group_id", group_id)
        metadata["full_jid"] = full_jid
        name = info.get("name")
        picture = info.get("picture_url")
        if (
            metadata != contact.metadata
            or (name and name != contact.name)
            or (picture and picture != contact.profile_picture_url)
        ):
            contact = self._repository.update_contact(
                contact.id,
                name=name if name != contact.name else None,
                profile_picture_url=picture,
                metadata=metadata,
            )
        return ResolvedContact(contact, "group")

    def _group_info(self, instance: schemas.Instance, full_jid: str) -> dict[str, Any]:
        if self._gateway is None:
            return {}
        try:
            return self._gateway.fetch_group_info(instance, full_jid)
        except Exception:  # pragma: no cover - best effort
            logger.exception("Group info lookup failed for %s", full_jid)
            return {}


def group_only_id(full_jid: str) -> str:
    """``"5541999-1539103087@g.us"`` -> ``"1539103087"``."""

    bare = strip_suffix(full_jid)
    return bare.rsplit("-", 1)[-1] if "-" in bare else bare


def _best_identifier(ids: SenderIdentifiers) -> tuple[str | None, int]:
    if ids.explicit_phone or ids.sender_pn:
        return ids.explicit_phone or ids.sender_pn, _RANK_PHONE
    if ids.remote_jid_phone:
        return ids.remote_jid_phone, _RANK_ROUTABLE
    if ids.lid_id:
        return ids.lid_id, _RANK_TRANSIENT
    return None, 0


def _phone_rank(contact: schemas.Contact) -> int:
    metadata = contact.metadata or {}
    phone = contact.phone_number
    if phone and phone in (metadata.get("sender_pn"), metadata.get("explicit_phone")):
        return _RANK_PHONE
    if not phone or is_transient_jid(phone) or phone == metadata.get("lid_id"):
        return _RANK_TRANSIENT
    return _RANK_ROUTABLE
