"""Republish transient gateway media to durable storage."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from ..gateway.client import GatewayClient
from ..storage import LocalDiskStorage, ObjectStorage
from . import schemas
from .models import NormalizedMessage

logger = logging.getLogger(__name__)

DURABLE_PREFIX = "whatsapp-media/"

_TRANSIENT_CDN_MARKERS = ("mmg.whatsapp.net", "enc.whatsapp.net", ".whatsapp.net/")
_GATEWAY_STORE_HOSTS = ("minio:9000", "localhost:9000", "127.0.0.1:9000")

_MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "application/pdf": "pdf",
}

_PATH_SEPARATORS = re.compile(r"[\\/]")

# Outcomes
DURABLE = "durable"
LOCAL = "local"
ORIGINAL = "original"
SKIPPED = "skipped"


def is_transient_url(url: str | None) -> bool:
    """Return ``True`` for CDN links and gateway object-store links that expire."""

    if not url or url.startswith(DURABLE_PREFIX) or url.startswith("/storage/"):
        return False
    if any(marker in url for marker in _TRANSIENT_CDN_MARKERS):
        return True
    if any(host in url for host in _GATEWAY_STORE_HOSTS):
        return True
    return ":9000" in url and "/evolution" in url


def extension_for(mimetype: str | None) -> str:
    if not mimetype:
        return "bin"
    base = mimetype.split(";")[0].strip().lower()
    if base in _MIME_EXTENSIONS:
        return _MIME_EXTENSIONS[base]
    subtype = base.split("/")[-1] if "/" in base else ""
    return subtype or "bin"


def safe_file_name(message_id: str, mimetype: str | None, file_name: str | None = None) -> str:
    """Storage file name, unique per message.

    Documents keep their original name after the message id so two uploads
    named ``contrato.pdf`` never share a key.
    """

    safe_id = _PATH_SEPARATORS.sub("_", message_id)
    if file_name:
        return f"{safe_id}_{_PATH_SEPARATORS.sub('_', file_name)}"
    return f"{safe_id}.{extension_for(mimetype)}"


@dataclass
class RehostResult:
    reference: str | None
    outcome: str


class MediaRehoster:
    """Fetches media bytes and stores them under a stable key.

    Falls back to local disk, then to the original URL; never raises.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        storage: ObjectStorage | None,
        local: LocalDiskStorage,
    ) -> None:
        self._gateway = gateway
        self._storage = storage
        self._local = local

    def rehost(
        self,
        instance: schemas.Instance,
        key: dict[str, Any],
        normalized: NormalizedMessage,
        message_id: str,
    ) -> RehostResult:
        url = normalized.media_url
        if not is_transient_url(url):
            return RehostResult(url, SKIPPED)

        data = self._fetch(instance, key, url)
        if not data:
            logger.warning("Could not fetch media for %s; keeping original URL", message_id)
            return RehostResult(url, ORIGINAL)

        name = safe_file_name(message_id, normalized.media_mimetype, normalized.file_name)
        relative = f"{DURABLE_PREFIX}{instance.instance_name}/{name}"
        if self._storage is not None:
            try:
                stored = self._storage.put(
                    relative, data, normalized.media_mimetype or "application/octet-stream"
                )
                return RehostResult(stored, DURABLE)
            except Exception:
                logger.exception("Durable upload failed for %s; writing locally", relative)
        try:
            return RehostResult(self._local.write(relative, data), LOCAL)
        except OSError:
            logger.exception("Local media write failed for %s; keeping original URL", relative)
            return RehostResult(url, ORIGINAL)

    def _fetch(self, instance: schemas.Instance, key: dict[str, Any], url: str | None) -> bytes | None:
        data = self._gateway.fetch_media_base64(instance, key) if key else None
        if not data and url:
            data = self._gateway.download(url)
        return data
