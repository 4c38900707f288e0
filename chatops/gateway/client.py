"""HTTP client for the messaging gateway (send, media fetch, group info)."""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any

import requests

from ..conversations import schemas
from ..conversations.models import digits_only, is_group_jid, is_transient_jid
from ..settings import Settings

logger = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    """Raised when the gateway rejects or fails to answer a request."""


@dataclass
class SendResult:
    message_id: str | None
    remote_jid: str | None = None
    via_fallback: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


def resolve_destination(contact: schemas.Contact) -> str:
    """Pick the routable id used to reach ``contact``.

    Groups use the full composite jid when known. Individuals prefer the
    real phone number learnt from ``sender_pn``; contacts only known by a
    transient id are addressed with that id.
    """

    metadata = contact.metadata or {}
    if contact.is_group:
        return metadata.get("full_jid") or contact.remote_jid or f"{contact.phone_number}@g.us"
    sender_pn = metadata.get("sender_pn")
    if sender_pn:
        return digits_only(sender_pn)
    if is_transient_jid(contact.phone_number):
        return contact.phone_number
    if is_transient_jid(contact.remote_jid) and contact.phone_number == metadata.get("lid_id"):
        return contact.remote_jid or contact.phone_number
    return digits_only(contact.phone_number)


def media_kind(mimetype: str | None) -> str:
    """Map a mimetype onto the gateway's ``mediatype`` values."""

    kind = (mimetype or "application/octet-stream").split("/")[0]
    return kind if kind in {"image", "video", "audio"} else "document"


class GatewayClient:
    """Thin wrapper around the gateway REST API."""

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str | None = None,
        provider: str = "evolution",
        fallback_url: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.provider = provider
        self.fallback_url = fallback_url.rstrip("/") if fallback_url else None
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(
        cls, settings: Settings, *, session: requests.Session | None = None
    ) -> "GatewayClient":
        return cls(
            api_url=settings.gateway_api_url,
            api_key=settings.gateway_api_key,
            provider=settings.gateway_provider,
            fallback_url=settings.gateway_fallback_url,
            timeout=settings.gateway_timeout_seconds,
            session=session,
        )

    # ------------------------------------------------------------------
    # Helpers

    def _base_url(self, instance: schemas.Instance) -> str:
        return (instance.api_url or self.api_url).rstrip("/")

    def _headers(self, instance: schemas.Instance) -> dict[str, str]:
        key = instance.api_key or self.api_key
        headers = {"Content-Type": "application/json"}
        if not key:
            return headers
        if (instance.provider_type or self.provider) == "cloud":
            headers["Authorization"] = f"Bearer {key}"
        else:
            headers["apikey"] = key
        return headers

    def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = self.session.request(
                "POST", url, json=payload, headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise GatewayError(f"POST {url} failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    # ------------------------------------------------------------------
    # Sending

    def send_text(
        self,
        instance: schemas.Instance,
        destination: str,
        text: str,
        *,
        quoted_message_id: str | None = None,
    ) -> SendResult:
        """Send ``text``; group sends retry once through the fallback transport."""

        payload: dict[str, Any] = {"number": destination, "text": text}
        if quoted_message_id:
            payload["quoted"] = {"key": {"id": quoted_message_id}}
        url = f"{self._base_url(instance)}/message/sendText/{instance.gateway_identifier}"
        try:
            body = self._post(url, payload, self._headers(instance))
        except GatewayError:
            if not (is_group_jid(destination) and self.fallback_url):
                raise
            logger.warning(
                "Primary group send failed for %s; using fallback transport", destination
            )
            return self._send_group_fallback(destination, text)
        return _send_result(body)

    def send_media(
        self,
        instance: schemas.Instance,
        destination: str,
        media_url: str,
        mimetype: str | None,
        *,
        caption: str | None = None,
        quoted_message_id: str | None = None,
    ) -> SendResult:
        """Send a media link; group sends fall back to a text with the link."""

        media_type = media_kind(mimetype)
        payload: dict[str, Any] = {
            "number": destination,
            "mediatype": media_type,
            "media": media_url,
            "mimetype": mimetype,
            "caption": caption or "",
        }
        if quoted_message_id:
            payload["quoted"] = {"key": {"id": quoted_message_id}}
        url = f"{self._base_url(instance)}/message/sendMedia/{instance.gateway_identifier}"
        try:
            body = self._post(url, payload, self._headers(instance))
        except GatewayError:
            if not (is_group_jid(destination) and self.fallback_url):
                raise
            logger.warning(
                "Primary group media send failed for %s; using fallback transport", destination
            )
            text = f"{caption}\n{media_url}" if caption else media_url
            return self._send_group_fallback(destination, text)
        return _send_result(body)

    def _send_group_fallback(self, destination: str, text: str) -> SendResult:
        body = self._post(
            f"{self.fallback_url}/send/text",
            {"jid": destination, "text": text},
            {"Content-Type": "application/json"},
        )
        result = _send_result(body)
        result.via_fallback = True
        return result

    # ------------------------------------------------------------------
    # Side channels

    def fetch_media_base64(
        self, instance: schemas.Instance, key: dict[str, Any]
    ) -> bytes | None:
        """Ask the gateway for the decrypted media of message ``key``."""

        url = (
            f"{self._base_url(instance)}/chat/getBase64FromMediaMessage/"
            f"{instance.gateway_identifier}"
        )
        try:
            body = self._post(
                url,
                {"message": {"key": key}, "convertToMp4": False},
                self._headers(instance),
            )
        except GatewayError as exc:
            logger.warning("Media base64 fetch failed: %s", exc)
            return None
        encoded = body.get("base64")
        if not encoded:
            return None
        if "," in encoded:
            encoded = encoded.split(",", 1)[1]
        try:
            return base64.b64decode(encoded)
        except (binascii.Error, ValueError):
            logger.warning("Gateway returned invalid base64 media for %s", key.get("id"))
            return None

    def download(self, url: str) -> bytes | None:
        try:
            response = self.session.request("GET", url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Direct media download failed for %s: %s", url, exc)
            return None
        return response.content or None

    def fetch_group_info(self, instance: schemas.Instance, group_jid: str) -> dict[str, Any]:
        """Return ``{"name", "picture_url"}`` for a group; empty when unknown."""

        url = f"{self._base_url(instance)}/group/fetchAllGroups/{instance.gateway_identifier}"
        try:
            response = self.session.request(
                "GET",
                url,
                params={"getParticipants": "false"},
                headers=self._headers(instance),
                timeout=self.timeout,
            )
            response.raise_for_status()
            groups = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.info("Group info unavailable for %s: %s", group_jid, exc)
            return {}
        if not isinstance(groups, list):
            return {}
        for group in groups:
            if isinstance(group, dict) and group.get("id") == group_jid:
                return {
                    "name": group.get("subject") or None,
                    "picture_url": group.get("pictureUrl") or None,
                }
        return {}


def _send_result(body: dict[str, Any]) -> SendResult:
    key = body.get("key") or {}
    if not key and isinstance(body.get("data"), dict):
        key = body["data"].get("key") or {}
    return SendResult(
        message_id=key.get("id") or body.get("id"),
        remote_jid=key.get("remoteJid"),
        raw=body,
    )
