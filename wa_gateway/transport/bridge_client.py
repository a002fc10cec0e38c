"""HTTP client for the WhatsApp-Web bridge process.

The bridge owns the protocol session for each device; this gateway only
asks it to deliver text or media and reads back the message id.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from wa_gateway.config import settings
from wa_gateway.errors import SendFailed
from wa_gateway.jobs.models import MediaPayload
from wa_gateway.transport.base import MessageSender

logger = structlog.get_logger(__name__)


class BridgeSender(MessageSender):
    """MessageSender backed by the bridge's REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {}
        key = api_key if api_key is not None else settings.bridge_api_key
        if key:
            headers["X-API-Key"] = key
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.bridge_url,
            headers=headers,
            timeout=timeout or settings.send_timeout_seconds,
        )

    async def send_text(self, device_id: str, target: str, text: str) -> Dict[str, Any]:
        return await self._post(
            f"/devices/{device_id}/messages/text",
            {"to": target, "message": text},
        )

    async def send_media(
        self, device_id: str, target: str, media: MediaPayload
    ) -> Dict[str, Any]:
        body = {
            "to": target,
            "mediaType": media.media_type.value,
            "mimetype": media.resolved_mimetype(),
            "caption": media.caption,
            "fileName": media.file_name,
        }
        if media.base64:
            body["base64"] = media.raw_base64()
        else:
            body["url"] = media.url
        return await self._post(f"/devices/{device_id}/messages/media", body)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=body)
        except httpx.TimeoutException as exc:
            raise SendFailed(f"Bridge timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SendFailed(f"Bridge unreachable: {exc}") from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.debug("bridge_rejected", path=path, status=response.status_code, detail=detail)
            raise SendFailed(detail)

        # the bridge accepted the message; an unreadable body only loses the receipt
        try:
            payload = response.json() if response.content else {}
        except ValueError:
            logger.warning("bridge_receipt_unparseable", path=path, status=response.status_code)
            payload = {}
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        return {
            "message_id": data.get("messageId") or data.get("message_id"),
            "status": data.get("status", "sent"),
        }


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if isinstance(payload, dict):
        message = payload.get("message") or payload.get("error")
        if message:
            return f"HTTP {response.status_code}: {message}"
    return f"HTTP {response.status_code}"
