import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from .models import InboundMessage
from .text import chunk_message, mask_phone


logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com"


class WhatsAppError(Exception):
    """The Cloud API rejected or never received an outbound call."""


class WhatsAppClient:
    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v20.0",
        chunk_limit: int = 1500,
        timeout: float = 15.0,
        http=None,
    ) -> None:
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.chunk_limit = chunk_limit
        self.timeout = timeout
        self._http = http or requests

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def send_text(self, to: str, body: str) -> int:
        """Send `body`, split into transport-sized chunks. Returns the number of chunks sent."""
        chunks = chunk_message(body, self.chunk_limit)
        url = f"{GRAPH_URL}/{self.api_version}/{self.phone_number_id}/messages"
        for chunk in chunks:
            payload = {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": "text",
                "text": {"preview_url": False, "body": chunk},
            }
            try:
                resp = self._http.post(url, json=payload, headers=self._headers, timeout=self.timeout)
            except requests.RequestException as e:
                raise WhatsAppError(f"send failed: {e}") from e
            if resp.status_code >= 300:
                raise WhatsAppError(f"send failed with HTTP {resp.status_code}: {resp.text[:200]}")
        logger.info("Sent %d chunk(s) to %s", len(chunks), mask_phone(to))
        return len(chunks)

    def fetch_media(self, media_id: str) -> Tuple[bytes, str]:
        """Download an inbound media object; returns (bytes, mime_type)."""
        try:
            meta = self._http.get(
                f"{GRAPH_URL}/{self.api_version}/{media_id}", headers=self._headers, timeout=self.timeout
            )
            if meta.status_code != 200:
                raise WhatsAppError(f"media lookup HTTP {meta.status_code}")
            info = meta.json()
            blob = self._http.get(info["url"], headers=self._headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise WhatsAppError(f"media download failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise WhatsAppError(f"media lookup returned unexpected payload: {e}") from e
        if blob.status_code != 200:
            raise WhatsAppError(f"media download HTTP {blob.status_code}")
        return blob.content, info.get("mime_type") or "image/jpeg"


def verify_signature(payload: bytes, signature: Optional[str], app_secret: str) -> bool:
    """Check Meta's X-Hub-Signature-256 header (``sha256=<hex>``)."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.split("=", 1)[1])


def parse_webhook(body: Dict[str, Any]) -> List[InboundMessage]:
    """Extract customer messages from a Cloud API delivery; status updates yield nothing."""
    messages: List[InboundMessage] = []
    if not isinstance(body, dict):
        return messages
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for msg in value.get("messages") or []:
                msg_type = msg.get("type") or "unknown"
                text = ""
                media_id = None
                mime_type = None
                if msg_type == "text":
                    text = (msg.get("text") or {}).get("body") or ""
                elif msg_type == "image":
                    image = msg.get("image") or {}
                    media_id = image.get("id")
                    mime_type = image.get("mime_type")
                    text = image.get("caption") or ""
                elif msg_type == "interactive":
                    reply = msg.get("interactive") or {}
                    chosen = reply.get("button_reply") or reply.get("list_reply") or {}
                    text = chosen.get("title") or ""
                    msg_type = "text"
                elif msg_type == "button":
                    text = (msg.get("button") or {}).get("text") or ""
                    msg_type = "text"
                if not msg.get("id") or not msg.get("from"):
                    continue
                messages.append(
                    InboundMessage(
                        message_id=msg["id"],
                        customer_id=msg["from"],
                        type=msg_type,
                        text=text,
                        media_id=media_id,
                        mime_type=mime_type,
                        timestamp=msg.get("timestamp"),
                    )
                )
    return messages
