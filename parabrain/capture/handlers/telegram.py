"""
Telegram Handler

Handles Telegram Bot API webhook updates and converts them to Messages.
Replies go out through sendMessage; photos are fetched through getFile.
"""

import base64
import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

import httpx

from ...common.config import CaptureSettings
from ...common.retry import RetryPolicy, fetch_with_retry
from ...common.schemas import CaptureSource
from .base import BaseHandler, Message

logger = logging.getLogger("parabrain.capture.handlers.telegram")

TELEGRAM_API = "https://api.telegram.org"
TELEGRAM_TEXT_LIMIT = 3900
REPLY_TARGET_MISSING = "message to be replied not found"

_MIME_BY_SUFFIX = {
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".heic": "image/heic",
}


class TelegramAPIError(Exception):
    """Bot API answered with ok=false or a non-2xx status"""


@dataclass
class TelegramPhoto:
    image_base64: str
    mime_type: str
    file_path: str
    byte_length: int


def infer_mime_type(file_path: str) -> str:
    lower = (file_path or "").lower()
    for suffix, mime in _MIME_BY_SUFFIX.items():
        if lower.endswith(suffix):
            return mime
    return "image/jpeg"


class TelegramHandler(BaseHandler):
    """
    Handler for Telegram webhook updates.

    Processes:
    - message / edited_message with text
    - photo messages (largest size, caption kept)

    Ignores everything else (callbacks, channel posts, service messages).
    """

    def __init__(
        self,
        bot_token: str,
        settings: CaptureSettings,
        webhook_secret: str = "",
        allowed_user_id: str = "",
        allowed_chat_id: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(CaptureSource.TELEGRAM)
        self._bot_token = bot_token
        self._webhook_secret = webhook_secret
        self._allowed_user_id = str(allowed_user_id or "")
        self._allowed_chat_id = str(allowed_chat_id or "")
        self._max_image_bytes = settings.image_max_bytes
        self._policy = RetryPolicy.from_settings(settings)
        self._client = client or httpx.AsyncClient()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def parse_event(self, raw_data: Dict[str, Any]) -> Optional[Message]:
        message = raw_data.get("message") or raw_data.get("edited_message")
        if not isinstance(message, dict):
            return None

        photos = message.get("photo") if isinstance(message.get("photo"), list) else []
        largest = None
        for photo in photos:
            if largest is None or int(photo.get("file_size") or 0) > int(largest.get("file_size") or 0):
                largest = photo

        chat_id = str((message.get("chat") or {}).get("id") or "")
        message_id = int(message.get("message_id") or 0)
        update_id = str(raw_data.get("update_id") or "")

        return Message(
            text=str(message.get("text") or "").strip(),
            user=str((message.get("from") or {}).get("id") or ""),
            channel=chat_id,
            source=CaptureSource.TELEGRAM,
            event_id=update_id or f"{chat_id}:{message_id}",
            message_id=message_id or None,
            photo_file_id=str((largest or {}).get("file_id") or "") or None,
            caption=str(message.get("caption") or "").strip(),
            raw_data=raw_data,
        )

    def verify_signature(self, body: bytes, signature: str) -> bool:
        """Compare X-Telegram-Bot-Api-Secret-Token with the configured secret"""
        if not self._webhook_secret:
            return True
        return hmac.compare_digest(self._webhook_secret, signature or "")

    def is_allowed(self, message: Message) -> bool:
        if self._allowed_user_id and message.user != self._allowed_user_id:
            return False
        if self._allowed_chat_id and message.channel != self._allowed_chat_id:
            return False
        return True

    # -- Bot API --------------------------------------------------------------

    def _method_url(self, method: str) -> str:
        return f"{TELEGRAM_API}/bot{self._bot_token}/{method}"

    async def send_text(self, chat_id: str, text: str, reply_to_message_id: Optional[int] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": (text or "")[:TELEGRAM_TEXT_LIMIT],
            "disable_web_page_preview": True,
        }
        if reply_to_message_id:
            body["reply_to_message_id"] = reply_to_message_id

        response = await fetch_with_retry(self._client, "POST", self._method_url("sendMessage"), self._policy, json=body)
        try:
            result = response.json()
        except ValueError:
            result = {}
        if not response.is_success or result.get("ok") is False:
            raise TelegramAPIError(result.get("description") or f"Telegram API error ({response.status_code})")
        return result

    async def send_reply(self, message: Message, text: str) -> None:
        """Reply in-thread, falling back to a plain message if the original is gone"""
        try:
            await self.send_text(message.channel, text, reply_to_message_id=message.message_id)
        except TelegramAPIError as e:
            if message.message_id and REPLY_TARGET_MISSING in str(e).lower():
                logger.info("Reply target %s missing, sending without reference", message.message_id)
                await self.send_text(message.channel, text)
                return
            raise

    async def fetch_photo(self, file_id: str) -> TelegramPhoto:
        """Resolve a file_id and download it, enforcing the image size cap"""
        lookup = await fetch_with_retry(
            self._client, "GET", self._method_url("getFile"), self._policy, params={"file_id": file_id}
        )
        try:
            payload = lookup.json()
        except ValueError:
            payload = {}
        file_path = str(((payload or {}).get("result") or {}).get("file_path") or "")
        if not lookup.is_success or not payload.get("ok") or not file_path:
            raise TelegramAPIError("Telegram getFile failed")

        download = await fetch_with_retry(
            self._client, "GET", f"{TELEGRAM_API}/file/bot{self._bot_token}/{file_path}", self._policy
        )
        if not download.is_success:
            raise TelegramAPIError(f"Telegram file download failed ({download.status_code})")

        data = download.content
        if not data:
            raise TelegramAPIError("Telegram file payload is empty")
        if len(data) > self._max_image_bytes:
            raise TelegramAPIError(f"Image too large ({len(data)} bytes)")

        content_type = download.headers.get("content-type", "").lower()
        mime_type = content_type if content_type.startswith("image/") else infer_mime_type(file_path)
        return TelegramPhoto(
            image_base64=base64.b64encode(data).decode("ascii"),
            mime_type=mime_type,
            file_path=file_path,
            byte_length=len(data),
        )
