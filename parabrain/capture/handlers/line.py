"""
LINE Handler

Handles LINE Messaging API webhooks. One delivery may carry several events;
only text messages are captured. Replies use the reply token.
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional, Dict, Any, List

import httpx

from ...common.config import CaptureSettings
from ...common.retry import RetryPolicy, fetch_with_retry
from ...common.schemas import CaptureSource
from .base import BaseHandler, Message

logger = logging.getLogger("parabrain.capture.handlers.line")

LINE_REPLY_URL = "https://api.line.me/v2/bot/message/reply"
LINE_TEXT_LIMIT = 5000


class LineHandler(BaseHandler):
    """Handler for LINE webhook events (text messages only)."""

    def __init__(
        self,
        channel_access_token: str,
        settings: CaptureSettings,
        channel_secret: str = "",
        allowed_user_id: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(CaptureSource.LINE)
        self._access_token = channel_access_token
        self._channel_secret = channel_secret
        self._allowed_user_id = allowed_user_id
        self._policy = RetryPolicy.from_settings(settings)
        self._client = client or httpx.AsyncClient()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _parse_text_event(self, event: Dict[str, Any]) -> Optional[Message]:
        if event.get("type") != "message":
            return None
        message = event.get("message") or {}
        if message.get("type") != "text":
            return None
        user_id = str((event.get("source") or {}).get("userId") or "")
        event_id = str(event.get("webhookEventId") or message.get("id") or "")
        return Message(
            text=str(message.get("text") or "").strip(),
            user=user_id,
            channel=user_id,
            source=CaptureSource.LINE,
            event_id=event_id,
            reply_token=event.get("replyToken"),
            raw_data=event,
        )

    async def parse_event(self, raw_data: Dict[str, Any]) -> Optional[Message]:
        """First text message of the delivery"""
        messages = await self.parse_events(raw_data)
        return messages[0] if messages else None

    async def parse_events(self, raw_data: Dict[str, Any]) -> List[Message]:
        messages = []
        for event in raw_data.get("events") or []:
            if isinstance(event, dict):
                message = self._parse_text_event(event)
                if message is not None:
                    messages.append(message)
        return messages

    def verify_signature(self, body: bytes, signature: str) -> bool:
        """
        Verify X-Line-Signature.

        The signature is base64(HMAC-SHA256(channel_secret, body)).
        """
        if not self._channel_secret:
            return True
        if not signature:
            return False
        digest = hmac.new(self._channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("ascii")
        return hmac.compare_digest(expected, signature)

    def is_allowed(self, message: Message) -> bool:
        return not self._allowed_user_id or message.user == self._allowed_user_id

    def id_reply(self, message: Message) -> str:
        return f"Your User ID is:\n{message.user}"

    async def send_reply(self, message: Message, text: str) -> None:
        if not message.reply_token:
            logger.warning("LINE event %s has no reply token", message.event_id)
            return
        response = await fetch_with_retry(
            self._client,
            "POST",
            LINE_REPLY_URL,
            self._policy,
            headers={"Authorization": f"Bearer {self._access_token}"},
            json={
                "replyToken": message.reply_token,
                "messages": [{"type": "text", "text": (text or "")[:LINE_TEXT_LIMIT]}],
            },
        )
        if not response.is_success:
            # reply tokens are single-use; nothing to retry with
            logger.warning("LINE reply failed (%d): %s", response.status_code, response.text[:200])
