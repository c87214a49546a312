"""
Base Handler

Abstract base class for chat-channel webhook handlers.
Provides a common interface for turning channel updates into Messages and
for sending the capture reply back.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

from ...common.schemas import CaptureSource


@dataclass
class Message:
    """
    Common inbound message format for all chat channels.

    ``event_id`` is the channel's delivery id and keys the capture log, so a
    redelivered update maps onto the same row.
    """
    text: str
    user: str
    channel: str
    source: CaptureSource
    event_id: str
    message_id: Optional[int] = None
    reply_token: Optional[str] = None
    photo_file_id: Optional[str] = None
    caption: str = ""
    raw_data: Optional[Dict[str, Any]] = None

    @property
    def is_photo(self) -> bool:
        return bool(self.photo_file_id)

    @property
    def is_valid(self) -> bool:
        """Has text or a photo"""
        return bool(self.text.strip()) or self.is_photo

    @property
    def is_id_command(self) -> bool:
        return not self.is_photo and self.text.strip().lower() == "id"

    @property
    def log_message(self) -> str:
        """What the capture log records as the user message"""
        if self.is_photo:
            caption = " ".join(self.caption.split())
            return f"[PHOTO] {caption}" if caption else "[PHOTO] (no caption)"
        return self.text


class BaseHandler(ABC):
    """
    Abstract base class for channel handlers.

    Each handler must implement:
    - parse_event: Convert a raw update to a Message
    - verify_signature: Verify the webhook secret/signature
    - send_reply: Deliver the reply text for a Message
    """

    def __init__(self, source: CaptureSource):
        self.source = source

    @abstractmethod
    async def parse_event(self, raw_data: Dict[str, Any]) -> Optional[Message]:
        """
        Parse raw update data into a Message.

        Returns:
            Message object or None if the update should be ignored
        """
        pass

    async def parse_events(self, raw_data: Dict[str, Any]) -> List[Message]:
        """Channels that batch several events per delivery override this"""
        message = await self.parse_event(raw_data)
        return [message] if message else []

    @abstractmethod
    def verify_signature(self, body: bytes, signature: str) -> bool:
        """
        Verify the webhook signature.

        Args:
            body: Raw request body
            signature: Signature or secret token from headers

        Returns:
            True if the request is authentic
        """
        pass

    @abstractmethod
    async def send_reply(self, message: Message, text: str) -> None:
        pass

    def is_allowed(self, message: Message) -> bool:
        """Owner allow-list check; override per channel"""
        return True

    def should_process(self, message: Message) -> bool:
        """Skip empty updates and senders outside the allow-list"""
        if not message.is_valid:
            return False
        return self.is_allowed(message)

    def id_reply(self, message: Message) -> str:
        """Reply to the ``id`` discovery command"""
        return f"user_id={message.user}\nchat_id={message.channel}"
