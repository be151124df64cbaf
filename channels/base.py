"""
Base classes for message channels
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Callable, Awaitable


@dataclass
class IncomingMessage:
    """Unified inbound message: sender, raw text and where to reply"""
    channel: str  # "telegram"
    chat_id: str  # Reply target chat
    user_id: str  # Sender identifier (Telegram numeric user ID)
    text: str  # Raw message text
    message_id: Optional[int] = None  # Replied to by outbound messages
    message_thread_id: Optional[int] = None  # Forum topic, if any
    sender_username: Optional[str] = None
    sender_display_name: Optional[str] = None


class BaseChannel(ABC):
    """Abstract base class for message channels"""

    def __init__(self, config: dict):
        self.config = config
        self.bot_username: Optional[str] = None
        self._message_handler: Optional[Callable[[IncomingMessage], Awaitable[None]]] = None

    @abstractmethod
    async def start(self):
        """Start listening for messages"""
        pass

    @abstractmethod
    async def stop(self):
        """Gracefully stop the channel"""
        pass

    async def stop_updates(self):
        """Stop receiving new messages while still allowing replies"""
        pass

    @abstractmethod
    async def send_text(
        self,
        chat_id: str,
        text: str,
        reply_to_message_id: Optional[int] = None,
        message_thread_id: Optional[int] = None,
    ) -> Optional[int]:
        """Send a MarkdownV2 text message, returns the sent message ID"""
        pass

    def set_message_handler(self, handler: Callable[[IncomingMessage], Awaitable[None]]):
        """Register message callback"""
        self._message_handler = handler
