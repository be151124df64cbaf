"""
Telegram channel implementation
"""
import asyncio
import logging
import re
from typing import List, Optional, Tuple

from telegram import BotCommand, ReplyParameters, Update
from telegram.constants import ParseMode
from telegram.error import BadRequest, Forbidden, InvalidToken, NetworkError, RetryAfter, TimedOut
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from channels.base import BaseChannel, IncomingMessage

logger = logging.getLogger(__name__)


class TelegramChannel(BaseChannel):
    """Telegram Bot implementation (long polling or webhook)"""

    def __init__(self, config: dict, bot_commands: Optional[List[Tuple[str, str]]] = None):
        super().__init__(config)

        self.token = config['token']
        self.base_url = str(config.get('base_url') or '').strip()
        self.webhook = config.get('webhook') or {}
        self.startup_retries = max(1, int(config.get('startup_retries', 3)))
        self.startup_retry_delay = max(0.0, float(config.get('startup_retry_delay', 5.0)))
        self.handler_drain_timeout = max(0.0, float(config.get('handler_drain_timeout', 5.0)))
        self.bot_commands = bot_commands or []

        self.app: Optional[Application] = None
        self.bot_id: Optional[int] = None
        self._handler_tasks: set[asyncio.Task] = set()

        logger.info("TelegramChannel initialized")

    def _build_application(self) -> Application:
        builder = Application.builder().token(self.token)
        if self.base_url:
            builder = builder.base_url(self.base_url)
        return builder.build()

    async def _retry(self, what: str, func):
        """Retry transient API failures a bounded number of times."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func()
            except (InvalidToken, Forbidden, BadRequest):
                # BadRequest subclasses NetworkError but is never transient.
                raise
            except RetryAfter as e:
                if attempt >= self.startup_retries:
                    raise
                retry_after = e.retry_after
                delay = retry_after.total_seconds() if hasattr(retry_after, "total_seconds") else float(retry_after)
                logger.warning("Rate limited while trying to %s, retrying in %.0fs", what, delay)
            except (TimedOut, NetworkError) as e:
                if attempt >= self.startup_retries:
                    raise
                delay = self.startup_retry_delay
                logger.warning("Failed to %s (%s), retrying in %.0fs", what, e, delay)
            await asyncio.sleep(delay)

    async def start(self):
        """Start Telegram bot"""
        self.app = self._build_application()
        self.app.add_handler(MessageHandler(filters.TEXT, self._on_message))

        await self._retry("initialize bot", self.app.initialize)
        me = await self._retry("get bot info", self.app.bot.get_me)
        self.bot_id = me.id
        self.bot_username = me.username.lower() if me.username else None

        if self.bot_commands:
            commands = [BotCommand(name, description) for name, description in self.bot_commands]
            await self._retry("set bot commands", lambda: self.app.bot.set_my_commands(commands))

        await self.app.start()

        if self.webhook.get('enabled', False):
            kwargs = dict(
                listen=str(self.webhook.get('listen', '127.0.0.1')),
                port=int(self.webhook.get('port', 8443)),
                url_path=str(self.webhook.get('url_path', '')),
                webhook_url=self.webhook.get('url') or None,
                secret_token=self.webhook.get('secret_token') or None,
                allowed_updates=[Update.MESSAGE],
            )
            unix_socket = str(self.webhook.get('unix_socket') or '').strip()
            if unix_socket:
                kwargs['unix'] = unix_socket
            await self.app.updater.start_webhook(**kwargs)
            logger.info(
                "Telegram webhook listening on %s",
                unix_socket or f"{kwargs['listen']}:{kwargs['port']}/{kwargs['url_path']}",
            )
        else:
            await self.app.updater.start_polling(allowed_updates=[Update.MESSAGE])

        logger.info("Telegram bot started: id=%s username=%s", self.bot_id, self.bot_username)

    async def stop_updates(self):
        """Stop polling / the webhook listener; sending keeps working"""
        if self.app and self.app.updater and self.app.updater.running:
            await self.app.updater.stop()
            logger.info("Telegram updates stopped")

    async def stop(self):
        """Stop bot gracefully"""
        await self.stop_updates()
        if self._handler_tasks:
            # Let in-flight handlers deliver their replies before cancelling them.
            _, pending = await asyncio.wait(set(self._handler_tasks), timeout=self.handler_drain_timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._handler_tasks.clear()
        if self.app:
            if self.app.running:
                await self.app.stop()
            await self.app.shutdown()
            logger.info("Telegram bot stopped")

    async def _dispatch_message(self, msg: IncomingMessage):
        """Run message handler in a background task so update polling stays responsive."""
        if not self._message_handler:
            return
        try:
            await self._message_handler(msg)
        except Exception as e:
            logger.error(f"Message handler error: {e}", exc_info=True)

    @staticmethod
    def _strip_markup_for_plain(text: str) -> str:
        """Undo MarkdownV2 escaping before plain-text fallback sending"""
        return re.sub(r'\\(.)', r'\1', text, flags=re.DOTALL)

    async def send_text(
        self,
        chat_id: str,
        text: str,
        reply_to_message_id: Optional[int] = None,
        message_thread_id: Optional[int] = None,
    ) -> Optional[int]:
        """Send a MarkdownV2 message as a reply, falling back to plain text."""
        if not self.app:
            logger.error("Cannot send message: bot not started")
            return None

        reply_parameters = None
        if reply_to_message_id is not None:
            reply_parameters = ReplyParameters(message_id=reply_to_message_id, allow_sending_without_reply=True)

        try:
            msg = await self.app.bot.send_message(
                chat_id=int(chat_id),
                text=text,
                parse_mode=ParseMode.MARKDOWN_V2,
                message_thread_id=message_thread_id,
                reply_parameters=reply_parameters,
            )
            return msg.message_id
        except BadRequest as e:
            logger.warning(f"Failed to send MarkdownV2 message, retrying as plain text: {e}")
        except Exception as e:
            logger.error(f"Failed to send message: {e}")
            return None

        try:
            msg = await self.app.bot.send_message(
                chat_id=int(chat_id),
                text=self._strip_markup_for_plain(text),
                message_thread_id=message_thread_id,
                reply_parameters=reply_parameters,
            )
            return msg.message_id
        except Exception as e:
            logger.error(f"Failed to send message even without parse mode: {e}")
            return None

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle incoming message"""
        message = update.message
        if not message or not message.from_user or not message.text:
            return

        sender = message.from_user
        msg = IncomingMessage(
            channel="telegram",
            chat_id=str(message.chat_id),
            user_id=str(sender.id),
            text=message.text,
            message_id=message.message_id,
            message_thread_id=message.message_thread_id if message.is_topic_message else None,
            sender_username=sender.username,
            sender_display_name=sender.full_name,
        )

        # Forward to handler
        if self._message_handler:
            task = asyncio.create_task(self._dispatch_message(msg))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
