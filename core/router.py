"""Message router — thin wrapper around the middleware pipeline."""

from __future__ import annotations

import logging
from typing import Optional

from channels.base import BaseChannel, IncomingMessage
from core.auth import AuthorizationTable
from core.executor import ExecutionCoordinator
from core.pipeline import Context, Pipeline

# Importing commands triggers @command decorators → populates the registry
import core.commands  # noqa: F401

logger = logging.getLogger(__name__)

INTERNAL_ERROR_TEXT = "Internal error, please try again later\\."


class Router:
    """Route incoming messages through a middleware pipeline."""

    def __init__(
        self,
        channel: BaseChannel,
        table: Optional[AuthorizationTable] = None,
        coordinator: Optional[ExecutionCoordinator] = None,
        config: Optional[dict] = None,
    ) -> None:
        self.channel = channel
        self.coordinator = coordinator or ExecutionCoordinator()
        self.config = config or {}
        self._table = table or AuthorizationTable()

        self.pipeline = self._build_pipeline()

    # ── Pipeline construction ──────────────────────────────────

    def _build_pipeline(self) -> Pipeline:
        from core.middlewares.logging_mw import logging_middleware
        from core.middlewares.command_parser import command_parser_middleware, command_dispatch_middleware
        from core.middlewares.auth_mw import auth_middleware

        return Pipeline(
            [
                logging_middleware,
                command_parser_middleware,
                auth_middleware,
                command_dispatch_middleware,
            ]
        )

    # ── Authorization table ────────────────────────────────────

    @property
    def table(self) -> AuthorizationTable:
        """The currently published authorization table."""
        return self._table

    def replace_table(self, table: AuthorizationTable) -> None:
        """Publish *table*; requests already in progress keep their snapshot."""
        self._table = table

    # ── Public entry point ─────────────────────────────────────

    async def handle_message(self, message: IncomingMessage) -> None:
        """Handle one normalized incoming message."""
        ctx = Context(
            message=message,
            user_id=str(message.user_id),
            router=self,
            channel=self.channel,
            coordinator=self.coordinator,
            table=self._table,
            config=self.config,
        )
        try:
            await self.pipeline.execute(ctx)
        except Exception:
            logger.error("Unhandled error processing message from user=%s", message.user_id, exc_info=True)
            try:
                await self._reply(message, INTERNAL_ERROR_TEXT)
            except Exception as e:
                # channel itself might be broken
                logger.warning("Failed to send internal error reply: %s", e)

    # ── Helpers (used by middlewares and commands) ──────────────

    async def _reply(self, message: IncomingMessage, text: str) -> None:
        """Send a MarkdownV2 reply to *message* in its chat and topic."""
        await self.channel.send_text(
            message.chat_id,
            text,
            reply_to_message_id=message.message_id,
            message_thread_id=message.message_thread_id,
        )
