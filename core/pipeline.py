"""Middleware pipeline engine with request Context."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Tuple

from channels.base import BaseChannel, IncomingMessage
from core.auth import AuthorizationTable, AuthorizedCommand
from core.command_text import ParsedCommand
from core.executor import ExecutionCoordinator

if TYPE_CHECKING:
    from core.command_registry import CommandSpec

logger = logging.getLogger(__name__)


@dataclass
class Context:
    """Per-request context flowing through the middleware pipeline."""

    # ── Immutable request data ──
    message: IncomingMessage
    user_id: str

    # ── Component references (injected by Router) ──
    router: object  # Router instance — avoids circular import
    channel: BaseChannel
    coordinator: ExecutionCoordinator
    # Snapshot taken when the request arrived; a concurrent reload does not affect it.
    table: AuthorizationTable
    config: dict

    # ── Mutable working state (set by middlewares) ──
    command: ParsedCommand = ParsedCommand()
    spec: Optional["CommandSpec"] = None
    commands: Tuple[AuthorizedCommand, ...] = ()
    response: str = ""

    async def reply(self, text: str) -> None:
        """Reply to the triggering message with MarkdownV2 *text*."""
        self.response = text
        await self.router._reply(self.message, text)


# Type alias for a middleware function
Middleware = Callable[[Context, Callable[[], Awaitable[None]]], Awaitable[None]]


class Pipeline:
    """Execute an ordered list of middlewares as an onion (nested) chain."""

    def __init__(self, middlewares: List[Middleware]) -> None:
        self.middlewares = middlewares

    async def execute(self, ctx: Context) -> None:
        """Run the middleware chain for *ctx*."""

        async def _noop() -> None:
            """Terminal handler — does nothing."""

        # Build nested closures from right to left so that
        # mw[0] wraps mw[1] wraps … wraps _noop.
        handler = _noop
        for mw in reversed(self.middlewares):
            async def _wrap(_mw=mw, _next=handler) -> None:
                await _mw(ctx, _next)

            handler = _wrap

        try:
            await handler()
        except Exception:
            logger.error("Pipeline error for user=%s", ctx.user_id, exc_info=True)
            raise
