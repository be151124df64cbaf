"""Command parser middleware — resolves bot commands via the registry."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TYPE_CHECKING

from core.command_registry import registry
from core.command_text import parse_command

if TYPE_CHECKING:
    from core.pipeline import Context

logger = logging.getLogger(__name__)


async def command_parser_middleware(ctx: "Context", next: Callable[[], Awaitable[None]]) -> None:
    parsed = parse_command(ctx.message.text or "")
    if not parsed.name:
        return

    # Ignore commands addressed to other bots.
    bot_username = getattr(ctx.channel, "bot_username", None)
    if parsed.target_suffix and parsed.target_suffix.lower() != (bot_username or "").lower():
        logger.debug("Ignoring command for other bot: %s", parsed)
        return

    spec = registry.get(parsed.name)
    if spec is None:
        logger.debug("Ignoring unknown command: %s", parsed)
        return

    ctx.command = parsed
    ctx.spec = spec
    await next()


async def command_dispatch_middleware(ctx: "Context", next: Callable[[], Awaitable[None]]) -> None:
    await ctx.spec.handler(ctx)
    await next()
