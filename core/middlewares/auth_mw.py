"""Auth middleware — loads the sender's authorized commands."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TYPE_CHECKING

from utils.constants import NOT_AUTHORIZED_TEXT

if TYPE_CHECKING:
    from core.pipeline import Context

logger = logging.getLogger(__name__)


async def auth_middleware(ctx: "Context", call_next: Callable[[], Awaitable[None]]) -> None:
    ctx.commands = ctx.table.commands_for(ctx.user_id)
    if ctx.spec is not None and ctx.spec.requires_auth and not ctx.commands:
        logger.info(
            "Unauthorized /%s from user_id=%s chat=%s",
            ctx.spec.name,
            ctx.user_id,
            ctx.message.chat_id,
        )
        await ctx.reply(NOT_AUTHORIZED_TEXT)
        return
    await call_next()
