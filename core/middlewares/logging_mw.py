"""Logging middleware — records handled commands and processing time."""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, TYPE_CHECKING

if TYPE_CHECKING:
    from core.pipeline import Context

logger = logging.getLogger(__name__)


async def logging_middleware(ctx: "Context", next: Callable[[], Awaitable[None]]) -> None:
    msg = ctx.message
    logger.debug(
        "Message id=%s from user=%s (%s) chat=%s: %s",
        msg.message_id,
        ctx.user_id,
        msg.sender_username or msg.sender_display_name or "-",
        msg.chat_id,
        (msg.text or "")[:60],
    )
    start = time.time()
    try:
        await next()
    finally:
        if ctx.spec is not None:
            logger.info(
                "Handled /%s from user=%s chat=%s in %.2fs response_len=%d",
                ctx.spec.name,
                ctx.user_id,
                msg.chat_id,
                time.time() - start,
                len(ctx.response),
            )
