"""Utility commands: /start."""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.command_registry import command
from utils.constants import START_TEXT

if TYPE_CHECKING:
    from core.pipeline import Context


@command("start", "Get started with the bot", requires_auth=False, order=0)
async def handle_start(ctx: "Context") -> None:
    await ctx.reply(START_TEXT)
