"""Command execution commands: /list, /exec, /cancel."""

from __future__ import annotations

import re
from typing import Optional, TYPE_CHECKING

from core.command_registry import command
from core.executor import SlotBusyError
from core.formatter import build_response, escape_markdown_v2_plaintext, format_command_list
from utils.constants import INDEX_OUT_OF_RANGE_TEXT, INVALID_INDEX_TEXT
from utils.helpers import format_duration

if TYPE_CHECKING:
    from core.pipeline import Context

_INDEX_RE = re.compile(r"[+-]?[0-9]+")


async def _require_index(ctx: "Context") -> Optional[int]:
    """Parse the command argument as an index into the sender's commands.

    Replies with a corrective message and returns None if it is not valid.
    """
    arg = ctx.command.argument
    if not _INDEX_RE.fullmatch(arg) or int(arg) < 0:
        await ctx.reply(INVALID_INDEX_TEXT)
        return None
    index = int(arg)
    if index >= len(ctx.commands):
        await ctx.reply(INDEX_OUT_OF_RANGE_TEXT)
        return None
    return index


@command("list", "List commands authorized for you to request execution", order=1)
async def handle_list(ctx: "Context") -> None:
    await ctx.reply(format_command_list(ctx.commands))


@command("exec", "Execute an authorized command at the specified index", order=2)
async def handle_exec(ctx: "Context") -> None:
    index = await _require_index(ctx)
    if index is None:
        return

    try:
        result = await ctx.coordinator.execute(ctx.commands[index], user_id=ctx.user_id)
    except SlotBusyError:
        await ctx.reply(f"The command is already running\\. Use `/cancel {index}` to cancel it\\.")
        return

    await ctx.reply(build_response(result.output, result.error))


@command("cancel", "Cancel a running command at the specified index", order=3)
async def handle_cancel(ctx: "Context") -> None:
    index = await _require_index(ctx)
    if index is None:
        return

    target = ctx.commands[index]
    if not ctx.coordinator.cancel(target):
        await ctx.reply(f"The command is not running\\. Use `/exec {index}` to execute it\\.")
        return

    wait = escape_markdown_v2_plaintext(format_duration(target.exit_timeout))
    await ctx.reply(
        f"The command has been canceled\\. You may need to wait up to {wait} for it to be killed\\."
    )
