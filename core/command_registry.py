"""Declarative command registration with @command decorator."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from core.pipeline import Context

logger = logging.getLogger(__name__)

# Handler signature: async def handler(ctx: Context) -> None
CommandHandler = Callable[["Context"], Awaitable[None]]


@dataclass
class CommandSpec:
    """Metadata for a registered bot command."""

    name: str  # e.g. "exec", without the leading slash
    description: str  # shown in the Telegram command menu
    handler: CommandHandler
    requires_auth: bool = True  # sender must have at least one authorized command
    order: int = 0  # position in the command menu


class CommandRegistry:
    """Central store of bot commands."""

    def __init__(self) -> None:
        self._commands: Dict[str, CommandSpec] = {}

    def register(self, spec: CommandSpec) -> None:
        if spec.name in self._commands:
            logger.warning("Command %s registered twice, overwriting", spec.name)
        self._commands[spec.name] = spec

    def get(self, name: str) -> Optional[CommandSpec]:
        return self._commands.get(name)

    def list_all(self) -> List[CommandSpec]:
        return sorted(self._commands.values(), key=lambda s: (s.order, s.name))

    def menu(self) -> List[Tuple[str, str]]:
        """(name, description) pairs for the bot command menu."""
        return [(s.name, s.description) for s in self.list_all()]


# ── Module-level singleton used by the @command decorator ──
registry = CommandRegistry()


def command(name: str, description: str = "", requires_auth: bool = True, order: int = 0):
    """Decorator that registers an async handler as a bot command.

    Usage::

        @command("list", "List commands authorized for you")
        async def handle_list(ctx: Context) -> None:
            ...
    """

    def decorator(func: CommandHandler) -> CommandHandler:
        registry.register(
            CommandSpec(
                name=name,
                description=description,
                handler=func,
                requires_auth=requires_auth,
                order=order,
            )
        )
        return func

    return decorator
