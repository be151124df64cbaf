"""Bot command text parsing.

Field examples below are based on ``"/start@username 1 2"``.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ParsedCommand:
    """A bot command extracted from message text."""

    name: str = ""  # "start"
    target_suffix: str = ""  # "username", empty if not addressed to a specific bot
    argument: str = ""  # "1 2", leading/trailing whitespace removed

    def __bool__(self) -> bool:
        return bool(self.name or self.target_suffix or self.argument)

    def __str__(self) -> str:
        text = "/" + self.name
        if self.target_suffix:
            text += "@" + self.target_suffix
        if self.argument:
            text += " " + self.argument
        return text


def parse_command(text: str) -> ParsedCommand:
    """Parse a bot command from *text*.

    Returns the zero ``ParsedCommand`` if the text is shorter than 2 characters
    or does not start with ``/``.
    """
    if not text or len(text) < 2 or text[0] != "/":
        return ParsedCommand()

    head = text[1:]
    argument = ""
    space = head.find(" ")
    if space != -1:
        argument = head[space + 1:].strip()
        head = head[:space]

    name, _, target_suffix = head.partition("@")
    return ParsedCommand(name=name, target_suffix=target_suffix, argument=argument)
