"""
Reply formatting for Telegram MarkdownV2
"""
import logging
import re
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)

# Characters reserved by MarkdownV2 outside of code entities.
_PLAINTEXT_ESCAPE_RE = re.compile(r"([`\\_*\[\]()~>#+\-=|{}.!])")
# Inside pre/code entities only backtick and backslash must be escaped.
_CODE_ESCAPE_RE = re.compile(r"([`\\])")

CODE_FENCE = "```"


def escape_markdown_v2_plaintext(text: str) -> str:
    """Escape *text* for use as MarkdownV2 plain text."""
    return _PLAINTEXT_ESCAPE_RE.sub(r"\\\1", text)


def escape_markdown_v2_code(text: str) -> str:
    """Escape *text* for use inside a MarkdownV2 code span or code block."""
    return _CODE_ESCAPE_RE.sub(r"\\\1", text)


def decode_output(output: Union[bytes, bytearray, str]) -> str:
    if isinstance(output, str):
        return output
    return bytes(output).decode("utf-8", errors="replace")


def build_response(output: Union[bytes, bytearray, str], error: Optional[BaseException] = None) -> str:
    """
    Build the chat reply for a finished command execution.

    Renders *output* in a fenced code block, followed by *error* (if any).
    Backticks and backslashes in the output are escaped; a newline is added
    before the closing fence when the output is empty or does not end in
    one. The error message is escaped as MarkdownV2 plain text.
    """
    text = decode_output(output)
    parts = [CODE_FENCE, "\n", escape_markdown_v2_code(text)]
    if not text or not text.endswith("\n"):
        parts.append("\n")
    parts.append(CODE_FENCE)
    parts.append("\n")
    if error is not None:
        parts.append(escape_markdown_v2_plaintext(str(error)))
    return "".join(parts)


def _quote_arg(arg: str) -> str:
    escaped = escape_markdown_v2_code(arg)
    if " " in arg:
        return f"'{escaped}'"
    return escaped


def format_command_list(commands: Iterable) -> str:
    """
    Render authorized commands for /list, one per line:

        \\[0\\] `name arg1 'arg with space'`
    """
    lines = []
    for index, command in enumerate(commands):
        rendered = " ".join(_quote_arg(part) for part in (command.name, *command.args))
        lines.append(f"\\[{index}\\] `{rendered}`\n")
    return "".join(lines)
