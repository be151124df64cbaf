"""
Centralized constants for the command relay bot.

Collects defaults, limits and fixed reply texts that would otherwise be
scattered across modules.
"""

# ── Execution defaults ──
DEFAULT_EXEC_TIMEOUT_SECONDS = 15.0
DEFAULT_EXIT_TIMEOUT_SECONDS = 5.0

# ── Health endpoint ──
DEFAULT_HEALTH_PORT = 18800

# ── Reload ──
RELOAD_SIGNALS = ("SIGUSR1", "SIGHUP", "none")
DEFAULT_RELOAD_SIGNAL = "SIGUSR1"

# ── Fixed replies (MarkdownV2) ──
START_TEXT = (
    "This bot allows you to execute commands on the host it is running on\\.\n"
    "You can only execute commands authorized for your account in the configuration\\.\n"
    "\n"
    "\\- To see the list of commands you can execute, use `/list`\\.\n"
    "\\- To execute a command, use `/exec <index>`\\.\n"
    "\\- To cancel a running command, use `/cancel <index>`\\.\n"
)
NOT_AUTHORIZED_TEXT = "You are not authorized to execute any commands\\."
INVALID_INDEX_TEXT = "Invalid command index\\."
INDEX_OUT_OF_RANGE_TEXT = "Index out of range\\. Use `/list` to see the list of commands\\."
