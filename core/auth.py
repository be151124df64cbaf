"""
Authorization module - per-user allowlists of executable commands
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple

from utils.constants import DEFAULT_EXEC_TIMEOUT_SECONDS, DEFAULT_EXIT_TIMEOUT_SECONDS
from utils.helpers import parse_duration

if TYPE_CHECKING:
    from core.executor import CancelHandle

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the authorization config is malformed."""


@dataclass(eq=False)
class AuthorizedCommand:
    """A command a user is allowed to execute.

    Besides the configured fields, each instance is an execution slot: it carries
    the cancellation handle of the in-flight execution (if any) and the buffer
    the running process writes its output into. Both belong exclusively to the
    execution that claimed the slot.
    """

    name: str
    args: Tuple[str, ...] = ()
    exec_timeout: float = DEFAULT_EXEC_TIMEOUT_SECONDS
    exit_timeout: float = DEFAULT_EXIT_TIMEOUT_SECONDS

    cancel_handle: Optional["CancelHandle"] = field(default=None, repr=False)
    output: bytearray = field(default_factory=bytearray, repr=False)

    def __post_init__(self):
        self.args = tuple(self.args)
        if not _is_positive(self.exec_timeout):
            self.exec_timeout = DEFAULT_EXEC_TIMEOUT_SECONDS
        if not _is_positive(self.exit_timeout):
            self.exit_timeout = DEFAULT_EXIT_TIMEOUT_SECONDS

    @property
    def is_running(self) -> bool:
        return self.cancel_handle is not None

    @property
    def argv(self) -> List[str]:
        return [self.name, *self.args]

    def display(self) -> str:
        """Shell-like rendering used in log lines."""
        return " ".join(f"'{a}'" if " " in a else a for a in self.argv)


def _is_positive(seconds) -> bool:
    return bool(seconds) and math.isfinite(seconds) and seconds > 0


class AuthorizationTable:
    """Immutable snapshot mapping sender IDs to their authorized commands.

    A table is built once and never changed afterwards; reloading the config
    produces a new table which replaces the published one.
    """

    def __init__(self, users: Optional[Mapping[int, Iterable[AuthorizedCommand]]] = None):
        self._users: Mapping[int, Tuple[AuthorizedCommand, ...]] = MappingProxyType(
            {int(uid): tuple(commands) for uid, commands in (users or {}).items()}
        )

    def commands_for(self, user_id) -> Tuple[AuthorizedCommand, ...]:
        """Return the ordered commands of *user_id* (empty if unknown)."""
        try:
            key = int(user_id)
        except (TypeError, ValueError):
            return ()
        return self._users.get(key, ())

    def __len__(self) -> int:
        return len(self._users)

    def __contains__(self, user_id) -> bool:
        return bool(self.commands_for(user_id))

    @property
    def user_ids(self) -> List[int]:
        return sorted(self._users)

    @property
    def command_count(self) -> int:
        return sum(len(v) for v in self._users.values())

    @classmethod
    def from_config(cls, users: Any) -> "AuthorizationTable":
        """Build a table from the ``users`` config section.

        Raises ConfigError on the first invalid entry; no partial table is
        ever returned.
        """
        if users is None:
            users = []
        if not isinstance(users, list):
            raise ConfigError("users must be a list")

        table: Dict[int, List[AuthorizedCommand]] = {}
        for i, user in enumerate(users):
            path = f"users[{i}]"
            if not isinstance(user, dict):
                raise ConfigError(f"{path} must be a mapping")
            uid = _parse_user_id(user.get("id"), path)
            if uid in table:
                raise ConfigError(f"{path}.id: duplicate user id {uid}")

            raw_commands = user.get("commands") or []
            if not isinstance(raw_commands, list):
                raise ConfigError(f"{path}.commands must be a list")
            table[uid] = [
                _parse_command(raw, f"{path}.commands[{j}]") for j, raw in enumerate(raw_commands)
            ]

        result = cls(table)
        logger.info(
            "Authorization table built: %d user(s), %d command(s)",
            len(result),
            result.command_count,
        )
        return result


def _parse_user_id(raw, path: str) -> int:
    if isinstance(raw, bool):
        raise ConfigError(f"{path}.id must be an integer")
    try:
        uid = int(str(raw).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"{path}.id must be an integer, got {raw!r}") from None
    if not -(2 ** 63) <= uid < 2 ** 63:
        raise ConfigError(f"{path}.id out of 64-bit range: {uid}")
    return uid


def _parse_command(raw, path: str) -> AuthorizedCommand:
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must be a mapping")

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"{path}.name must be a non-empty string")

    args = raw.get("args") or []
    if not isinstance(args, list):
        raise ConfigError(f"{path}.args must be a list")
    if any(isinstance(a, (dict, list)) or a is None for a in args):
        raise ConfigError(f"{path}.args must contain only scalar values")

    timeouts = {}
    for key, alias in (("exec_timeout", "execTimeout"), ("exit_timeout", "exitTimeout")):
        value = raw.get(key, raw.get(alias))
        try:
            timeouts[key] = parse_duration(value) if value is not None else 0.0
        except ValueError as e:
            raise ConfigError(f"{path}.{key}: {e}") from None
        if timeouts[key] < 0:
            raise ConfigError(f"{path}.{key} must not be negative")

    return AuthorizedCommand(
        name=name,
        args=tuple(str(a) for a in args),
        exec_timeout=timeouts["exec_timeout"],
        exit_timeout=timeouts["exit_timeout"],
    )
