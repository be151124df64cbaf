"""Global fixtures for the RCE bot test suite."""

import asyncio
import sys
import time
from typing import List, Optional, Tuple

import pytest

from channels.base import BaseChannel, IncomingMessage
from core.auth import AuthorizationTable, AuthorizedCommand
from core.executor import ExecutionCoordinator


# Python helper processes give deterministic signal behavior regardless of the
# dispositions the test runner inherited.
GRACEFUL_SCRIPT = """
import signal, sys, time
def stop(*_):
    print("interrupted", flush=True)
    sys.exit(0)
signal.signal(signal.SIGINT, stop)
print("ready", flush=True)
time.sleep(30)
"""

STUBBORN_SCRIPT = """
import signal, time
signal.signal(signal.SIGINT, signal.SIG_IGN)
print("ready", flush=True)
time.sleep(30)
"""


def python_command(script: str, exec_timeout: float = 15.0, exit_timeout: float = 5.0) -> AuthorizedCommand:
    return AuthorizedCommand(
        name=sys.executable,
        args=("-c", script),
        exec_timeout=exec_timeout,
        exit_timeout=exit_timeout,
    )


async def wait_for_output(command: AuthorizedCommand, needle: bytes, timeout: float = 10.0) -> None:
    """Poll the slot's output buffer until *needle* shows up."""
    deadline = time.monotonic() + timeout
    while needle not in command.output:
        if time.monotonic() > deadline:
            raise AssertionError(f"{needle!r} not seen in output {bytes(command.output)!r}")
        await asyncio.sleep(0.02)


# ── FakeChannel ──


class FakeChannel(BaseChannel):
    """Test double that records all interactions."""

    def __init__(self, bot_username: Optional[str] = "rcebot"):
        super().__init__({})
        self.bot_username = bot_username
        self.sent: List[Tuple[str, str, Optional[int]]] = []  # (chat_id, text, reply_to)
        self.started = False
        self.updates_stopped = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop_updates(self):
        self.updates_stopped = True

    async def stop(self):
        self.stopped = True

    async def send_text(self, chat_id, text, reply_to_message_id=None, message_thread_id=None):
        self.sent.append((chat_id, text, reply_to_message_id))
        return len(self.sent)

    def last_sent_text(self) -> Optional[str]:
        return self.sent[-1][1] if self.sent else None

    def texts(self) -> List[str]:
        return [text for _, text, _ in self.sent]


# ── Fixtures ──


@pytest.fixture
def fake_channel():
    """FakeChannel instance."""
    return FakeChannel()


@pytest.fixture
def make_message():
    """Factory to create IncomingMessage easily."""
    counter = {"id": 0}

    def _make(
        text: str = "/start",
        user_id: str = "123",
        chat_id: str = "chat_1",
        message_id: int = None,
    ) -> IncomingMessage:
        counter["id"] += 1
        return IncomingMessage(
            channel="telegram",
            chat_id=chat_id,
            user_id=user_id,
            text=text,
            message_id=message_id if message_id is not None else counter["id"],
            sender_username="tester",
        )

    return _make


@pytest.fixture
def table():
    """User 123 may run four commands; user 456 has an empty list."""
    return AuthorizationTable({
        123: [
            AuthorizedCommand(name="echo", args=("hello",)),
            AuthorizedCommand(name="sh", args=("-c", "sleep 0.3; echo finished"), exit_timeout=2),
            AuthorizedCommand(name="sh", args=("-c", "echo 'a b'; exit 1")),
            AuthorizedCommand(name="printf", args=("%s\n", "`\\localhost`")),
        ],
        456: [],
    })


@pytest.fixture
def coordinator():
    return ExecutionCoordinator()


@pytest.fixture
def router(fake_channel, table, coordinator):
    """Router wired to the fake channel and the test table."""
    from core.router import Router
    return Router(fake_channel, table=table, coordinator=coordinator, config={})
