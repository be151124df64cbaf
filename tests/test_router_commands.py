"""Tests for core/router.py — bot command handling."""

import asyncio

import pytest

from core.auth import AuthorizationTable, AuthorizedCommand
from core.command_registry import registry
from core.router import INTERNAL_ERROR_TEXT
from utils.constants import (
    INDEX_OUT_OF_RANGE_TEXT,
    INVALID_INDEX_TEXT,
    NOT_AUTHORIZED_TEXT,
    START_TEXT,
)


async def _wait_running(command: AuthorizedCommand, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not command.is_running:
        assert loop.time() < deadline, "command never started"
        await asyncio.sleep(0.01)


class TestRegistry:

    def test_menu_order(self):
        assert [name for name, _ in registry.menu()] == ["start", "list", "exec", "cancel"]

    def test_descriptions(self):
        menu = dict(registry.menu())
        assert menu["list"] == "List commands authorized for you to request execution"
        assert menu["exec"] == "Execute an authorized command at the specified index"
        assert menu["cancel"] == "Cancel a running command at the specified index"


class TestStartCommand:

    @pytest.mark.asyncio
    async def test_start_command(self, router, make_message, fake_channel):
        msg = make_message(text="/start")
        await router.handle_message(msg)
        assert fake_channel.sent == [("chat_1", START_TEXT, msg.message_id)]

    @pytest.mark.asyncio
    async def test_start_for_unknown_user(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/start", user_id="999"))
        assert fake_channel.last_sent_text() == START_TEXT


class TestListCommand:

    @pytest.mark.asyncio
    async def test_list(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/list"))
        assert fake_channel.last_sent_text() == (
            "\\[0\\] `echo hello`\n"
            "\\[1\\] `sh -c 'sleep 0.3; echo finished'`\n"
            "\\[2\\] `sh -c 'echo 'a b'; exit 1'`\n"
            "\\[3\\] `printf %s\n \\`\\\\localhost\\``\n"
        )

    @pytest.mark.asyncio
    async def test_list_addressed_to_this_bot(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/list@RCEBot"))
        assert fake_channel.last_sent_text().startswith("\\[0\\] `echo hello`\n")

    @pytest.mark.asyncio
    async def test_list_uses_published_table(self, router, make_message, fake_channel):
        router.replace_table(AuthorizationTable({123: [AuthorizedCommand(name="uptime")]}))
        await router.handle_message(make_message(text="/list"))
        assert fake_channel.last_sent_text() == "\\[0\\] `uptime`\n"


class TestExecCommand:

    @pytest.mark.asyncio
    async def test_exec(self, router, make_message, fake_channel):
        msg = make_message(text="/exec 0")
        await router.handle_message(msg)
        assert fake_channel.sent == [("chat_1", "```\nhello\n```\n", msg.message_id)]

    @pytest.mark.asyncio
    async def test_exec_plus_sign_index(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/exec +0"))
        assert fake_channel.last_sent_text() == "```\nhello\n```\n"

    @pytest.mark.asyncio
    async def test_exec_failure_reports_exit_status(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/exec 2"))
        assert fake_channel.last_sent_text() == "```\na b\n```\nexit status 1"

    @pytest.mark.asyncio
    async def test_exec_output_is_escaped(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/exec 3"))
        assert fake_channel.last_sent_text() == "```\n\\`\\\\localhost\\`\n```\n"

    @pytest.mark.asyncio
    async def test_exec_already_running(self, router, make_message, fake_channel):
        first = make_message(text="/exec 1")
        second = make_message(text="/exec 1")
        await asyncio.gather(router.handle_message(first), router.handle_message(second))

        replies = {reply_to: text for _, text, reply_to in fake_channel.sent}
        assert sorted(replies.values()) == sorted([
            "```\nfinished\n```\n",
            "The command is already running\\. Use `/cancel 1` to cancel it\\.",
        ])

    @pytest.mark.asyncio
    async def test_exec_after_completion(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/exec 0"))
        await router.handle_message(make_message(text="/exec 0"))
        assert fake_channel.texts() == ["```\nhello\n```\n"] * 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["/exec", "/exec abc", "/exec -1", "/exec 1.5", "/exec 0 1"])
    async def test_invalid_index(self, router, make_message, fake_channel, text):
        await router.handle_message(make_message(text=text))
        assert fake_channel.texts() == [INVALID_INDEX_TEXT]

    @pytest.mark.asyncio
    async def test_index_out_of_range(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/exec 4"))
        assert fake_channel.texts() == [INDEX_OUT_OF_RANGE_TEXT]


class TestCancelCommand:

    @pytest.mark.asyncio
    async def test_cancel_not_running(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/cancel 0"))
        assert fake_channel.texts() == [
            "The command is not running\\. Use `/exec 0` to execute it\\."
        ]

    @pytest.mark.asyncio
    async def test_cancel_running(self, router, make_message, fake_channel, table):
        exec_msg = make_message(text="/exec 1")
        exec_task = asyncio.create_task(router.handle_message(exec_msg))
        await _wait_running(table.commands_for(123)[1])

        cancel_msg = make_message(text="/cancel 1")
        await router.handle_message(cancel_msg)
        assert fake_channel.sent[0] == (
            "chat_1",
            "The command has been canceled\\. You may need to wait up to 2s for it to be killed\\.",
            cancel_msg.message_id,
        )

        await asyncio.wait_for(exec_task, timeout=5)
        _, text, reply_to = fake_channel.sent[1]
        assert reply_to == exec_msg.message_id
        assert text.startswith("```\n")
        assert "command canceled" in text

    @pytest.mark.asyncio
    async def test_cancel_invalid_index(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/cancel x"))
        await router.handle_message(make_message(text="/cancel 10"))
        assert fake_channel.texts() == [INVALID_INDEX_TEXT, INDEX_OUT_OF_RANGE_TEXT]


class TestAuthorization:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["/list", "/exec 0", "/cancel 0"])
    async def test_unknown_user_denied(self, router, make_message, fake_channel, text):
        await router.handle_message(make_message(text=text, user_id="999"))
        assert fake_channel.texts() == [NOT_AUTHORIZED_TEXT]

    @pytest.mark.asyncio
    async def test_empty_command_list_denied(self, router, make_message, fake_channel):
        await router.handle_message(make_message(text="/list", user_id="456"))
        assert fake_channel.texts() == [NOT_AUTHORIZED_TEXT]

    @pytest.mark.asyncio
    async def test_index_never_reaches_other_users_commands(self, router, make_message, fake_channel, coordinator):
        await router.handle_message(make_message(text="/exec 0", user_id="456"))
        assert fake_channel.texts() == [NOT_AUTHORIZED_TEXT]
        assert coordinator.running_count == 0


class TestIgnoredMessages:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["hello", "/", "/unknown", "/list@otherbot", "/@rcebot", "!list"])
    async def test_no_reply(self, router, make_message, fake_channel, text):
        await router.handle_message(make_message(text=text))
        assert fake_channel.sent == []

    @pytest.mark.asyncio
    async def test_suffix_ignored_when_username_unknown(self, router, make_message, fake_channel):
        fake_channel.bot_username = None
        await router.handle_message(make_message(text="/list@rcebot"))
        assert fake_channel.sent == []


class TestErrors:

    @pytest.mark.asyncio
    async def test_internal_error_reply(self, router, make_message, fake_channel):
        class BrokenCoordinator:
            async def execute(self, command, user_id=None):
                raise RuntimeError("boom")

        router.coordinator = BrokenCoordinator()
        await router.handle_message(make_message(text="/exec 0"))
        assert fake_channel.texts() == [INTERNAL_ERROR_TEXT]
