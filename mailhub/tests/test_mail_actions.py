"""
Tests for the mail actions service.
"""

import pytest

from mailhub.providers.email.base import (
    AuthError,
    BatchMutationError,
    NotFoundError,
    SendEmailParams,
)


@pytest.fixture
async def stored_thread(store_with_account, make_email, make_bundle):
    bundle = make_bundle("t-1", [make_email("m1"), make_email("m2", minutes=1)])
    return await store_with_account.upsert_thread(bundle.thread, bundle.emails)


class TestFlagActions:
    """Read/star updates are applied locally before the provider call."""

    @pytest.mark.asyncio
    async def test_mark_as_read(self, stored_thread, mail_actions, fake_provider, memory_store):
        await mail_actions.mark_as_read("acct-1", ["m1", "m2"], True)

        fake_provider.connect.assert_awaited_once()
        fake_provider.mark_as_read.assert_awaited_once_with(["m1", "m2"], True)
        fake_provider.disconnect.assert_awaited_once()
        assert (await memory_store.get_thread(stored_thread.id)).unread_count == 0

    @pytest.mark.asyncio
    async def test_local_update_kept_when_provider_fails(
        self, stored_thread, mail_actions, fake_provider, memory_store
    ):
        fake_provider.mark_as_starred.side_effect = BatchMutationError("star", {"m1": "boom"}, attempted=1)

        with pytest.raises(BatchMutationError):
            await mail_actions.mark_as_starred("acct-1", ["m1"], True)

        # Provisional until the next sync
        assert (await memory_store.get_thread(stored_thread.id)).is_starred is True
        fake_provider.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ids_without_local_copy_still_forwarded(self, store_with_account, mail_actions, fake_provider):
        await mail_actions.mark_as_read("acct-1", ["unknown"], False)
        fake_provider.mark_as_read.assert_awaited_once_with(["unknown"], False)


class TestForwarding:
    """Other actions go straight to the adapter."""

    @pytest.mark.asyncio
    async def test_move_delete_archive(self, store_with_account, mail_actions, fake_provider):
        await mail_actions.move_to_folder("acct-1", ["m1"], "folder-9")
        await mail_actions.delete_messages("acct-1", ["m2"], permanent=True)
        await mail_actions.archive_messages("acct-1", ["m3"])

        fake_provider.move_to_folder.assert_awaited_once_with(["m1"], "folder-9")
        fake_provider.delete_messages.assert_awaited_once_with(["m2"], permanent=True)
        fake_provider.archive_messages.assert_awaited_once_with(["m3"])
        assert fake_provider.disconnect.await_count == 3

    @pytest.mark.asyncio
    async def test_send_returns_provider_id(self, store_with_account, mail_actions, fake_provider):
        params = SendEmailParams(to=["alice@example.com"], subject="Hi", body="Hello")

        message_id = await mail_actions.send_message("acct-1", params)

        assert message_id == "<sent@example.com>"
        fake_provider.send_message.assert_awaited_once_with(params)

    @pytest.mark.asyncio
    async def test_unknown_account(self, memory_store, mail_actions, fake_provider):
        with pytest.raises(NotFoundError):
            await mail_actions.archive_messages("nope", ["m1"])
        fake_provider.connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_failure_propagates(self, store_with_account, mail_actions, fake_provider):
        fake_provider.connect.side_effect = AuthError("expired")

        with pytest.raises(AuthError):
            await mail_actions.get_folders("acct-1")
        fake_provider.get_folders.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_failure_still_disconnects(self, store_with_account, mail_actions, fake_provider):
        fake_provider.connect.side_effect = AuthError("expired")

        with pytest.raises(AuthError):
            await mail_actions.archive_messages("acct-1", ["m1"])
        fake_provider.disconnect.assert_awaited_once()


class TestReplies:
    """Replies by provider message id pick up threading headers from the store."""

    @pytest.mark.asyncio
    async def test_reply_headers_from_stored_message(self, stored_thread, mail_actions, fake_provider):
        params = SendEmailParams(
            to=["alice@example.com"], subject="Re: Quarterly report", body="Thanks",
            reply_to_message_id="m1",
        )

        await mail_actions.send_message("acct-1", params)

        sent = fake_provider.send_message.await_args.args[0]
        assert sent.reply_to_message_id == "m1"
        assert sent.reply_to_header_id == "<m1@example.com>"
        assert sent.thread_external_id == "t-1"
        assert params.reply_to_header_id is None

    @pytest.mark.asyncio
    async def test_explicit_header_id_kept(self, stored_thread, mail_actions, fake_provider):
        params = SendEmailParams(
            to=["alice@example.com"], subject="Re: x", body="b",
            reply_to_message_id="m1", reply_to_header_id="<other@example.com>",
        )

        await mail_actions.send_message("acct-1", params)

        fake_provider.send_message.assert_awaited_once_with(params)

    @pytest.mark.asyncio
    async def test_unknown_reply_target_sent_unchanged(self, store_with_account, mail_actions, fake_provider):
        params = SendEmailParams(to=["a@example.com"], subject="s", body="b", reply_to_message_id="gone")

        await mail_actions.send_message("acct-1", params)

        fake_provider.send_message.assert_awaited_once_with(params)
