"""Tests for the folder sync engine."""

from mailroom_common.config import SyncConfig
from mailroom_mail.message_store import ObjectMessageStore
from mailroom_mail.models import SEEN_FLAG, RawMessage, SyncState
from mailroom_mail.progress import ProgressRecorder
from mailroom_mail.sync import MailSync, select_start_uid
from tests.fakes import (
    BASE_DATE,
    FakeAccountDirectory,
    FakeConnectionProvider,
    FakeMailbox,
    InMemorySyncStateStore,
    make_account,
    make_raw,
)


def build_sync(
    provider: FakeConnectionProvider,
    state_store: InMemorySyncStateStore,
    message_store: ObjectMessageStore,
    directory: FakeAccountDirectory,
    **config: object,
) -> MailSync:
    return MailSync(
        connections=provider,
        states=state_store,
        messages=message_store,
        accounts=directory,
        config=SyncConfig(**config),  # type: ignore[arg-type]
    )


class TestSelectStartUid:
    """Tests for fetch range selection."""

    def test_first_sync_small_mailbox_starts_at_one(self) -> None:
        assert select_start_uid(0, 10, 50) == 1

    def test_first_sync_large_mailbox_takes_newest_window(self) -> None:
        assert select_start_uid(0, 1000, 50) == 950

    def test_incremental_sync_starts_after_bookmark(self) -> None:
        assert select_start_uid(119, 5000, 50) == 120


class TestFolderSyncScenarios:
    """Cold start, quiet poll and new mail against one folder."""

    async def test_cold_start_fetches_newest_fifty(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        """uidNext=120 with no bookmark fetches UIDs 70-119."""
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 119)})
        sync = build_sync(provider, state_store, message_store, directory)
        account = make_account()

        result = await sync.sync_folder(account, "INBOX")

        assert result.ok
        assert provider.last.fetch_starts == [70]
        assert result.new_emails == 50
        assert result.total_emails == 50
        assert await message_store.count(account.id, "INBOX") == 50
        state = await state_store.get(account.id, "INBOX")
        assert state is not None
        assert state.last_seen_uid == 119
        stored = await message_store.load(account.id, "INBOX")
        assert min(m.uid for m in stored) == 70

    async def test_quiet_poll_fetches_nothing_and_refreshes_timestamp(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        """A second sync with no new mail keeps the bookmark but advances last_synced_at."""
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 119)})
        sync = build_sync(provider, state_store, message_store, directory)
        account = make_account()

        await sync.sync_folder(account, "INBOX")
        first = await state_store.get(account.id, "INBOX")
        assert first is not None

        result = await sync.sync_folder(account, "INBOX")

        assert result.ok
        assert provider.last.fetch_starts == [120]
        assert result.new_emails == 0
        assert result.total_emails == 50
        second = await state_store.get(account.id, "INBOX")
        assert second is not None
        assert second.last_seen_uid == 119
        assert second.last_synced_at > first.last_synced_at

    async def test_new_mail_fetches_only_new_uids(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        mailbox = FakeMailbox.with_uids(1, 119)
        provider = FakeConnectionProvider({"INBOX": mailbox})
        sync = build_sync(provider, state_store, message_store, directory)
        account = make_account()
        await sync.sync_folder(account, "INBOX")

        mailbox.add(make_raw(120), make_raw(121))
        result = await sync.sync_folder(account, "INBOX")

        assert provider.last.fetch_starts == [120]
        assert result.new_emails == 2
        assert result.total_emails == 52
        state = await state_store.get(account.id, "INBOX")
        assert state is not None
        assert state.last_seen_uid == 121

    async def test_newest_message_is_stored_first(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 5)})
        sync = build_sync(provider, state_store, message_store, directory)

        await sync.sync_folder(make_account(), "INBOX")

        stored = await message_store.load("acct-1", "INBOX")
        assert [m.uid for m in stored] == [5, 4, 3, 2, 1]

    async def test_first_sync_window_is_configurable(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 30)})
        sync = build_sync(
            provider, state_store, message_store, directory, initial_fetch_window=10
        )

        result = await sync.sync_folder(make_account(), "INBOX")

        assert provider.last.fetch_starts == [21]
        assert result.new_emails == 10


class TestFetchBounds:
    """Tests for the first-sync lower bound."""

    async def test_small_mailbox_range_starts_at_one(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 9)})
        sync = build_sync(provider, state_store, message_store, directory)

        result = await sync.sync_folder(make_account(), "INBOX")

        assert provider.last.fetch_starts == [1]
        assert result.new_emails == 9

    async def test_large_mailbox_range_starts_at_950(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        mailbox = FakeMailbox(
            [make_raw(uid) for uid in range(990, 1000)], uid_next=1000, exists=999
        )
        provider = FakeConnectionProvider({"INBOX": mailbox})
        sync = build_sync(provider, state_store, message_store, directory)

        await sync.sync_folder(make_account(), "INBOX")

        assert provider.last.fetch_starts == [950]


class TestGenerationInvalidation:
    """Tests for UIDVALIDITY changes."""

    async def test_changed_uid_validity_discards_bookmark(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        """A stale bookmark of 100 must not be used against a new generation."""
        await state_store.put("acct-1", "INBOX", 1, 100)
        provider = FakeConnectionProvider(
            {"INBOX": FakeMailbox.with_uids(1, 29, uid_validity=2)}
        )
        sync = build_sync(provider, state_store, message_store, directory)

        result = await sync.sync_folder(make_account(), "INBOX")

        assert result.ok
        assert state_store.resets == [("acct-1", "INBOX")]
        assert provider.last.fetch_starts == [1]
        state = await state_store.get("acct-1", "INBOX")
        assert state is not None
        assert state.uid_validity == 2
        assert state.last_seen_uid == 29

    async def test_same_uid_validity_keeps_bookmark(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        await state_store.put("acct-1", "INBOX", 7, 20)
        provider = FakeConnectionProvider(
            {"INBOX": FakeMailbox.with_uids(1, 25, uid_validity=7)}
        )
        sync = build_sync(provider, state_store, message_store, directory)

        result = await sync.sync_folder(make_account(), "INBOX")

        assert state_store.resets == []
        assert provider.last.fetch_starts == [21]
        assert result.new_emails == 5


class TestEmptyMailbox:
    """Tests for the empty mailbox short-circuit."""

    async def test_empty_mailbox_never_fetches(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider({"INBOX": FakeMailbox(uid_next=1)})
        sync = build_sync(provider, state_store, message_store, directory)
        recorder = ProgressRecorder()

        result = await sync.sync_folder(make_account(), "INBOX", recorder)

        assert result.ok
        assert result.new_emails == 0
        assert result.total_emails == 0
        assert provider.last.fetch_starts == []
        assert provider.last.opened == []
        assert provider.last.close_calls == 1
        assert state_store.puts == []
        assert directory.statuses == []
        assert recorder.statuses() == ["connecting", "completed"]


class TestFailures:
    """Tests for error handling and connection release."""

    async def test_fetch_failure_still_closes_connection_once(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider(
            {"INBOX": FakeMailbox.with_uids(1, 5)}, fail_on="fetch"
        )
        sync = build_sync(provider, state_store, message_store, directory)
        recorder = ProgressRecorder()

        result = await sync.sync_folder(make_account(), "INBOX", recorder)

        assert not result.ok
        assert result.error == "connection reset during fetch"
        assert provider.last.close_calls == 1
        assert state_store.puts == []
        assert directory.statuses == [("acct-1", "failed", "connection reset during fetch")]
        assert recorder.statuses() == ["connecting", "syncing", "error"]

    async def test_connect_failure_marks_account_failed(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider(error=ConnectionRefusedError("refused"))
        sync = build_sync(provider, state_store, message_store, directory)
        recorder = ProgressRecorder()

        result = await sync.sync_folder(make_account(), "INBOX", recorder)

        assert result.error == "refused"
        assert provider.connections == []
        assert directory.statuses == [("acct-1", "failed", "refused")]
        assert recorder.statuses() == ["connecting", "error"]
        latest = recorder.latest("acct-1", "INBOX")
        assert latest is not None
        assert latest.message == "Sync failed: refused"

    async def test_storage_failure_is_reported_not_raised(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        async def broken_put(*args: object) -> None:
            raise OSError("disk full")

        state_store.put = broken_put  # type: ignore[method-assign]
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 3)})
        sync = build_sync(provider, state_store, message_store, directory)

        result = await sync.sync_folder(make_account(), "INBOX")

        assert result.error == "disk full"
        assert provider.last.close_calls == 1

    async def test_failing_status_update_does_not_escape(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        async def broken_status(*args: object) -> bool:
            raise RuntimeError("database down")

        directory.update_connection_status = broken_status  # type: ignore[method-assign]
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 3)}, fail_on="status")
        sync = build_sync(provider, state_store, message_store, directory)

        result = await sync.sync_folder(make_account(), "INBOX")

        assert result.error == "status failed"
        assert provider.last.close_calls == 1

    async def test_connected_status_failure_keeps_committed_sync(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        async def status_write(account_id: str, status: str, error: str | None = None) -> bool:
            if status == "connected":
                raise RuntimeError("database down")
            directory.statuses.append((account_id, status, error))  # type: ignore[arg-type]
            return True

        directory.update_connection_status = status_write  # type: ignore[method-assign]
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 3)})
        sync = build_sync(provider, state_store, message_store, directory)
        recorder = ProgressRecorder()

        result = await sync.sync_folder(make_account(), "INBOX", recorder)

        assert recorder.statuses() == ["connecting", "syncing", "completed"]
        assert result.ok
        assert result.new_emails == 3
        assert result.total_emails == 3
        assert state_store.states[("acct-1", "INBOX")].last_seen_uid == 3
        assert directory.statuses == []
        assert provider.last.close_calls == 1

    async def test_raising_progress_callback_does_not_fail_sync(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        def broken_listener(progress: object) -> None:
            raise ValueError("listener gone")

        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 3)})
        sync = build_sync(provider, state_store, message_store, directory)

        result = await sync.sync_folder(make_account(), "INBOX", broken_listener)

        assert result.ok
        assert result.new_emails == 3


class TestProgressAndStatus:
    """Tests for progress events and account status on success."""

    async def test_successful_sync_emits_ordered_events(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 4)})
        sync = build_sync(provider, state_store, message_store, directory)
        recorder = ProgressRecorder()

        await sync.sync_folder(make_account(), "INBOX", recorder)

        assert recorder.statuses() == ["connecting", "syncing", "completed"]
        completed = recorder.events[-1]
        assert completed.new_emails == 4
        assert completed.total_emails == 4
        assert recorder.events[1].message == "Initial sync: fetching recent messages"
        assert directory.statuses == [("acct-1", "connected", None)]
        assert provider.last.close_calls == 1

    async def test_incremental_sync_reports_syncing_phase(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        await state_store.put("acct-1", "INBOX", 1, 2)
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 4)})
        sync = build_sync(provider, state_store, message_store, directory)
        recorder = ProgressRecorder()

        await sync.sync_folder(make_account(), "INBOX", recorder)

        assert recorder.events[1].message == "Syncing new messages"


class TestParseFailurePolicy:
    """Tests for unparseable messages in a fetched batch."""

    @staticmethod
    def mailbox_with_broken_uid() -> FakeMailbox:
        broken = RawMessage(uid=2, flags=[], source=None, size=0)
        return FakeMailbox([make_raw(1), broken, make_raw(3)])

    async def test_skip_policy_stores_the_rest_and_moves_past_bad_uid(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider({"INBOX": self.mailbox_with_broken_uid()})
        sync = build_sync(provider, state_store, message_store, directory)

        result = await sync.sync_folder(make_account(), "INBOX")

        assert result.ok
        assert result.new_emails == 2
        assert result.skipped_uids == [2]
        stored = await message_store.load("acct-1", "INBOX")
        assert sorted(m.uid for m in stored) == [1, 3]
        state = await state_store.get("acct-1", "INBOX")
        assert state is not None
        assert state.last_seen_uid == 3

    async def test_abort_policy_fails_folder_without_writing(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider({"INBOX": self.mailbox_with_broken_uid()})
        sync = build_sync(
            provider, state_store, message_store, directory, on_parse_error="abort"
        )

        result = await sync.sync_folder(make_account(), "INBOX")

        assert not result.ok
        assert result.error is not None
        assert "UID 2" in result.error
        assert await message_store.count("acct-1", "INBOX") == 0
        assert state_store.puts == []
        assert provider.last.close_calls == 1


class TestMergeSafety:
    """Tests for re-fetching UIDs that are already stored."""

    async def test_refetch_does_not_overwrite_local_flag_change(
        self,
        state_store: InMemorySyncStateStore,
        message_store: ObjectMessageStore,
        directory: FakeAccountDirectory,
    ) -> None:
        provider = FakeConnectionProvider({"INBOX": FakeMailbox.with_uids(1, 3)})
        sync = build_sync(provider, state_store, message_store, directory)
        await sync.sync_folder(make_account(), "INBOX")
        await message_store.update_flags("acct-1:INBOX:3", is_read=True)

        # Losing the bookmark makes the next sync fetch UID 3 again
        state_store.states[("acct-1", "INBOX")] = SyncState(
            account_id="acct-1",
            folder="INBOX",
            uid_validity=1,
            last_seen_uid=2,
            last_synced_at=BASE_DATE,
        )
        result = await sync.sync_folder(make_account(), "INBOX")

        assert result.new_emails == 0
        assert result.total_emails == 3
        message = await message_store.get_message("acct-1:INBOX:3")
        assert message is not None
        assert message.is_read is True
        assert SEEN_FLAG in message.flags
