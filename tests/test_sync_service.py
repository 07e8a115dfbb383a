import asyncio
from datetime import date, timedelta

import aiosqlite

from tally_dashboard.config import SyncConfig
from tally_dashboard.exceptions import ConnectionRefused, RemoteRejected
from tally_dashboard.models.master import Party, StockItem
from tally_dashboard.models.results import ConnectivityResult, DetailResult, FetchResult, MutationResult
from tally_dashboard.models.voucher import LineItem, Voucher, VoucherDraft, VoucherIdentity
from tally_dashboard.services.cache_store import CacheStore
from tally_dashboard.services.notifier import ChangeNotifier
from tally_dashboard.services.scheduler_service import SchedulerService
from tally_dashboard.services.sync_service import DELETE_REASON, SyncService
from tally_dashboard.utils.constants import EntityClass, EventKind, FullSyncStatus, SyncStatus


def voucher(global_id, sequence, kind="Sales", party="Ram Traders", amount=1000.0, day="2024-05-01"):
    return Voucher(
        global_id=global_id, remote_id=str(500 + sequence), change_sequence=sequence,
        kind=kind, number=f"N-{sequence}", date=day, counterparty_name=party, amount=amount,
    )


def identity(v):
    return VoucherIdentity(global_id=v.global_id, remote_id=v.remote_id, kind=v.kind, number=v.number)


class FakeTally:
    """Stands in for TallyService; every method returns tagged results"""

    def __init__(self):
        self.connected = True
        self.since = {}
        self.identities = []
        self.range_calls = []
        self.range_failures = set()
        self.range_records = {}
        self.stock_items = []
        self.parties = {}
        self.created = []
        self.create_error = None
        self.gate = None
        self.entered = asyncio.Event()

    async def check_connectivity(self):
        if self.connected:
            return ConnectivityResult(connected=True, companies=["Himalayan Traders"])
        return ConnectivityResult.failed(ConnectionRefused("Cannot connect to Tally at http://localhost:9000"))

    async def fetch_vouchers_since(self, cursor, kinds=None):
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.connected:
            return FetchResult.failed(ConnectionRefused("Cannot connect to Tally"))
        return FetchResult(records=[v for v in self.since.get(cursor, [])])

    async def fetch_vouchers_in_range(self, from_date, to_date, kinds=None):
        self.range_calls.append((from_date, to_date))
        if from_date in self.range_failures:
            self.range_failures.discard(from_date)
            return FetchResult.failed(ConnectionRefused("Cannot connect to Tally"))
        if from_date in self.range_records:
            return FetchResult(records=list(self.range_records[from_date]))
        sequence = len(self.range_calls) + 200
        return FetchResult(records=[voucher(f"hist-{from_date}", sequence, day=from_date.isoformat())])

    async def fetch_all_voucher_identities(self, kinds=None):
        if not self.connected:
            return FetchResult.failed(ConnectionRefused("Cannot connect to Tally"))
        return FetchResult(records=list(self.identities))

    async def fetch_voucher_detail(self, remote_id):
        return DetailResult(line_items=[LineItem(item_name="Rice", quantity=2, unit="Nos", rate=150, amount=300)])

    async def fetch_stock_items_since(self, cursor):
        return FetchResult(records=[item for item in self.stock_items if item.change_sequence > cursor])

    async def fetch_parties_since(self, cursor, group):
        return FetchResult(records=[p for p in self.parties.get(group, []) if p.change_sequence > cursor])

    async def create_voucher(self, draft):
        if self.create_error is not None:
            return MutationResult.failed(self.create_error)
        self.created.append(draft)
        return MutationResult(remote_id=str(900 + len(self.created)), changed_count=1)

    async def update_voucher(self, alteration):
        return MutationResult(remote_id=alteration.remote_id, changed_count=1)

    async def delete_voucher(self, remote_id, kind):
        return MutationResult(changed_count=1)


class FlakyStore(CacheStore):
    """Cache whose write of one voucher always fails"""

    failing_ids = {"bad"}

    async def upsert_voucher(self, voucher):
        if voucher.global_id in self.failing_ids:
            raise aiosqlite.OperationalError("database is locked")
        return await super().upsert_voucher(voucher)


def settings(**overrides):
    values = dict(
        poll_interval=0, batch_delay=0, draft_kinds=["Pending Sales Bill"], conversion_kinds=["Sales"],
        party_groups=["Sundry Debtors"],
    )
    values.update(overrides)
    return SyncConfig(**values)


def run(db_path, scenario, tally=None, store_class=CacheStore, **overrides):
    async def wrapper():
        store = store_class(db_path)
        notifier = ChangeNotifier()
        events = []
        notifier.subscribe(events.append)
        service = SyncService(store, tally or FakeTally(), notifier, SchedulerService(), settings(**overrides))
        try:
            return await scenario(service, store, events)
        finally:
            service.stop()
            await store.disconnect()
    return asyncio.run(wrapper())


def event_kinds(events):
    return [event["event"] for event in events]


def test_incremental_pull_advances_cursor(db_path):
    tally = FakeTally()
    tally.since[100] = [voucher("g101", 101), voucher("g103", 103), voucher("g102", 102)]

    async def scenario(service, store, events):
        await store.set_cursor(EntityClass.VOUCHERS, 100)
        result = await service.run_incremental_sync()
        return result, await store.get_cursor(EntityClass.VOUCHERS), await store.get_voucher_count(), events

    result, cursor, count, events = run(db_path, scenario, tally)
    assert result["success"]
    assert result["new_count"] == 3
    assert result["total_fetched"] == 3
    assert result["cursor"] == 103
    assert cursor == 103
    assert count == 3
    assert event_kinds(events).count(EventKind.VOUCHER_CREATED) == 3
    assert event_kinds(events)[-1] == EventKind.SYNC_COMPLETED


def test_repeated_pull_changes_nothing(db_path):
    tally = FakeTally()
    batch = [voucher("g101", 101), voucher("g102", 102)]
    tally.since[0] = batch
    tally.since[102] = batch

    async def scenario(service, store, events):
        await service.run_incremental_sync()
        second = await service.run_incremental_sync()
        return second, await store.get_voucher_count()

    second, count = run(db_path, scenario, tally)
    assert second["new_count"] == 0
    assert second["updated_count"] == 0
    assert second["skipped_count"] == 2
    assert second["cursor"] == 102
    assert count == 2


def test_failed_write_is_counted_and_pulled_again(db_path):
    tally = FakeTally()
    tally.since[100] = [voucher("ok-1", 120), voucher("bad", 150), voucher("ok-2", 300)]

    async def scenario(service, store, events):
        await store.set_cursor(EntityClass.VOUCHERS, 100)
        result = await service.run_incremental_sync()
        return (
            result,
            await store.get_cursor(EntityClass.VOUCHERS),
            await store.get_voucher_by_global_id("ok-2"),
            await store.get_voucher_by_global_id("bad"),
        )

    result, cursor, stored, missing = run(db_path, scenario, tally, store_class=FlakyStore)
    assert result["success"]
    assert result["new_count"] == 2
    assert result["skipped_count"] == 1
    assert result["cursor"] == 149
    assert cursor == 149
    assert stored is not None
    assert missing is None


def test_draft_that_became_a_sale_is_converted(db_path):
    tally = FakeTally()
    draft = voucher("G1", 10, kind="Pending Sales Bill", day="2024-05-01")
    sale = voucher("G2", 11, kind="Sales", day="2024-05-03")
    tally.identities = [identity(sale)]

    async def scenario(service, store, events):
        await store.upsert_voucher(draft)
        await store.upsert_voucher(sale)
        result = await service.run_deletion_reconciliation()
        return result, await store.get_voucher_by_global_id("G1"), events

    result, g1, events = run(db_path, scenario, tally)
    assert result["success"]
    assert result["converted"] == 1
    assert result["deleted"] == 0
    assert result["converted_vouchers"][0]["target_global_id"] == "G2"
    assert g1.is_converted and not g1.is_deleted
    assert g1.converted_to_kind == "Sales"
    assert EventKind.VOUCHER_CONVERTED in event_kinds(events)


def test_vanished_sale_is_soft_deleted(db_path):
    tally = FakeTally()
    kept = voucher("G1", 10)
    tally.identities = [identity(kept)]

    async def scenario(service, store, events):
        await store.upsert_voucher(kept)
        await store.upsert_voucher(voucher("G3", 12, day="2024-05-02"))
        result = await service.run_deletion_reconciliation()
        return result, await store.get_voucher_by_global_id("G3")

    result, g3 = run(db_path, scenario, tally)
    assert result["deleted"] == 1
    assert result["deleted_vouchers"][0]["global_id"] == "G3"
    assert g3.is_deleted and not g3.is_converted
    assert g3.delete_reason == DELETE_REASON


def test_ambiguous_conversion_defaults_to_deleted(db_path):
    tally = FakeTally()
    draft = voucher("G1", 10, kind="Pending Sales Bill")
    first = voucher("S1", 11, day="2024-05-02")
    second = voucher("S2", 12, amount=995.0, day="2024-05-03")
    tally.identities = [identity(first), identity(second)]

    async def scenario(service, store, events):
        for v in (draft, first, second):
            await store.upsert_voucher(v)
        result = await service.run_deletion_reconciliation()
        return result, await store.get_voucher_by_global_id("G1")

    result, g1 = run(db_path, scenario, tally)
    assert result["ambiguous"] == 1
    assert result["converted"] == 0
    assert result["deleted"] == 1
    assert g1.is_deleted


def test_candidate_is_claimed_by_one_draft_only(db_path):
    tally = FakeTally()
    sale = voucher("S1", 20, day="2024-05-05")
    tally.identities = [identity(sale)]

    async def scenario(service, store, events):
        await store.upsert_voucher(voucher("D1", 10, kind="Pending Sales Bill", day="2024-05-01"))
        await store.upsert_voucher(voucher("D2", 11, kind="Pending Sales Bill", day="2024-05-02"))
        await store.upsert_voucher(sale)
        return await service.run_deletion_reconciliation()

    result = run(db_path, scenario, tally)
    assert result["converted"] == 1
    assert result["deleted"] == 1


def test_kind_change_is_applied_in_place(db_path):
    tally = FakeTally()
    local = voucher("G1", 10, kind="Sales")
    tally.identities = [VoucherIdentity(global_id="G1", remote_id=local.remote_id, kind="Credit Sales")]

    async def scenario(service, store, events):
        await store.upsert_voucher(local)
        result = await service.run_deletion_reconciliation()
        return result, await store.get_voucher_by_global_id("G1"), events

    result, g1, events = run(db_path, scenario, tally)
    assert result["kind_changes"] == 1
    assert g1.kind == "Credit Sales"
    assert not g1.is_deleted
    assert EventKind.VOUCHER_KIND_CHANGED in event_kinds(events)


def test_empty_remote_set_does_not_wipe_cache(db_path):
    async def scenario(service, store, events):
        await store.upsert_voucher(voucher("G1", 10))
        result = await service.run_deletion_reconciliation()
        return result, await store.get_voucher_count(), service.get_status()

    result, count, status = run(db_path, scenario)
    assert not result["success"]
    assert count == 1
    assert status["status"] == SyncStatus.ERROR


def test_second_trigger_is_rejected_while_a_pass_runs(db_path):
    tally = FakeTally()

    async def scenario(service, store, events):
        tally.gate = asyncio.Event()
        running = asyncio.create_task(service.run_incremental_sync())
        await tally.entered.wait()
        rejected = await service.run_deletion_reconciliation()
        also_rejected = await service.run_incremental_sync()
        busy = service.get_status()
        tally.gate.set()
        first = await running
        return rejected, also_rejected, busy, first, service.get_status()

    rejected, also_rejected, busy, first, after = run(db_path, scenario, tally)
    assert rejected == {"success": False, "error": "already syncing"}
    assert also_rejected == {"success": False, "error": "already syncing"}
    assert busy["is_syncing"] and busy["status"] == SyncStatus.SYNCING
    assert first["success"]
    assert not after["is_syncing"]
    assert after["status"] == SyncStatus.IDLE


def test_failed_pass_records_error_and_releases_guard(db_path):
    tally = FakeTally()
    tally.connected = False

    async def scenario(service, store, events):
        failed = await service.run_incremental_sync()
        state = await store.get_sync_state()
        tally.connected = True
        retried = await service.run_incremental_sync()
        return failed, state, retried, service.get_status(), events

    failed, state, retried, status, events = run(db_path, scenario, tally)
    assert not failed["success"]
    assert "Cannot connect" in failed["error"]
    assert state["status"] == SyncStatus.ERROR
    assert retried["success"]
    assert status["status"] == SyncStatus.IDLE
    assert status["last_error"] is None
    assert EventKind.SYNC_FAILED in event_kinds(events)


def test_start_reports_unreachable_tally_then_recovers(db_path):
    tally = FakeTally()
    tally.connected = False

    async def scenario(service, store, events):
        first = await service.start()
        failed_status = service.get_status()
        persisted = await store.get_sync_state()
        tally.connected = True
        second = await service.start()
        return first, failed_status, persisted, second, service.get_status()

    first, failed_status, persisted, second, status = run(db_path, scenario, tally)
    assert first is False
    assert failed_status["status"] == SyncStatus.ERROR
    assert "Cannot connect to Tally" in failed_status["last_error"]
    assert persisted["status"] == SyncStatus.ERROR
    assert second is True
    assert status["status"] == SyncStatus.IDLE
    assert status["last_error"] is None
    assert status["is_running"]


def test_start_with_polling_schedules_jobs(db_path):
    async def scenario(service, store, events):
        await service.start()
        jobs = {job["id"] for job in service.get_status()["scheduler"]["jobs"]}
        await service.start()
        again = [job["id"] for job in service.get_status()["scheduler"]["jobs"]]
        service.stop()
        return jobs, again, service.get_status()

    jobs, again, stopped = run(db_path, scenario, poll_interval=60, master_interval=300, reconciliation_interval=900)
    assert jobs == {"voucher_poll", "master_sync", "reconciliation"}
    assert sorted(again) == sorted(jobs)
    assert not stopped["is_running"]
    assert stopped["scheduler"]["jobs"] == []


def test_range_sync_never_moves_cursor_back(db_path):
    tally = FakeTally()

    async def scenario(service, store, events):
        await store.set_cursor(EntityClass.VOUCHERS, 500)
        result = await service.run_range_sync("2024-05-01", "2024-05-03")
        invalid = await service.run_range_sync("2024-05-03", "2024-05-01")
        return result, invalid, await store.get_cursor(EntityClass.VOUCHERS)

    result, invalid, cursor = run(db_path, scenario, tally)
    assert result["success"]
    assert result["new_count"] == 1
    assert cursor == 500
    assert not invalid["success"]


def test_full_history_resumes_after_failure(db_path):
    tally = FakeTally()
    start = date.today() - timedelta(days=20)
    tally.range_failures.add(start + timedelta(days=7))

    async def scenario(service, store, events):
        failed = await service.run_full_history_sync(start.isoformat(), batch_days=7)
        interrupted = await service.get_full_sync_status()
        resumed = await service.resume_full_history_sync()
        return failed, interrupted, resumed, await service.get_full_sync_status(), events

    failed, interrupted, resumed, final, events = run(db_path, scenario, tally)

    assert not failed["success"]
    assert interrupted["status"] == FullSyncStatus.IN_PROGRESS
    assert interrupted["batches_completed"] == 1
    assert interrupted["current_batch_date"] == (start + timedelta(days=7)).isoformat()
    assert interrupted["last_error"]

    assert resumed["success"]
    assert resumed["batches_completed"] == 3
    assert resumed["total_batches"] == 3
    assert final["status"] == FullSyncStatus.COMPLETED
    assert final["total_synced"] == 3
    assert [call[0] for call in tally.range_calls] == [
        start, start + timedelta(days=7), start + timedelta(days=7), start + timedelta(days=14)
    ]
    assert event_kinds(events).count(EventKind.SYNC_PROGRESS) == 3


def test_full_history_keeps_cursor_below_failed_write(db_path):
    tally = FakeTally()
    start = date.today() - timedelta(days=10)
    second = start + timedelta(days=7)
    tally.range_records[start] = [voucher("ok-1", 120), voucher("bad", 150)]
    tally.range_records[second] = [voucher("ok-2", 300)]
    tally.range_failures.add(second)

    async def scenario(service, store, events):
        await store.set_cursor(EntityClass.VOUCHERS, 100)
        interrupted = await service.run_full_history_sync(start.isoformat(), batch_days=7)
        progress = await service.get_full_sync_status()
        resumed = await service.resume_full_history_sync()
        return interrupted, progress, resumed, await store.get_cursor(EntityClass.VOUCHERS)

    interrupted, progress, resumed, cursor = run(db_path, scenario, tally, store_class=FlakyStore)
    assert not interrupted["success"]
    assert progress["min_failed_sequence"] == 150
    assert resumed["success"]
    assert resumed["new_count"] == 1
    assert resumed["cursor"] == 149
    assert cursor == 149


def test_full_history_rejects_empty_batches(db_path):
    tally = FakeTally()

    async def scenario(service, store, events):
        return await service.run_full_history_sync(date.today().isoformat(), batch_days=0)

    result = run(db_path, scenario, tally)
    assert not result["success"]
    assert "batch_days" in result["error"]
    assert tally.range_calls == []


def test_resume_without_interrupted_backfill(db_path):
    async def scenario(service, store, events):
        return await service.resume_full_history_sync()

    assert run(db_path, scenario)["success"] is False


def test_master_sync_uses_cursors_and_pushes_pending(db_path):
    tally = FakeTally()
    tally.stock_items = [StockItem(name="Rice", change_sequence=5)]
    tally.parties = {"Sundry Debtors": [Party(name="Ram Traders", change_sequence=8)]}
    draft = VoucherDraft(counterparty_name="Ram Traders", items=[LineItem(item_name="Rice", quantity=1, rate=100)])

    async def scenario(service, store, events):
        await store.queue_pending_voucher(draft, "Cannot connect")
        first = await service.run_master_data_sync()
        second = await service.run_master_data_sync()
        cursors = (
            await store.get_cursor(EntityClass.STOCK_ITEMS),
            await store.get_cursor(EntityClass.PARTIES),
        )
        return first, second, cursors, await store.list_pending_vouchers(), events

    first, second, cursors, pending, events = run(db_path, scenario, tally)
    assert first["stock_items"] == 1
    assert first["parties"] == 1
    assert first["pending_vouchers"]["pushed"] == 1
    assert second["stock_items"] == 0
    assert second["pending_vouchers"]["attempted"] == 0
    assert cursors == (5, 8)
    assert pending == []
    assert tally.created == [draft]
    assert EventKind.PENDING_VOUCHER_PUSHED in event_kinds(events)


def test_pending_voucher_rejected_by_tally_is_marked_failed(db_path):
    tally = FakeTally()
    tally.create_error = RemoteRejected("Ledger 'Ram Traders' does not exist!")
    draft = VoucherDraft(counterparty_name="Ram Traders")

    async def scenario(service, store, events):
        await store.queue_pending_voucher(draft, "Cannot connect")
        result = await service.run_master_data_sync()
        return result, await store.list_pending_vouchers("failed")

    result, failed = run(db_path, scenario, tally)
    assert result["success"]
    assert result["pending_vouchers"]["failed"] == 1
    assert "does not exist" in failed[0]["last_error"]


def test_create_voucher_queues_when_tally_is_down(db_path):
    tally = FakeTally()
    tally.create_error = ConnectionRefused("Cannot connect to Tally")
    draft = VoucherDraft(counterparty_name="Ram Traders")

    async def scenario(service, store, events):
        queued = await service.create_voucher(draft)
        tally.create_error = RemoteRejected("Voucher type does not exist")
        rejected = await service.create_voucher(draft)
        tally.create_error = None
        created = await service.create_voucher(draft)
        return queued, rejected, created, await store.list_pending_vouchers()

    queued, rejected, created, pending = run(db_path, scenario, tally)
    assert queued["success"] and queued["queued"]
    assert not rejected["success"]
    assert rejected["error_kind"] == "remote_rejected"
    assert created == {"success": True, "queued": False, "remote_id": "901"}
    assert len(pending) == 1


def test_line_item_operations(db_path):
    tally = FakeTally()

    async def scenario(service, store, events):
        await store.upsert_voucher(voucher("G1", 10))
        refreshed = await service.refresh_line_items("G1")
        updated = await service.update_voucher_items("G1", [LineItem(item_name="Oil", quantity=1, rate=200, amount=200)])
        items = await store.get_line_items("G1")
        missing = await service.refresh_line_items("nope")
        deleted = await service.delete_voucher("G1")
        after_delete = await service.update_voucher_items("G1", [])
        return refreshed, updated, items, missing, deleted, after_delete

    refreshed, updated, items, missing, deleted, after_delete = run(db_path, scenario, tally)
    assert refreshed["success"]
    assert refreshed["items"][0]["item_name"] == "Rice"
    assert updated == {"success": True, "changed_count": 1, "item_count": 1}
    assert [item.item_name for item in items] == ["Oil"]
    assert not missing["success"]
    assert deleted == {"success": True, "deleted": 1}
    assert not after_delete["success"]
