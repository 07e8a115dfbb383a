"""
Sync Service Module
===================
Orchestrates synchronization between Tally and the local cache.

SYNC PASSES:
-----------
1. INCREMENTAL (run_incremental_sync):
   - Pulls vouchers with ALTERID above the stored cursor
   - Upserts them and moves the cursor to the highest ALTERID seen
   - Announces every voucher that was not cached before

2. RANGE (run_range_sync):
   - Pulls a date window regardless of the cursor (manual backfill)
   - The cursor only ever moves forward

3. RECONCILIATION (run_deletion_reconciliation):
   - Diffs Tally's full GUID set against the active local rows
   - Kind changes are applied in place
   - A missing draft ("Pending Sales Bill") that has exactly one plausible
     successor is marked converted; everything else missing is soft-deleted

4. FULL HISTORY (run_full_history_sync / resume_full_history_sync):
   - Walks from a start date (default: one year back) to today in windows
     of batch_days, persisting progress after each window

5. MASTER DATA (run_master_data_sync):
   - Stock items and party ledgers, each with its own cursor
   - Then retries vouchers queued while Tally was unreachable

SINGLE FLIGHT:
-------------
All passes share one asyncio.Lock through @single_flight. A pass started
while another is running returns {"success": False, "error": "already
syncing"} immediately. Polling jobs and API triggers call the same methods.

STATE:
-----
status is idle / syncing / error. A pass that fails sets error with the
message; the next successful pass clears it. status, last_error,
last_sync_at and the last summary are persisted in sync_state.
"""

from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncio
import aiosqlite

from ..config import SyncConfig
from ..exceptions import ErrorKind, SyncAborted
from ..models.results import UpsertOutcome
from ..models.voucher import LineItem, LocalStatusUpdate, Voucher, VoucherAlteration, VoucherDraft
from ..utils.constants import EntityClass, EventKind, FullSyncStatus, PendingStatus, SyncStatus
from ..utils.decorators import single_flight, timed
from ..utils.helpers import generate_date_batches, get_current_timestamp, parse_iso_date
from ..utils.logger import logger
from .cache_store import CacheStore
from .conversion import match_conversion_target
from .notifier import ChangeNotifier
from .scheduler_service import SchedulerService
from .tally_service import TallyService


TRANSPORT_KINDS = (ErrorKind.CONNECTION_REFUSED, ErrorKind.TIMEOUT, ErrorKind.TRANSPORT)
DELETE_REASON = "Deleted in Tally during sync"


class SyncService:
    """Drives every sync pass and owns the single-flight guard"""

    def __init__(
        self,
        store: CacheStore,
        client: TallyService,
        notifier: ChangeNotifier,
        scheduler: SchedulerService,
        settings: SyncConfig,
    ):
        self.store = store
        self.client = client
        self.notifier = notifier
        self.scheduler = scheduler
        self.settings = settings
        self._sync_lock = asyncio.Lock()

        self.is_running = False
        self.status = SyncStatus.IDLE
        self.current_pass: Optional[str] = None
        self.last_error: Optional[str] = None
        self.last_sync_at: Optional[str] = None
        self.last_run_summary: Optional[Dict[str, Any]] = None

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def get_status(self) -> Dict[str, Any]:
        """Current run state"""
        return {
            "is_running": self.is_running,
            "is_syncing": self.is_syncing,
            "status": self.status,
            "current_pass": self.current_pass,
            "last_error": self.last_error,
            "last_sync_at": self.last_sync_at,
            "last_run_summary": self.last_run_summary,
            "scheduler": self.scheduler.get_status(),
        }

    async def load_state(self) -> None:
        """Restore the persisted part of the run state after a restart"""
        state = await self.store.get_sync_state()
        self.status = state["status"] if state["status"] != SyncStatus.SYNCING else SyncStatus.IDLE
        self.last_error = state["last_error"]
        self.last_sync_at = state["last_sync_at"]
        self.last_run_summary = state["last_run_summary"]

    # ============== Lifecycle ==============

    async def start(self) -> bool:
        """Connect, sync master data and, unless polling is disabled, schedule the jobs"""
        connectivity = await self.client.check_connectivity()
        if not connectivity.connected:
            message = f"Cannot start sync: {connectivity.error or 'Tally not reachable'}"
            logger.error(message)
            self.status = SyncStatus.ERROR
            self.last_error = message
            await self.store.save_sync_state(SyncStatus.ERROR, message)
            await self.notifier.publish(EventKind.SYNC_FAILED, {"pass": "start", "error": message})
            return False

        logger.info(f"Connected to Tally, companies: {', '.join(connectivity.companies) or 'none reported'}")
        self.is_running = True
        self.status = SyncStatus.IDLE
        self.last_error = None
        await self.store.save_sync_state(SyncStatus.IDLE)

        # Restart after stop() must not leave old jobs behind
        self.scheduler.remove_all_jobs()

        await self.run_master_data_sync()

        if self.settings.poll_interval > 0:
            await self.run_incremental_sync()
            self.scheduler.add_interval_job("voucher_poll", self.run_incremental_sync, self.settings.poll_interval)
            if self.settings.master_interval > 0:
                self.scheduler.add_interval_job("master_sync", self.run_master_data_sync, self.settings.master_interval)
            if self.settings.reconciliation_interval > 0:
                self.scheduler.add_interval_job(
                    "reconciliation", self.run_deletion_reconciliation, self.settings.reconciliation_interval
                )
        else:
            logger.info("Polling disabled (poll_interval=0), sync runs on manual trigger only")
        return True

    def stop(self) -> None:
        self.scheduler.remove_all_jobs()
        self.scheduler.stop()
        self.is_running = False
        logger.info("Sync service stopped")

    # ============== Pass bookkeeping ==============

    async def _run_pass(self, name: str, work: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        """Run one pass body and turn its outcome into state and a result dict"""
        self.status = SyncStatus.SYNCING
        self.current_pass = name
        logger.info(f"Starting {name} sync")
        try:
            summary = await work()
        except SyncAborted as e:
            error = e.message
            logger.error(f"{name} sync aborted: {error}")
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.exception(f"{name} sync failed")
        else:
            self.status = SyncStatus.IDLE
            self.last_error = None
            self.last_sync_at = get_current_timestamp()
            self.last_run_summary = {"pass": name, **summary}
            await self.store.save_sync_state(
                SyncStatus.IDLE, None, self.last_sync_at, self.last_run_summary
            )
            await self.notifier.publish(EventKind.SYNC_COMPLETED, self.last_run_summary)
            logger.info(f"{name} sync completed: {summary}")
            return {"success": True, **summary}
        finally:
            self.current_pass = None

        self.status = SyncStatus.ERROR
        self.last_error = error
        await self.store.save_sync_state(SyncStatus.ERROR, error)
        await self.notifier.publish(EventKind.SYNC_FAILED, {"pass": name, "error": error})
        return {"success": False, "error": error}

    async def _apply_vouchers(self, vouchers: List[Voucher], announce: bool = True) -> Dict[str, Any]:
        """Upsert a batch, counting outcomes; one failing row does not stop the rest"""
        counts = {"new": 0, "updated": 0, "unchanged": 0, "failed": 0}
        max_sequence = 0
        min_failed: Optional[int] = None
        created: List[Voucher] = []

        for voucher in vouchers:
            try:
                outcome = await self.store.upsert_voucher(voucher)
            except aiosqlite.Error as e:
                counts["failed"] += 1
                min_failed = voucher.change_sequence if min_failed is None else min(min_failed, voucher.change_sequence)
                logger.error(f"Could not store voucher {voucher.number or voucher.global_id}: {e}")
                continue

            max_sequence = max(max_sequence, voucher.change_sequence)
            if outcome == UpsertOutcome.INSERTED:
                counts["new"] += 1
                created.append(voucher)
            elif outcome == UpsertOutcome.UPDATED:
                counts["updated"] += 1
            else:
                counts["unchanged"] += 1

        if announce:
            for voucher in created:
                await self.notifier.publish(
                    EventKind.VOUCHER_CREATED, voucher.model_dump(exclude={"line_items"})
                )

        counts["max_sequence"] = max_sequence
        counts["min_failed_sequence"] = min_failed
        return counts

    async def _advance_cursor(self, entity: str, current: int, counts: Dict[str, Any]) -> int:
        """Move the cursor to the highest stored sequence, staying below any row that failed"""
        target = counts["max_sequence"]
        if counts["min_failed_sequence"] is not None:
            target = min(target, counts["min_failed_sequence"] - 1)
        if target > current:
            return await self.store.set_cursor(entity, target)
        return current

    @staticmethod
    def _pull_summary(fetched: int, parse_skipped: int, counts: Dict[str, Any], cursor: int) -> Dict[str, Any]:
        return {
            "total_fetched": fetched,
            "new_count": counts["new"],
            "updated_count": counts["updated"],
            "skipped_count": counts["unchanged"] + counts["failed"] + parse_skipped,
            "cursor": cursor,
        }

    # ============== Voucher pulls ==============

    @single_flight
    @timed
    async def run_incremental_sync(self) -> Dict[str, Any]:
        """Pull vouchers changed since the cursor"""
        return await self._run_pass("incremental", self._incremental_pass)

    async def _incremental_pass(self) -> Dict[str, Any]:
        cursor = await self.store.get_cursor(EntityClass.VOUCHERS)
        result = await self.client.fetch_vouchers_since(cursor)
        if not result.success:
            raise SyncAborted(result.error, result.error_kind)

        counts = await self._apply_vouchers(result.records)
        new_cursor = await self._advance_cursor(EntityClass.VOUCHERS, cursor, counts)
        if result.records:
            logger.info(
                f"Incremental: {len(result.records)} fetched, {counts['new']} new, "
                f"{counts['updated']} updated, cursor {cursor} -> {new_cursor}"
            )
        return self._pull_summary(len(result.records), result.skipped, counts, new_cursor)

    @single_flight
    @timed
    async def run_range_sync(self, from_date: Any, to_date: Any) -> Dict[str, Any]:
        """Pull every voucher dated between from_date and to_date (inclusive)"""
        try:
            start, end = parse_iso_date(str(from_date)), parse_iso_date(str(to_date))
        except ValueError as e:
            return {"success": False, "error": f"Invalid date: {e}"}
        if start is None or end is None or start > end:
            return {"success": False, "error": "from_date must be on or before to_date"}

        async def work() -> Dict[str, Any]:
            cursor = await self.store.get_cursor(EntityClass.VOUCHERS)
            result = await self.client.fetch_vouchers_in_range(start, end)
            if not result.success:
                raise SyncAborted(result.error, result.error_kind)
            counts = await self._apply_vouchers(result.records)
            new_cursor = await self._advance_cursor(EntityClass.VOUCHERS, cursor, counts)
            summary = self._pull_summary(len(result.records), result.skipped, counts, new_cursor)
            summary.update(from_date=start.isoformat(), to_date=end.isoformat())
            return summary

        return await self._run_pass("range", work)

    # ============== Reconciliation ==============

    @single_flight
    @timed
    async def run_deletion_reconciliation(self, kinds: Optional[List[str]] = None) -> Dict[str, Any]:
        """Detect vouchers deleted or converted in Tally, and kind changes"""
        return await self._run_pass("reconciliation", lambda: self._reconciliation_pass(kinds))

    async def _reconciliation_pass(self, kinds: Optional[List[str]]) -> Dict[str, Any]:
        remote = await self.client.fetch_all_voucher_identities(kinds)
        if not remote.success:
            raise SyncAborted(remote.error, remote.error_kind)
        local = await self.store.list_identities_for_reconciliation(kinds)
        if not remote.records and local:
            raise SyncAborted(
                f"Tally returned no vouchers; refusing to mark {len(local)} cached voucher(s) deleted"
            )

        remote_by_id = {identity.global_id: identity for identity in remote.records}
        logger.info(f"Reconciling {len(local)} cached voucher(s) against {len(remote_by_id)} in Tally")

        kind_changes = 0
        for identity in local:
            current = remote_by_id.get(identity.global_id)
            if current and current.kind and current.kind != identity.kind:
                if await self.store.update_voucher_kind(identity.global_id, current.kind):
                    kind_changes += 1
                    logger.info(f"Kind changed: {identity.number or identity.global_id} {identity.kind!r} -> {current.kind!r}")
                    await self.notifier.publish(EventKind.VOUCHER_KIND_CHANGED, {
                        "global_id": identity.global_id,
                        "number": identity.number,
                        "from_kind": identity.kind,
                        "to_kind": current.kind,
                    })

        missing = [identity for identity in local if identity.global_id not in remote_by_id]
        missing_ids = {identity.global_id for identity in missing}
        draft_kinds = set(self.settings.draft_kinds)
        claimed: set = set()
        converted: List[Dict[str, Any]] = []
        to_delete = []
        ambiguous = 0

        for identity in missing:
            if identity.kind in draft_kinds:
                draft = await self.store.get_voucher_by_global_id(identity.global_id)
                candidates = await self.store.list_conversion_candidates(
                    draft.counterparty_name,
                    draft.date,
                    self.settings.conversion_kinds or None,
                    exclude_global_ids=claimed | missing_ids,
                )
                match = match_conversion_target(
                    draft, candidates, self.settings.conversion_tolerance, self.settings.conversion_kinds
                )
                if match.matched and await self.store.mark_converted(
                    identity.global_id, match.candidate.kind, match.candidate.global_id
                ):
                    claimed.add(match.candidate.global_id)
                    entry = {
                        "global_id": identity.global_id,
                        "number": identity.number,
                        "converted_to_kind": match.candidate.kind,
                        "target_global_id": match.candidate.global_id,
                        "target_number": match.candidate.number,
                    }
                    converted.append(entry)
                    logger.info(f"Converted: {identity.number} -> {match.candidate.kind} {match.candidate.number}")
                    await self.notifier.publish(EventKind.VOUCHER_CONVERTED, entry)
                    continue
                if not match.matched and match.reason != "no candidate":
                    ambiguous += 1
                    logger.warning(
                        f"Ambiguous conversion for {identity.number or identity.global_id} "
                        f"({match.reason}); treating as deleted"
                    )
            to_delete.append(identity)

        outcome = await self.store.mark_deleted([identity.global_id for identity in to_delete], DELETE_REASON)
        deleted = [
            {"global_id": identity.global_id, "number": identity.number, "kind": identity.kind}
            for identity in to_delete
        ] if not outcome["errors"] else []
        if deleted:
            logger.info(f"Marked {outcome['deleted']} voucher(s) deleted")
            await self.notifier.publish(EventKind.VOUCHER_DELETED, {"vouchers": deleted, "reason": DELETE_REASON})

        return {
            "checked": len(local),
            "remote_count": len(remote_by_id),
            "kind_changes": kind_changes,
            "converted": len(converted),
            "deleted": outcome["deleted"],
            "ambiguous": ambiguous,
            "errors": outcome["errors"],
            "converted_vouchers": converted,
            "deleted_vouchers": deleted,
        }

    # ============== Full history ==============

    @single_flight
    @timed
    async def run_full_history_sync(self, start_date: Any = None, batch_days: Optional[int] = None) -> Dict[str, Any]:
        """Backfill from start_date (default: one year back) to today, window by window"""
        if batch_days is None:
            batch_days = self.settings.batch_days
        try:
            start = parse_iso_date(str(start_date)) if start_date else date.today() - timedelta(days=365)
        except ValueError as e:
            return {"success": False, "error": f"Invalid start date: {e}"}
        end = date.today()
        if start > end:
            return {"success": False, "error": "start_date is in the future"}
        if batch_days < 1:
            return {"success": False, "error": "batch_days must be at least 1"}

        progress = {
            "status": FullSyncStatus.IN_PROGRESS,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "batch_days": batch_days,
            "current_batch_date": start.isoformat(),
            "batches_completed": 0,
            "total_batches": len(generate_date_batches(start, end, batch_days)),
            "total_synced": 0,
            "max_sequence": 0,
            "min_failed_sequence": None,
            "last_error": None,
            "started_at": get_current_timestamp(),
            "completed_at": None,
        }
        return await self._run_pass("full_history", lambda: self._full_history_pass(progress))

    @single_flight
    @timed
    async def resume_full_history_sync(self) -> Dict[str, Any]:
        """Continue an interrupted backfill from the first window not yet completed"""
        progress = await self.store.get_full_sync_progress()
        if not progress or progress["status"] not in (FullSyncStatus.IN_PROGRESS, FullSyncStatus.ERROR):
            return {"success": False, "error": "No interrupted full history sync to resume"}
        progress = dict(progress, status=FullSyncStatus.IN_PROGRESS, last_error=None)
        logger.info(
            f"Resuming full history sync at {progress['current_batch_date']} "
            f"({progress['batches_completed']}/{progress['total_batches']} done)"
        )
        return await self._run_pass("full_history", lambda: self._full_history_pass(progress))

    async def _full_history_pass(self, progress: Dict[str, Any]) -> Dict[str, Any]:
        start = parse_iso_date(progress["current_batch_date"])
        end = parse_iso_date(progress["end_date"])
        batches = generate_date_batches(start, end, progress["batch_days"]) if start <= end else []
        await self.store.save_full_sync_progress(progress)

        run_counts = {"new": 0, "updated": 0, "unchanged": 0, "failed": 0, "skipped": 0}
        for index, (batch_start, batch_end) in enumerate(batches):
            if index > 0 and self.settings.batch_delay > 0:
                await asyncio.sleep(self.settings.batch_delay)

            result = await self.client.fetch_vouchers_in_range(batch_start, batch_end)
            if not result.success:
                progress["last_error"] = result.error
                await self.store.save_full_sync_progress(progress)
                raise SyncAborted(
                    f"Full history sync stopped at {batch_start.isoformat()}: {result.error}", result.error_kind
                )

            counts = await self._apply_vouchers(result.records, announce=False)
            for key in ("new", "updated", "unchanged", "failed"):
                run_counts[key] += counts[key]
            run_counts["skipped"] += result.skipped
            progress["batches_completed"] += 1
            progress["total_synced"] += counts["new"] + counts["updated"]
            progress["max_sequence"] = max(progress["max_sequence"] or 0, counts["max_sequence"])
            failed = counts["min_failed_sequence"]
            if failed is not None:
                previous = progress.get("min_failed_sequence")
                progress["min_failed_sequence"] = failed if previous is None else min(previous, failed)
            progress["current_batch_date"] = (batch_end + timedelta(days=1)).isoformat()
            await self.store.save_full_sync_progress(progress)

            logger.info(
                f"Full history batch {progress['batches_completed']}/{progress['total_batches']} "
                f"{batch_start}..{batch_end}: {len(result.records)} voucher(s)"
            )
            await self.notifier.publish(EventKind.SYNC_PROGRESS, {
                "pass": "full_history",
                "batch_start": batch_start.isoformat(),
                "batch_end": batch_end.isoformat(),
                "batches_completed": progress["batches_completed"],
                "total_batches": progress["total_batches"],
                "total_synced": progress["total_synced"],
            })

        cursor = await self._advance_cursor(
            EntityClass.VOUCHERS,
            await self.store.get_cursor(EntityClass.VOUCHERS),
            {
                "max_sequence": progress["max_sequence"] or 0,
                "min_failed_sequence": progress.get("min_failed_sequence"),
            },
        )

        progress["status"] = FullSyncStatus.COMPLETED
        progress["completed_at"] = get_current_timestamp()
        await self.store.save_full_sync_progress(progress)
        return {
            "batches_completed": progress["batches_completed"],
            "total_batches": progress["total_batches"],
            "total_synced": progress["total_synced"],
            "new_count": run_counts["new"],
            "updated_count": run_counts["updated"],
            "skipped_count": run_counts["unchanged"] + run_counts["failed"] + run_counts["skipped"],
            "cursor": cursor,
        }

    async def get_full_sync_status(self) -> Dict[str, Any]:
        progress = await self.store.get_full_sync_progress()
        return progress or {"status": FullSyncStatus.NOT_STARTED}

    # ============== Master data ==============

    @single_flight
    @timed
    async def run_master_data_sync(self) -> Dict[str, Any]:
        """Stock items and parties by their own cursors, then the pending voucher queue"""
        return await self._run_pass("master_data", self._master_data_pass)

    async def _master_data_pass(self) -> Dict[str, Any]:
        stock_cursor = await self.store.get_cursor(EntityClass.STOCK_ITEMS)
        stock = await self.client.fetch_stock_items_since(stock_cursor)
        if not stock.success:
            raise SyncAborted(f"Stock items: {stock.error}", stock.error_kind)
        stored_items = await self.store.upsert_stock_items(stock.records)
        if stock.records:
            await self.store.set_cursor(
                EntityClass.STOCK_ITEMS, max(item.change_sequence for item in stock.records)
            )

        party_cursor = await self.store.get_cursor(EntityClass.PARTIES)
        parties = []
        for group in self.settings.party_groups:
            result = await self.client.fetch_parties_since(party_cursor, group)
            if not result.success:
                raise SyncAborted(f"Parties under {group}: {result.error}", result.error_kind)
            parties.extend(result.records)
        stored_parties = await self.store.upsert_parties(parties)
        if parties:
            await self.store.set_cursor(EntityClass.PARTIES, max(party.change_sequence for party in parties))

        if stored_items or stored_parties:
            logger.info(f"Master data: {stored_items} stock item(s), {stored_parties} part(y/ies)")

        pending = await self.push_pending_vouchers()
        return {"stock_items": stored_items, "parties": stored_parties, "pending_vouchers": pending}

    async def push_pending_vouchers(self) -> Dict[str, int]:
        """Retry vouchers queued while Tally was unreachable; failures stay local to the queue"""
        summary = {"attempted": 0, "pushed": 0, "failed": 0, "still_pending": 0}
        try:
            queued = await self.store.list_pending_vouchers()
        except aiosqlite.Error as e:
            logger.error(f"Could not read pending vouchers: {e}")
            return summary

        for entry in queued:
            summary["attempted"] += 1
            draft: VoucherDraft = entry["draft"]
            result = await self.client.create_voucher(draft)
            try:
                if result.success:
                    await self.store.update_pending_voucher(entry["id"], PendingStatus.SYNCED, remote_id=result.remote_id)
                    summary["pushed"] += 1
                    await self.notifier.publish(EventKind.PENDING_VOUCHER_PUSHED, {
                        "pending_id": entry["id"],
                        "remote_id": result.remote_id,
                        "counterparty_name": draft.counterparty_name,
                        "kind": draft.kind,
                    })
                elif result.error_kind in TRANSPORT_KINDS:
                    await self.store.update_pending_voucher(entry["id"], PendingStatus.PENDING, error=result.error)
                    summary["still_pending"] += 1
                else:
                    await self.store.update_pending_voucher(entry["id"], PendingStatus.FAILED, error=result.error)
                    summary["failed"] += 1
            except aiosqlite.Error as e:
                logger.error(f"Could not update pending voucher {entry['id']}: {e}")
        if summary["attempted"]:
            logger.info(f"Pending vouchers: {summary}")
        return summary

    # ============== Voucher operations ==============

    async def create_voucher(self, draft: VoucherDraft) -> Dict[str, Any]:
        """Push a new voucher; queue it locally when Tally cannot be reached"""
        result = await self.client.create_voucher(draft)
        if result.success:
            return {"success": True, "queued": False, "remote_id": result.remote_id}
        if result.error_kind in TRANSPORT_KINDS:
            pending_id = await self.store.queue_pending_voucher(draft, result.error)
            logger.warning(f"Tally unreachable, voucher for {draft.counterparty_name} queued as #{pending_id}")
            return {"success": True, "queued": True, "pending_id": pending_id, "error": result.error}
        return {"success": False, "error": result.error, "error_kind": result.error_kind.value}

    async def _active_voucher(self, global_id: str):
        voucher = await self.store.get_voucher_by_global_id(global_id)
        if voucher is None:
            return None, {"success": False, "error": f"Voucher {global_id} not found"}
        if voucher.is_deleted or voucher.is_converted:
            return None, {"success": False, "error": f"Voucher {global_id} is no longer active"}
        return voucher, None

    async def refresh_line_items(self, global_id: str) -> Dict[str, Any]:
        """Fetch the voucher's inventory lines from Tally and replace the cached ones"""
        voucher, error = await self._active_voucher(global_id)
        if error:
            return error
        detail = await self.client.fetch_voucher_detail(voucher.remote_id)
        if not detail.success:
            return {"success": False, "error": detail.error, "error_kind": detail.error_kind.value}
        await self.store.replace_line_items(global_id, detail.line_items)
        return {"success": True, "items": [item.model_dump() for item in detail.line_items]}

    async def update_voucher_items(self, global_id: str, items: List[LineItem]) -> Dict[str, Any]:
        """Replace a voucher's line items in Tally, then in the cache"""
        voucher, error = await self._active_voucher(global_id)
        if error:
            return error
        alteration = VoucherAlteration(
            remote_id=voucher.remote_id,
            global_id=voucher.global_id,
            kind=voucher.kind,
            number=voucher.number,
            date=voucher.date,
            counterparty_name=voucher.counterparty_name,
            items=items,
        )
        result = await self.client.update_voucher(alteration)
        if not result.success:
            return {"success": False, "error": result.error, "error_kind": result.error_kind.value}
        await self.store.replace_line_items(global_id, items)
        return {"success": True, "changed_count": result.changed_count, "item_count": len(items)}

    async def delete_voucher(self, global_id: str) -> Dict[str, Any]:
        """Delete a voucher in Tally and soft-delete the cached row"""
        voucher, error = await self._active_voucher(global_id)
        if error:
            return error
        result = await self.client.delete_voucher(voucher.remote_id, voucher.kind)
        if not result.success:
            return {"success": False, "error": result.error, "error_kind": result.error_kind.value}
        reason = "Deleted from dashboard"
        outcome = await self.store.mark_deleted([global_id], reason)
        await self.notifier.publish(EventKind.VOUCHER_DELETED, {
            "vouchers": [{"global_id": global_id, "number": voucher.number, "kind": voucher.kind}],
            "reason": reason,
        })
        return {"success": True, "deleted": outcome["deleted"]}

    async def update_local_status(self, global_id: str, update: LocalStatusUpdate) -> Dict[str, Any]:
        if not await self.store.update_local_status(global_id, update):
            return {"success": False, "error": f"Voucher {global_id} not found or nothing to update"}
        return {"success": True, "status": await self.store.get_local_status(global_id)}
