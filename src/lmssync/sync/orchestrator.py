"""
SyncOrchestrator: drives one entity-type sync from LMS API to local store.

Lifecycle of a run:
  1. begin()    validate entity/mode and credentials, take the lock, create
                the SyncLog row (status="running"). Raises on config errors
                or a lock conflict; nothing is written in that case.
  2. execute()  fetch pages, hand each page to the writer, report progress,
                then mark the SyncLog "completed" or "failed". Never raises.
                The lock is released in a finally block.

Per-entity policy:

    users, groups, courses   full or incremental (updated_at window)
    course-properties        full only
    group-memberships        full only, delete-and-reinsert per group
    enrollments              full, or incremental by recent user activity

Batches already written stay written when a run fails; there is no rollback
across a whole sync. A run whose lock slot is cleared (forced or stale)
stops after its current page/group/user with SyncCancelledError.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from lmssync.errors import ConfigurationError, LmsApiError, SyncCancelledError
from lmssync.lms.client import LmsClient
from lmssync.lms.normalizer import (
    CoursePropertiesRecord, CourseRecord, GroupRecord, MalformedRecordError,
    TranscriptRecord, UserRecord, membership_user_id,
)
from lmssync.matching.matcher import is_partner_group
from lmssync.matching.service import auto_match_groups
from lmssync.models.lms import LmsCourse
from lmssync.sync import store
from lmssync.sync.lock import LockSlot, SyncLock
from lmssync.sync.synclog import create_sync_log, finish_sync_log
from lmssync.sync.window import resolve_window
from lmssync.sync.writer import BatchUpsertWriter, WriteResult

logger = logging.getLogger(__name__)

FULL = "full"
INCREMENTAL = "incremental"

ENTITY_MODES: Dict[str, tuple] = {
    "users": (FULL, INCREMENTAL),
    "groups": (FULL, INCREMENTAL),
    "courses": (FULL, INCREMENTAL),
    "course-properties": (FULL,),
    "group-memberships": (FULL,),
    "enrollments": (FULL, INCREMENTAL),
}

# Memberships reference users and groups; enrollments reference users,
# memberships and courses.
CHAIN_ORDER = (
    "users", "groups", "group-memberships", "courses", "course-properties", "enrollments",
)

# Enrollment runs give up once this many users failed with API errors and
# failures outnumber successes.
MAX_ENROLLMENT_API_ERRORS = 10

ProgressCallback = Callable[[str, int, int], Any]


@dataclass
class SyncStats:
    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    counts_approximate: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def add(self, result: WriteResult) -> None:
        self.processed += result.processed
        self.created += result.created
        self.updated += result.updated
        self.failed += result.failed
        if result.processed and result.counts_approximate:
            self.counts_approximate = True
        if result.failed_keys:
            failed = self.details.setdefault("failedKeys", [])
            failed.extend(k for k in result.failed_keys[:20 - len(failed)])

    def as_details(self) -> Dict[str, Any]:
        details = dict(self.details)
        details["skipped"] = self.skipped
        if self.counts_approximate:
            details["countsApproximate"] = True
        return details


@dataclass
class SyncRun:
    log_id: int
    entity_type: str
    mode: str
    slot: LockSlot
    stats: SyncStats = field(default_factory=SyncStats)
    owns_lock: bool = True


@dataclass
class ChainRun:
    mode: str
    slot: LockSlot


class SyncOrchestrator:
    """Runs entity syncs one at a time under a shared SyncLock."""

    def __init__(
        self,
        engine,
        settings,
        lock: Optional[SyncLock] = None,
        client: Optional[LmsClient] = None,
        writer: Optional[BatchUpsertWriter] = None,
        progress: Optional[ProgressCallback] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine.
            settings: lmssync.config.Settings.
            lock: Shared SyncLock. Defaults to one using sync_stale_lock_minutes.
            client: LmsClient. Built from settings on first use when omitted,
                so a missing API key surfaces as ConfigurationError in begin().
            writer: BatchUpsertWriter. Defaults to one built from settings.
            progress: Optional callback receiving (stage, current, total);
                total is 0 when not known in advance.
        """
        self.engine = engine
        self.settings = settings
        self.lock = lock or SyncLock(stale_after=settings.sync_stale_lock_minutes * 60)
        self._client = client
        self.writer = writer or BatchUpsertWriter(
            engine, batch_size=settings.sync_batch_size, exact_counts=settings.sync_exact_counts,
        )
        self.progress = progress
        self._handlers: Dict[str, Callable[[SyncRun], Awaitable[None]]] = {
            "users": self._sync_users,
            "groups": self._sync_groups,
            "courses": self._sync_courses,
            "course-properties": self._sync_course_properties,
            "group-memberships": self._sync_group_memberships,
            "enrollments": self._sync_enrollments,
        }

    @property
    def client(self) -> LmsClient:
        return self._require_client()

    def _require_client(self) -> LmsClient:
        """Return the LMS client, building it from settings on first use.

        Raises:
            ConfigurationError: if no API key is configured.
        """
        if self._client is None:
            self._client = LmsClient.from_settings(self.settings)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    # ─── Run lifecycle ────────────────────────────────────────────────────────

    def validate(self, entity_type: str, mode: str) -> None:
        """Raise ConfigurationError for unknown entity types or unsupported modes."""
        if entity_type not in ENTITY_MODES:
            raise ConfigurationError(
                f"Unknown entity type {entity_type!r}; expected one of {', '.join(ENTITY_MODES)}"
            )
        if mode not in ENTITY_MODES[entity_type]:
            raise ConfigurationError(f"{entity_type} does not support {mode} mode")

    def begin(self, entity_type: str, mode: str = FULL) -> SyncRun:
        """Take the lock and open a SyncLog row for one entity sync.

        Raises:
            ConfigurationError: bad entity type, mode, or missing API key.
            SyncConflictError: another sync holds the lock.
        """
        self.validate(entity_type, mode)
        self._require_client()
        slot = self.lock.acquire(entity_type, mode)
        try:
            log = create_sync_log(self.engine, entity_type, mode)
        except Exception:
            self.lock.release(slot)
            raise
        logger.info("Sync %s started (%s, log %d)", entity_type, mode, log.id)
        return SyncRun(log_id=log.id, entity_type=entity_type, mode=mode, slot=slot)

    async def execute(self, run: SyncRun) -> Dict[str, Any]:
        """Run a begun sync to completion and record the outcome.

        Never raises; failures end up on the SyncLog row and in the returned
        summary.
        """
        status, error = "completed", None
        stats = run.stats
        try:
            try:
                await self._handlers[run.entity_type](run)
            except SyncCancelledError as exc:
                status, error = "failed", str(exc)
                logger.warning("Sync %s cancelled: %s", run.entity_type, exc)
            except Exception as exc:
                status, error = "failed", str(exc) or exc.__class__.__name__
                logger.exception("Sync %s failed", run.entity_type)

            try:
                finish_sync_log(
                    self.engine,
                    run.log_id,
                    status=status,
                    processed=stats.processed,
                    created=stats.created,
                    updated=stats.updated,
                    failed=stats.failed,
                    error_message=error,
                    details=stats.as_details(),
                )
            except Exception:
                logger.exception("Could not record outcome of sync log %d", run.log_id)
        finally:
            if run.owns_lock:
                self.lock.release(run.slot)
        logger.info(
            "Sync %s %s: %d processed, %d created, %d updated, %d failed",
            run.entity_type, status, stats.processed, stats.created, stats.updated, stats.failed,
        )
        return {
            "logId": run.log_id,
            "entityType": run.entity_type,
            "mode": run.mode,
            "status": status,
            "processed": stats.processed,
            "created": stats.created,
            "updated": stats.updated,
            "failed": stats.failed,
            "error": error,
        }

    async def run(self, entity_type: str, mode: str = FULL) -> Dict[str, Any]:
        """begin() + execute(). Raises only what begin() raises."""
        return await self.execute(self.begin(entity_type, mode))

    def begin_chain(self, mode: str = INCREMENTAL) -> ChainRun:
        """Take the lock for a full ordered chain of entity syncs."""
        if mode not in (FULL, INCREMENTAL):
            raise ConfigurationError(f"Unknown sync mode {mode!r}")
        self._require_client()
        return ChainRun(mode=mode, slot=self.lock.acquire("full-chain", mode))

    async def execute_chain(self, chain: ChainRun) -> List[Dict[str, Any]]:
        """Run every entity sync in CHAIN_ORDER under the chain's lock slot.

        A failed step is recorded and the chain moves on. A cancelled chain
        stops before the next step.
        """
        results = []
        try:
            for entity_type in CHAIN_ORDER:
                if chain.slot.cancel_token.cancelled:
                    logger.warning("Sync chain cancelled before %s", entity_type)
                    break
                mode = chain.mode if chain.mode in ENTITY_MODES[entity_type] else FULL
                chain.slot.progress = {"stage": entity_type, "current": 0, "total": 0}
                try:
                    log = create_sync_log(self.engine, entity_type, mode)
                except Exception as exc:
                    logger.exception("Could not open sync log for %s, skipping step", entity_type)
                    results.append({
                        "logId": None, "entityType": entity_type, "mode": mode,
                        "status": "failed", "processed": 0, "created": 0, "updated": 0,
                        "failed": 0, "error": str(exc) or exc.__class__.__name__,
                    })
                    continue
                run = SyncRun(
                    log_id=log.id, entity_type=entity_type, mode=mode,
                    slot=chain.slot, owns_lock=False,
                )
                results.append(await self.execute(run))
        finally:
            self.lock.release(chain.slot)
        failed = [r["entityType"] for r in results if r["status"] != "completed"]
        logger.info(
            "Sync chain finished: %d steps, failed: %s", len(results), ", ".join(failed) or "none",
        )
        return results

    async def run_chain(self, mode: str = INCREMENTAL) -> List[Dict[str, Any]]:
        return await self.execute_chain(self.begin_chain(mode))

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _check_cancelled(self, run: SyncRun) -> None:
        if run.slot.cancel_token.cancelled:
            raise SyncCancelledError(f"{run.entity_type} sync cancelled: lock was cleared")

    def _report(self, run: SyncRun, stage: str, current: int, total: int = 0) -> None:
        run.slot.progress = {"stage": stage, "current": current, "total": total}
        if self.progress is None:
            return
        try:
            self.progress(stage, current, total)
        except Exception:
            logger.warning("Progress callback failed for %s", stage, exc_info=True)

    def _write(self, run: SyncRun, entity_type: str, rows: List[Dict[str, Any]]) -> WriteResult:
        """Hand rows to the writer, reporting each written batch as "<entity>:write"."""
        stage = f"{entity_type}:write"
        return self.writer.write(
            entity_type, rows,
            progress=lambda done, total: self._report(run, stage, done, total),
        )

    def _window_params(self, run: SyncRun) -> Dict[str, str]:
        if run.mode != INCREMENTAL:
            return {}
        window = resolve_window(self.engine, run.entity_type)
        if window is None:
            logger.info("No completed %s sync yet, fetching everything", run.entity_type)
            run.stats.details["fallbackToFull"] = True
            return {}
        run.stats.details["since"] = window.since.isoformat()
        return window.as_params()

    async def _sync_paged(
        self,
        run: SyncRun,
        path: str,
        parse: Callable[[Dict[str, Any]], Any],
        keep: Optional[Callable[[Any], bool]] = None,
        write_entity: Optional[str] = None,
    ) -> Set[str]:
        """Stream pages of path through parse -> keep -> writer.

        Returns the ids of every parsed record. Sets details["complete"] when
        the listing ended on its own rather than on the page ceiling.
        """
        params = self._window_params(run)
        stats = run.stats
        seen: Set[str] = set()
        fetched = 0
        last_page = None
        async for page in self.client.iter_pages(path, params):
            last_page = page
            rows = []
            for item in page.items:
                try:
                    record = parse(item)
                except MalformedRecordError as exc:
                    logger.warning("Skipping malformed %s record: %s", run.entity_type, exc)
                    stats.failed += 1
                    continue
                seen.add(record.id)
                if keep is not None and not keep(record):
                    stats.skipped += 1
                    continue
                rows.append(record.to_row())
            fetched += len(page.items)
            if rows:
                stats.add(self._write(run, write_entity or run.entity_type, rows))
            self._report(run, run.entity_type, fetched)
            self._check_cancelled(run)
        stats.details["pages"] = last_page.number if last_page else 0
        stats.details["complete"] = not (
            last_page is not None and last_page.next and last_page.number >= self.client.max_pages
        )
        return seen

    # ─── Entity handlers ──────────────────────────────────────────────────────

    async def _sync_users(self, run: SyncRun) -> None:
        seen = await self._sync_paged(run, "/v2/people", UserRecord.from_api)
        if run.mode == FULL and run.stats.details.get("complete") and seen:
            run.stats.details["markedDeleted"] = store.mark_missing_users_deleted(self.engine, seen)

    async def _sync_groups(self, run: SyncRun) -> None:
        prefix = self.settings.match_group_prefix
        await self._sync_paged(
            run, "/v2/groups", GroupRecord.from_api,
            keep=lambda group: is_partner_group(group.name, prefix),
        )
        if self.settings.auto_match_on_group_sync:
            self._check_cancelled(run)
            report = auto_match_groups(
                self.engine,
                min_score=self.settings.match_auto_link_threshold,
                prefix=prefix,
                denylist=self.settings.match_denylist_terms,
            )
            run.stats.details["autoMatch"] = {
                k: report[k] for k in ("total", "matched", "skipped", "failed")
            }

    async def _sync_courses(self, run: SyncRun) -> None:
        await self._sync_paged(run, "/v2/courses", CourseRecord.from_api)

    async def _sync_course_properties(self, run: SyncRun) -> None:
        stats = run.stats
        created_archived = 0
        fetched = 0
        async for page in self.client.iter_pages("/v2/properties/courses"):
            records = []
            for item in page.items:
                try:
                    records.append(CoursePropertiesRecord.from_api(item))
                except MalformedRecordError as exc:
                    logger.warning("Skipping malformed course properties: %s", exc)
                    stats.failed += 1
            known = store.existing_ids(
                self.engine, LmsCourse.__table__.c.id, [r.course_id for r in records]
            )
            store.update_course_npcu(
                self.engine, {r.course_id: r.npcu_value for r in records if r.course_id in known}
            )
            archived = [r for r in records if r.course_id not in known and r.npcu_value > 0]
            if archived:
                result = self._write(run, "courses", [r.archived_course_row() for r in archived])
                created_archived += result.created
                known.update(r.course_id for r in archived if r.course_id not in result.failed_keys)
            stats.skipped += sum(1 for r in records if r.course_id not in known)
            rows = [r.to_row() for r in records if r.course_id in known]
            if rows:
                stats.add(self._write(run, "course-properties", rows))
            fetched += len(page.items)
            self._report(run, run.entity_type, fetched)
            self._check_cancelled(run)
        stats.details["archivedCoursesCreated"] = created_archived

    async def _sync_group_memberships(self, run: SyncRun) -> None:
        stats = run.stats
        groups = store.membership_groups(self.engine)
        failed_groups: List[Dict[str, Any]] = []
        soft_deleted = 0
        members_added = 0
        for index, group in enumerate(groups, 1):
            result = await self.client.fetch_all(f"/v2/groups/{group['id']}/memberships")
            if result.error is not None and result.error.status_code == 404:
                store.soft_delete_group(self.engine, group["id"], "Group not found in LMS (deleted)")
                soft_deleted += 1
            elif not result.complete:
                # Replacing from a partial list would drop real members.
                stats.failed += 1
                failed_groups.append({
                    "id": group["id"],
                    "name": group["name"],
                    "reason": str(result.error) if result.error else "page ceiling reached",
                })
            else:
                user_ids = [uid for uid in map(membership_user_id, result.records) if uid]
                change = store.replace_group_members(self.engine, group["id"], user_ids)
                stats.processed += change.members
                stats.created += change.added
                stats.updated += 1
                stats.skipped += change.unknown_users
                members_added += change.added
            self._report(run, run.entity_type, index, len(groups))
            self._check_cancelled(run)
            if index < len(groups):
                await self.client.throttle()
        stats.details.update({
            "groups": len(groups),
            "softDeleted": soft_deleted,
            "membersAdded": members_added,
            "failedGroups": failed_groups[:20],
        })

    async def _sync_enrollments(self, run: SyncRun) -> None:
        if not self.client.is_healthy:
            raise LmsApiError(
                "LMS API is unhealthy, refusing to start enrollment sync", 0, "/v2/transcripts",
            )
        stats = run.stats
        incremental = run.mode == INCREMENTAL
        user_ids = store.enrollment_candidates(
            self.engine,
            incremental=incremental,
            max_age_days=self.settings.enrollment_max_age_days,
        )
        if incremental:
            stats.skipped = store.count_enrollment_eligible(self.engine) - len(user_ids)
        details = stats.details
        details.update({"usersChecked": len(user_ids), "usersNotFound": 0, "apiErrors": 0})
        users_done = 0
        errors: List[Dict[str, Any]] = []

        for index, user_id in enumerate(user_ids, 1):
            result = await self.client.fetch_all(f"/v2/transcripts/{user_id}")
            rows = []
            for item in result.records:
                try:
                    transcript = TranscriptRecord.from_api(item)
                except MalformedRecordError as exc:
                    logger.warning("Skipping malformed transcript for %s: %s", user_id, exc)
                    stats.failed += 1
                    continue
                if transcript.is_course:
                    rows.append(transcript.to_row(user_id))
            if rows:
                stats.add(self._write(run, "enrollments", rows))

            if result.error is not None and result.error.status_code == 404:
                details["usersNotFound"] += 1
                store.stamp_enrollment_synced(self.engine, user_id)
            elif result.error is not None:
                details["apiErrors"] += 1
                stats.failed += 1
                if len(errors) < 10:
                    errors.append({"userId": user_id, "status": result.error.status_code,
                                   "error": str(result.error)})
                if (details["apiErrors"] >= MAX_ENROLLMENT_API_ERRORS
                        and details["apiErrors"] > users_done):
                    details["abortReason"] = "Too many API errors"
                    details["errors"] = errors
                    raise LmsApiError(
                        f"Too many API errors: {result.error}",
                        result.error.status_code,
                        f"/v2/transcripts/{user_id}",
                    )
            elif result.complete:
                store.stamp_enrollment_synced(self.engine, user_id)
                users_done += 1

            self._report(run, run.entity_type, index, len(user_ids))
            self._check_cancelled(run)
            if index < len(user_ids):
                await self.client.throttle()

        details["usersSynced"] = users_done
        if errors:
            details["errors"] = errors


_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    """Return the process-wide orchestrator (and with it, the sync lock)."""
    global _orchestrator
    if _orchestrator is None:
        from lmssync.config import get_settings
        from lmssync.db.engine import get_engine
        _orchestrator = SyncOrchestrator(get_engine(), get_settings())
    return _orchestrator


async def shutdown_orchestrator() -> None:
    """Close the process-wide orchestrator's HTTP client, if one was built."""
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.aclose()
        _orchestrator = None
