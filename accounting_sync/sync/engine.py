"""
Sync engine for bidirectional accounting synchronization.

Orchestrates one sync pass per entity kind between the local database and
the accounting provider. A pass has two phases:

1. analyze: read both sides in bounded pages and choose exactly one action
   per logical record (NOOP, UPDATE_REMOTE, UPDATE_LOCAL, CONFLICT,
   CREATE_MAPPING, CREATE_REMOTE, CREATE_LOCAL). Planning is sequential, so
   each remote record is claimed at most once and natural-key matching can
   never map two local rows to one external id.
2. execute: apply the non-NOOP actions in a bounded worker pool. Per-record
   failures land in the SyncErrorLog and never abort the batch; a revoked
   token aborts the whole run with one message.
"""

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from accounting_sync.api.accounting_api import (
    AccountingAPI,
    AccountingAPIError,
    RateLimitedError,
    ValidationError,
)
from accounting_sync.auth.connection import IntegrationConnection
from accounting_sync.auth.oauth import (
    AuthenticationError,
    TokenExpiredError,
    TokenRevokedError,
)
from accounting_sync.auth.token_manager import TokenManager
from accounting_sync.config.settings import SyncSettings
from accounting_sync.storage.db import DuplicateMappingError, SyncDatabase
from accounting_sync.sync.conflict import ConflictDetector, ConflictStatus
from accounting_sync.sync.entities import EntityAdapter, get_adapter
from accounting_sync.sync.error_log import SyncAttempt, SyncErrorLog, SyncStatus
from accounting_sync.sync.records import (
    EntityKind,
    LocalRecord,
    RemoteRecord,
    SyncAction,
    SyncDirection,
)
from accounting_sync.utils.dates import latest, utc_now

# Kinds in dependency order: invoices reference contacts, payments invoices
SYNC_ORDER = (EntityKind.CONTACTS, EntityKind.INVOICES, EntityKind.PAYMENTS)

REVOKED_MESSAGE = (
    "The accounting connection was revoked or is no longer valid. "
    "Reconnect with 'accounting-sync connect' and run the sync again."
)

logger = logging.getLogger(__name__)


class StaleRecordError(Exception):
    """The local row changed between planning and execution."""

    pass


class ItemStatus(Enum):
    """Execution outcome of one planned action."""

    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


@dataclass
class PlannedAction:
    """
    The action chosen for one logical record.

    Attributes:
        action: What to do
        local: Local copy, if one exists
        remote: Remote copy, if one was listed
        touch_only: Contents already agree; only the sync marker moves
        reason: Short explanation for dry runs and logs
    """

    action: SyncAction
    local: Optional[LocalRecord] = None
    remote: Optional[RemoteRecord] = None
    touch_only: bool = False
    reason: str = ""

    @property
    def entity_id(self) -> Optional[int]:
        return self.local.id if self.local else None

    @property
    def external_id(self) -> Optional[str]:
        if self.remote is not None:
            return self.remote.external_id
        return self.local.external_id if self.local else None

    @property
    def needs_execution(self) -> bool:
        return self.action != SyncAction.NOOP or self.touch_only

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "entity_id": self.entity_id,
            "external_id": self.external_id,
            "touch_only": self.touch_only,
            "reason": self.reason,
        }


@dataclass
class SyncStats:
    """
    Statistics from a sync pass.

    Tracks counts of all operations planned and performed.
    """

    local_records: int = 0
    remote_records: int = 0
    planned: Counter = field(default_factory=Counter)
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: int = 0
    conflicts_recorded: int = 0
    writes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_records": self.local_records,
            "remote_records": self.remote_records,
            "planned": {action.value: n for action, n in self.planned.items()},
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "conflicts_recorded": self.conflicts_recorded,
            "writes": self.writes,
        }


@dataclass
class SyncReport:
    """
    Result of a sync pass.

    Contains the plan, statistics and abort information.
    """

    kind: EntityKind
    direction: SyncDirection
    dry_run: bool = False
    plan: list[PlannedAction] = field(default_factory=list)
    stats: SyncStats = field(default_factory=SyncStats)
    aborted: bool = False
    abort_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def has_changes(self) -> bool:
        """Check if the plan contains anything to execute."""
        return any(item.needs_execution for item in self.plan)

    def summary(self) -> str:
        """Generate a human-readable summary of the sync pass."""
        mode = " (dry run)" if self.dry_run else ""
        lines = [
            f"Sync {self.kind.value} [{self.direction.value}]{mode}:",
            f"  Local records: {self.stats.local_records}, "
            f"remote records: {self.stats.remote_records}",
        ]
        for action in SyncAction:
            count = self.stats.planned.get(action, 0)
            if count:
                lines.append(f"  {action.value}: {count}")
        if not self.dry_run:
            lines.append(
                f"  Writes: {self.stats.writes}, succeeded: {self.stats.succeeded}, "
                f"failed: {self.stats.failed}, skipped: {self.stats.skipped}"
            )
            if self.stats.timed_out:
                lines.append(f"  Not started (job timeout): {self.stats.timed_out}")
            if self.stats.conflicts_recorded:
                lines.append(f"  New conflicts: {self.stats.conflicts_recorded}")
        if self.aborted:
            lines.append(f"  ABORTED: {self.abort_reason}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "direction": self.direction.value,
            "dry_run": self.dry_run,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "stats": self.stats.to_dict(),
            "plan": [item.to_dict() for item in self.plan if item.needs_execution],
        }


@dataclass
class _ItemOutcome:
    status: ItemStatus
    writes: int = 0
    conflict_created: bool = False
    revoked: Optional[TokenRevokedError] = None


class RateLimitGate:
    """
    Shared back-off gate for one batch.

    The provider's rate limit applies to the whole connection, so a 429 on
    any record closes the gate for every worker until Retry-After elapses.
    """

    def __init__(
        self,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._monotonic = monotonic
        self._sleep = sleep
        self._lock = threading.Lock()
        self._resume_at = 0.0

    def block_for(self, seconds: float) -> None:
        with self._lock:
            self._resume_at = max(self._resume_at, self._monotonic() + seconds)

    def remaining(self) -> float:
        with self._lock:
            return max(0.0, self._resume_at - self._monotonic())

    def wait(self) -> None:
        """Block until the gate is open."""
        while True:
            remaining = self.remaining()
            if remaining <= 0:
                return
            self._sleep(remaining)


class SyncOrchestrator:
    """
    Drives sync passes for contacts, invoices and payments.

    Usage:
        orchestrator = SyncOrchestrator(db, api, token_manager, error_log)
        report = orchestrator.sync_entities(connection, EntityKind.CONTACTS)
        print(report.summary())

    Attributes:
        concurrency: Worker pool size
        page_size: Records per page on both sides
        job_timeout: Seconds after which unstarted records are skipped
        max_rate_limit_retries: 429 retries per record
    """

    def __init__(
        self,
        db: SyncDatabase,
        api: AccountingAPI,
        token_manager: TokenManager,
        error_log: SyncErrorLog,
        detector: Optional[ConflictDetector] = None,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or SyncSettings()
        self.db = db
        self.api = api
        self.token_manager = token_manager
        self.error_log = error_log
        self.detector = detector or ConflictDetector(db, clock=clock)
        self.concurrency = settings.concurrency
        self.page_size = settings.page_size
        self.job_timeout = settings.job_timeout
        self.max_rate_limit_retries = settings.max_rate_limit_retries
        self.clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

    # =========================================================================
    # Entry points
    # =========================================================================

    def sync_entities(
        self,
        connection: IntegrationConnection,
        kind: EntityKind | str,
        direction: SyncDirection | str = SyncDirection.BOTH,
        dry_run: bool = False,
    ) -> SyncReport:
        """
        Perform one sync pass for an entity kind.

        Args:
            connection: The active connection (passed explicitly)
            kind: Entity kind to sync
            direction: pull, push or both
            dry_run: If True, return the plan without writing anything

        Returns:
            SyncReport with the plan and outcome
        """
        kind = EntityKind(kind)
        direction = SyncDirection(direction)
        logger.info(
            f"Starting {kind.value} sync (direction={direction.value}, dry_run={dry_run})"
        )

        report = self.analyze(connection, kind, direction)
        report.dry_run = dry_run
        if not dry_run and not report.aborted and report.has_changes():
            self.execute(connection, report)

        if not dry_run and not report.aborted:
            self.db.update_connection_last_sync(connection.id, self.clock())
        report.finished_at = self.clock()
        logger.info(report.summary())
        return report

    def sync_all(
        self,
        connection: IntegrationConnection,
        kinds: Optional[list[EntityKind | str]] = None,
        direction: SyncDirection | str = SyncDirection.BOTH,
        dry_run: bool = False,
    ) -> list[SyncReport]:
        """
        Sync several kinds in dependency order.

        Stops after a pass aborted by token revocation.
        """
        wanted = {EntityKind(k) for k in kinds} if kinds else set(SYNC_ORDER)
        reports: list[SyncReport] = []
        for kind in SYNC_ORDER:
            if kind not in wanted:
                continue
            report = self.sync_entities(connection, kind, direction, dry_run)
            reports.append(report)
            if report.aborted and report.abort_reason == REVOKED_MESSAGE:
                break
        return reports

    # =========================================================================
    # Analysis
    # =========================================================================

    def analyze(
        self,
        connection: IntegrationConnection,
        kind: EntityKind,
        direction: SyncDirection,
    ) -> SyncReport:
        """Read both sides and build the per-record plan."""
        adapter = get_adapter(kind)
        report = SyncReport(kind=kind, direction=direction, started_at=self.clock())

        try:
            remotes = self._fetch_remote_all(connection, adapter)
        except TokenRevokedError:
            self._abort(report, REVOKED_MESSAGE)
            return report
        except (AccountingAPIError, AuthenticationError) as e:
            self._abort(report, f"Could not list remote {kind.value}: {e}")
            return report

        locals_ = self._fetch_local_all(adapter)
        report.stats.local_records = len(locals_)
        report.stats.remote_records = len(remotes)
        report.plan = self._plan(adapter, locals_, remotes, direction)
        report.stats.planned = Counter(item.action for item in report.plan)
        return report

    def _fetch_remote_all(
        self, connection: IntegrationConnection, adapter: EntityAdapter
    ) -> list[RemoteRecord]:
        by_id: dict[str, RemoteRecord] = {}
        page = 1
        while True:
            records, has_more = self._with_rate_limit(
                lambda p=page: self._with_fresh_token(
                    connection,
                    lambda token: adapter.fetch_remote(
                        self.api, token, connection.tenant_id, p
                    ),
                )
            )
            for record in records:
                # Keep listing order; a record seen twice keeps its latest copy
                by_id[record.external_id] = record
            if not has_more:
                break
            page += 1
        return list(by_id.values())

    def _fetch_local_all(self, adapter: EntityAdapter) -> list[LocalRecord]:
        records: list[LocalRecord] = []
        offset = 0
        while True:
            page = adapter.fetch_local(self.db, limit=self.page_size, offset=offset)
            records.extend(page)
            if len(page) < self.page_size:
                return records
            offset += self.page_size

    def _plan(
        self,
        adapter: EntityAdapter,
        locals_: list[LocalRecord],
        remotes: list[RemoteRecord],
        direction: SyncDirection,
    ) -> list[PlannedAction]:
        remote_by_id = {remote.external_id: remote for remote in remotes}
        pending = {
            row["entity_id"]
            for row in self.db.list_conflicts(ConflictStatus.PENDING.value)
            if row["entity_type"] == adapter.kind.value
        }
        claimed: set[str] = set()
        plan: list[PlannedAction] = []
        unmapped: list[LocalRecord] = []

        # Existing mappings claim their remote records first
        for local in locals_:
            if local.external_id:
                claimed.add(local.external_id)
                remote = remote_by_id.get(local.external_id)
                if local.id in pending:
                    plan.append(
                        PlannedAction(
                            SyncAction.NOOP, local, remote, reason="conflict pending"
                        )
                    )
                else:
                    plan.append(self._plan_mapped(local, remote, direction))
            else:
                unmapped.append(local)

        index: dict[tuple[str, str], list[RemoteRecord]] = {}
        for remote in remotes:
            if remote.external_id in claimed:
                continue
            for key in adapter.natural_keys(remote.fields):
                index.setdefault(key, []).append(remote)

        for local in unmapped:
            match = self._claim_natural_match(adapter, local, index, claimed)
            if match is not None:
                plan.append(
                    PlannedAction(
                        SyncAction.CREATE_MAPPING, local, match, reason="natural key match"
                    )
                )
            elif direction.allows_push:
                plan.append(
                    PlannedAction(SyncAction.CREATE_REMOTE, local, reason="local only")
                )
            else:
                plan.append(
                    PlannedAction(SyncAction.NOOP, local, reason="local only, pull pass")
                )

        for remote in remotes:
            if remote.external_id in claimed:
                continue
            if direction.allows_pull:
                plan.append(
                    PlannedAction(SyncAction.CREATE_LOCAL, remote=remote, reason="remote only")
                )
            else:
                plan.append(
                    PlannedAction(
                        SyncAction.NOOP, remote=remote, reason="remote only, push pass"
                    )
                )
        return plan

    def _plan_mapped(
        self,
        local: LocalRecord,
        remote: Optional[RemoteRecord],
        direction: SyncDirection,
    ) -> PlannedAction:
        if remote is None:
            # Mapped record absent from the listing (archived or filtered)
            if local.changed_since_sync() and direction.allows_push:
                return PlannedAction(
                    SyncAction.UPDATE_REMOTE, local, reason="local changed, remote unlisted"
                )
            return PlannedAction(SyncAction.NOOP, local, reason="remote unlisted")

        state = self.detector.classify(local, remote)
        if not state.local_changed and not state.remote_changed:
            return PlannedAction(SyncAction.NOOP, local, remote, reason="unchanged")
        if state.same_content:
            return PlannedAction(
                SyncAction.NOOP, local, remote, touch_only=True, reason="already equal"
            )
        if state.is_conflict:
            return PlannedAction(
                SyncAction.CONFLICT, local, remote, reason="both sides changed"
            )
        if state.local_changed:
            if direction.allows_push:
                return PlannedAction(
                    SyncAction.UPDATE_REMOTE, local, remote, reason="local changed"
                )
            return PlannedAction(
                SyncAction.NOOP, local, remote, reason="local changed, pull pass"
            )
        if direction.allows_pull:
            return PlannedAction(
                SyncAction.UPDATE_LOCAL, local, remote, reason="remote changed"
            )
        return PlannedAction(
            SyncAction.NOOP, local, remote, reason="remote changed, push pass"
        )

    @staticmethod
    def _claim_natural_match(
        adapter: EntityAdapter,
        local: LocalRecord,
        index: dict[tuple[str, str], list[RemoteRecord]],
        claimed: set[str],
    ) -> Optional[RemoteRecord]:
        for key in adapter.natural_keys(local.fields):
            for candidate in index.get(key, ()):
                if candidate.external_id not in claimed:
                    claimed.add(candidate.external_id)
                    return candidate
        return None

    # =========================================================================
    # Execution
    # =========================================================================

    def execute(self, connection: IntegrationConnection, report: SyncReport) -> None:
        """Apply the planned actions in the worker pool and fill in the stats."""
        adapter = get_adapter(report.kind)
        items = [item for item in report.plan if item.needs_execution]
        gate = RateLimitGate(self._monotonic, self._sleep)
        abort = threading.Event()
        deadline = self._monotonic() + self.job_timeout
        revoked: Optional[TokenRevokedError] = None

        logger.info(
            f"Executing {len(items)} {report.kind.value} actions "
            f"with {self.concurrency} workers"
        )
        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="accounting-sync"
        ) as pool:
            futures = [
                pool.submit(
                    self._run_item, connection, adapter, item, report.direction,
                    gate, abort, deadline,
                )
                for item in items
            ]
            for future in as_completed(futures):
                outcome = future.result()
                self._tally(report.stats, outcome)
                if outcome.revoked is not None and revoked is None:
                    revoked = outcome.revoked

        if revoked is not None:
            self._abort(report, REVOKED_MESSAGE)

    def _tally(self, stats: SyncStats, outcome: _ItemOutcome) -> None:
        stats.writes += outcome.writes
        if outcome.conflict_created:
            stats.conflicts_recorded += 1
        if outcome.status == ItemStatus.DONE:
            stats.succeeded += 1
        elif outcome.status == ItemStatus.FAILED:
            stats.failed += 1
        elif outcome.status == ItemStatus.SKIPPED:
            stats.skipped += 1
        elif outcome.status == ItemStatus.TIMED_OUT:
            stats.timed_out += 1

    def _run_item(
        self,
        connection: IntegrationConnection,
        adapter: EntityAdapter,
        item: PlannedAction,
        direction: SyncDirection,
        gate: RateLimitGate,
        abort: threading.Event,
        deadline: float,
    ) -> _ItemOutcome:
        if abort.is_set():
            return _ItemOutcome(ItemStatus.ABORTED)
        if self._monotonic() >= deadline:
            self._log(adapter, item, SyncStatus.SKIPPED, "Not started: sync job timed out")
            return _ItemOutcome(ItemStatus.TIMED_OUT)

        rate_limited = 0
        while True:
            gate.wait()
            if abort.is_set():
                return _ItemOutcome(ItemStatus.ABORTED)
            try:
                writes, conflict_created = self._apply(connection, adapter, item, direction)
            except RateLimitedError as e:
                rate_limited += 1
                gate.block_for(e.retry_after)
                if rate_limited > self.max_rate_limit_retries:
                    self._log(adapter, item, SyncStatus.FAILED, str(e), e)
                    return _ItemOutcome(ItemStatus.FAILED)
                logger.warning(
                    f"Rate limited; pausing all {adapter.kind.value} workers "
                    f"for {e.retry_after:.0f}s"
                )
                continue
            except TokenRevokedError as e:
                abort.set()
                return _ItemOutcome(ItemStatus.ABORTED, revoked=e)
            except (ValidationError, StaleRecordError) as e:
                self._log(adapter, item, SyncStatus.SKIPPED, str(e), e)
                return _ItemOutcome(ItemStatus.SKIPPED)
            except (AccountingAPIError, AuthenticationError, DuplicateMappingError) as e:
                self._log(adapter, item, SyncStatus.FAILED, str(e), e)
                return _ItemOutcome(ItemStatus.FAILED)
            except Exception as e:
                # One bad record must not abort the batch
                logger.exception(f"Unexpected error syncing {item.action.value}")
                self._log(adapter, item, SyncStatus.FAILED, str(e), e)
                return _ItemOutcome(ItemStatus.FAILED)

            if not item.touch_only:
                self._log(adapter, item, SyncStatus.SUCCESS)
            return _ItemOutcome(
                ItemStatus.DONE, writes=writes, conflict_created=conflict_created
            )

    def _apply(
        self,
        connection: IntegrationConnection,
        adapter: EntityAdapter,
        item: PlannedAction,
        direction: SyncDirection,
    ) -> tuple[int, bool]:
        """
        Perform one planned action.

        Returns:
            Tuple of (writes performed, conflict newly recorded)
        """
        local, remote = item.local, item.remote
        action = item.action

        if item.touch_only:
            with self.db.transaction(immediate=True) as conn:
                self._assert_unchanged(adapter, local, conn)
                adapter.map_to_external_id(
                    self.db,
                    local.id,
                    remote.external_id,
                    latest(local.updated_at, remote.updated_at),
                    conn,
                )
            return 1, False

        if action == SyncAction.CONFLICT:
            _, created = self.detector.record(local, remote)
            return (1 if created else 0), created

        if action == SyncAction.UPDATE_LOCAL:
            with self.db.transaction(immediate=True) as conn:
                self._assert_unchanged(adapter, local, conn)
                adapter.apply_remote_update(
                    self.db, remote, local.id, conn=conn, now=self.clock()
                )
            return 1, False

        if action == SyncAction.CREATE_LOCAL:
            with self.db.transaction(immediate=True) as conn:
                adapter.apply_remote_update(self.db, remote, None, conn=conn, now=self.clock())
            return 1, False

        if action in (SyncAction.UPDATE_REMOTE, SyncAction.CREATE_REMOTE):
            pushed = self._with_fresh_token(
                connection,
                lambda token: adapter.push(self.api, token, connection.tenant_id, local),
            )
            self._record_push(adapter, local, pushed)
            return 1, False

        if action == SyncAction.CREATE_MAPPING:
            return self._create_mapping(connection, adapter, local, remote, direction), False

        raise ValueError(f"Unexpected action {action}")

    def _create_mapping(
        self,
        connection: IntegrationConnection,
        adapter: EntityAdapter,
        local: LocalRecord,
        remote: RemoteRecord,
        direction: SyncDirection,
    ) -> int:
        # The mapping and the content it vouches for commit together
        if local.content_hash() == remote.content_hash():
            with self.db.transaction(immediate=True) as conn:
                self._assert_unchanged(adapter, local, conn)
                adapter.map_to_external_id(
                    self.db,
                    local.id,
                    remote.external_id,
                    latest(local.updated_at, remote.updated_at),
                    conn,
                )
            return 1

        remote_newer = remote.newer_than(local.updated_at)
        if remote_newer and direction.allows_pull:
            with self.db.transaction(immediate=True) as conn:
                self._assert_unchanged(adapter, local, conn)
                adapter.apply_remote_update(
                    self.db, remote, local.id, conn=conn, now=self.clock()
                )
            return 1

        if not remote_newer and direction.allows_push:
            pushed = self._with_fresh_token(
                connection,
                lambda token: adapter.push(
                    self.api,
                    token,
                    connection.tenant_id,
                    local,
                    external_id=remote.external_id,
                ),
            )
            self._record_push(adapter, local, pushed)
            return 1

        # The newer side may not be written in this direction: map with a
        # marker that leaves it looking changed, so a later pass carries it over
        if remote_newer:
            marker = local.updated_at
        else:
            marker = remote.updated_at or local.updated_at - timedelta(microseconds=1)
        with self.db.transaction(immediate=True) as conn:
            self._assert_unchanged(adapter, local, conn)
            adapter.map_to_external_id(self.db, local.id, remote.external_id, marker, conn)
        return 1

    def _record_push(
        self, adapter: EntityAdapter, local: LocalRecord, pushed: RemoteRecord
    ) -> None:
        with self.db.transaction(immediate=True) as conn:
            adapter.map_to_external_id(
                self.db,
                local.id,
                pushed.external_id,
                latest(local.updated_at, pushed.updated_at),
                conn,
            )

    def _assert_unchanged(self, adapter: EntityAdapter, local: LocalRecord, conn) -> None:
        row = self.db.get_entity(adapter.table, local.id, conn=conn)
        if row is None:
            raise StaleRecordError(f"{adapter.kind.value} {local.id} was deleted during sync")
        if row["updated_at"] != local.updated_at or row.get("external_id") != local.external_id:
            raise StaleRecordError(
                f"{adapter.kind.value} {local.id} changed during sync; "
                "it will be picked up by the next pass"
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _token(self, connection: IntegrationConnection) -> str:
        # One token lookup per request; never cached across requests
        return self.token_manager.get_valid_access_token(
            connection, self.token_manager.background_margin
        )

    def _with_fresh_token(
        self, connection: IntegrationConnection, func: Callable[[str], Any]
    ) -> Any:
        """
        Call func with an access token, refreshing once if the provider rejects it.

        A token can be revoked or expire early on the provider side while the
        stored expiry still looks fine. A second rejection propagates.
        """
        token = self._token(connection)
        try:
            return func(token)
        except TokenExpiredError:
            logger.warning(
                f"Provider rejected the access token for connection {connection.id}; "
                "refreshing and retrying once"
            )
            self.token_manager.refresh(connection, rejected_token=token)
            return func(self._token(connection))

    def _with_rate_limit(self, func: Callable[[], Any]) -> Any:
        gate = RateLimitGate(self._monotonic, self._sleep)
        attempts = 0
        while True:
            gate.wait()
            try:
                return func()
            except RateLimitedError as e:
                attempts += 1
                if attempts > self.max_rate_limit_retries:
                    raise
                logger.warning(f"Rate limited while listing; waiting {e.retry_after:.0f}s")
                gate.block_for(e.retry_after)

    def _log(
        self,
        adapter: EntityAdapter,
        item: PlannedAction,
        status: SyncStatus,
        message: Optional[str] = None,
        error: Optional[Exception] = None,
    ) -> None:
        fields = item.local.fields if item.local else item.remote.fields
        details: Optional[dict[str, Any]] = None
        if error is not None:
            details = {"action": item.action.value, "error_type": type(error).__name__}
            status_code = getattr(error, "status_code", None)
            if status_code is not None:
                details["status_code"] = status_code
            validation = getattr(error, "details", None)
            if validation:
                details["validation_errors"] = validation
        self.error_log.append(
            SyncAttempt(
                sync_type=adapter.kind.value,
                status=status,
                entity_id=item.entity_id,
                entity_name=adapter.display_name(fields),
                external_id=item.external_id,
                error_message=message,
                error_details=details,
            )
        )

    def _abort(self, report: SyncReport, reason: str) -> None:
        report.aborted = True
        report.abort_reason = reason
        logger.error(f"{report.kind.value} sync aborted: {reason}")
        self.error_log.append(
            SyncAttempt(
                sync_type=report.kind.value,
                status=SyncStatus.FAILED,
                entity_name=f"{report.kind.value} sync run",
                error_message=reason,
            )
        )
