"""
Backup orchestrator - drives one run over a batch of source directories.

Workflow per source:
1. Derive and sanitize the source name (before any I/O)
2. Validate source directory and destination root
3. Create archive (dry run: report what would happen and stop)
4. Verify the archive exists and is non-empty
5. Rotate: delete archives beyond the retention window

A failure in one source never aborts the others. Rotation problems are
attached to the outcome as warnings; they never turn a created backup into
a failure.
"""

import enum
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .compression import TarArchiveCreator
from .errors import (
    BackupError,
    ValidationError,
    CreationError,
    ArchiveExistsError,
    VerificationError,
    InvalidSourceName,
    BackupCancelled,
    DeletionWarning
)
from .naming import ArchiveRecord, sanitize_source_name, source_name_for
from .retention import RetentionPolicy
from .storage import ArchiveStore, StorageError

# Attempts at finding a free name when another writer publishes first
MAX_ALLOCATION_ATTEMPTS = 3


class OutcomeStatus(str, enum.Enum):
    CREATED = 'created'
    DRY_RUN_SKIPPED = 'dry_run_skipped'
    FAILED = 'failed'


class SystemClock:
    """Wall clock in UTC, truncated to whole seconds."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


@dataclass(frozen=True)
class BackupRequest:
    """One source directory to back up."""

    source_directory: Path
    dry_run: bool = False
    source_name: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'source_directory', Path(self.source_directory))


@dataclass(frozen=True)
class BackupOutcome:
    """Result of processing one BackupRequest. Never mutated."""

    request: BackupRequest
    status: OutcomeStatus
    source_name: Optional[str] = None
    record: Optional[ArchiveRecord] = None
    deleted: Tuple[ArchiveRecord, ...] = ()
    warnings: Tuple[DeletionWarning, ...] = ()
    planned_record: Optional[ArchiveRecord] = None
    planned_deletions: Tuple[ArchiveRecord, ...] = ()
    error: Optional[BackupError] = None

    @property
    def failed(self) -> bool:
        return self.status is OutcomeStatus.FAILED

    @property
    def dry_run(self) -> bool:
        return self.status is OutcomeStatus.DRY_RUN_SKIPPED

    @property
    def partial(self) -> bool:
        """Backup created, but rotation did not fully succeed."""
        return self.status is OutcomeStatus.CREATED and bool(self.warnings)

    @property
    def summary(self) -> str:
        label = self.source_name or str(self.request.source_directory)

        if self.status is OutcomeStatus.FAILED:
            return f"{label}: FAILED ({self.error.kind}) {self.error.message}"

        if self.status is OutcomeStatus.DRY_RUN_SKIPPED:
            return (
                f"[DRY RUN] {label}: would create {self.planned_record.filename}, "
                f"would delete {len(self.planned_deletions)} old archive(s); nothing was written"
            )

        size = f"{self.record.size_bytes / 1024 / 1024:.2f} MB"
        text = f"{label}: created {self.record.filename} ({size}), deleted {len(self.deleted)} old archive(s)"
        if self.warnings:
            text += f", {len(self.warnings)} deletion warning(s)"
        return text

    def to_dict(self) -> dict:
        return {
            'source_directory': str(self.request.source_directory),
            'source_name': self.source_name,
            'status': self.status.value,
            'dry_run': self.dry_run,
            'record': self.record.to_dict() if self.record else None,
            'deleted': [r.to_dict() for r in self.deleted],
            'warnings': [w.to_dict() for w in self.warnings],
            'planned_record': self.planned_record.to_dict() if self.planned_record else None,
            'planned_deletions': [r.to_dict() for r in self.planned_deletions],
            'error': self.error.to_dict() if self.error else None,
            'summary': self.summary
        }


@dataclass(frozen=True)
class BackupRunResult:
    """Outcomes of one run, in input order."""

    outcomes: Tuple[BackupOutcome, ...]

    @property
    def failed(self) -> Tuple[BackupOutcome, ...]:
        return tuple(o for o in self.outcomes if o.failed)

    @property
    def cancelled(self) -> bool:
        return any(o.error is not None and o.error.kind == BackupCancelled.kind for o in self.outcomes)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    @property
    def status(self) -> str:
        if self.cancelled:
            return 'cancelled'
        if self.failed:
            return 'failed'
        if any(o.partial for o in self.outcomes):
            return 'warning'
        return 'success'

    def describe(self) -> str:
        created = sum(1 for o in self.outcomes if o.status is OutcomeStatus.CREATED)
        skipped = sum(1 for o in self.outcomes if o.dry_run)
        return (
            f"{len(self.outcomes)} source(s): {created} created, {skipped} dry-run, "
            f"{len(self.failed)} failed"
        )


_source_locks = {}
_source_locks_guard = threading.Lock()


def _lock_for(root: Path, source_name: str) -> threading.Lock:
    """Process-wide lock for one source in one destination root."""
    key = (str(root.resolve()), source_name)
    with _source_locks_guard:
        return _source_locks.setdefault(key, threading.Lock())


class BackupOrchestrator:
    """
    Coordinates backup runs into a single destination root.

    All configuration is passed in at construction; the orchestrator reads
    no global settings.
    """

    def __init__(
        self,
        destination_root: Union[str, Path],
        policy: RetentionPolicy,
        creator=None,
        clock=None,
        logger=None,
        max_workers: int = 1,
        cancel_check: Optional[Callable[[], bool]] = None
    ):
        """
        Initialize backup orchestrator.

        Args:
            destination_root: Directory receiving all archives
            policy: Retention policy applied to every source
            creator: Archive creator (default: TarArchiveCreator)
            clock: Object with now() -> datetime (default: SystemClock)
            logger: Logger receiving structured events (default: module logger)
            max_workers: Sources processed concurrently (1 = sequential)
            cancel_check: Callable returning True once the run should stop
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")

        self.store = ArchiveStore(destination_root)
        self.policy = policy
        self.creator = creator or TarArchiveCreator(cancel_check=cancel_check)
        self.clock = clock or SystemClock()
        self.logger = logger or logging.getLogger(__name__)
        self.max_workers = max_workers
        self.cancel_check = cancel_check
        self.events = []
        self._events_lock = threading.Lock()

    @property
    def destination_root(self) -> Path:
        return self.store.root

    def run(self, requests: Iterable[BackupRequest]) -> BackupRunResult:
        """
        Process a batch of sources.

        Args:
            requests: Sources to back up

        Returns:
            BackupRunResult with one outcome per request, in input order
        """
        requests = list(requests)
        self._emit(logging.INFO, None, 'run_started', f"{len(requests)} source(s) into {self.destination_root}")

        conflicts = self._name_conflicts(requests)

        if self.max_workers == 1 or len(requests) <= 1:
            outcomes = []
            for index, request in enumerate(requests):
                if index in conflicts:
                    outcomes.append(self._fail(request, conflicts[index].source_name, conflicts[index]))
                    continue
                if self._is_cancelled():
                    outcomes.append(self._cancelled(request))
                    continue
                outcomes.append(self.process(request))
        else:
            outcomes = self._run_pool(requests, conflicts)

        result = BackupRunResult(tuple(outcomes))
        level = logging.WARNING if result.status != 'success' else logging.INFO
        self._emit(level, None, 'run_finished', f"{result.status}: {result.describe()}")
        return result

    def _name_conflicts(self, requests: List[BackupRequest]) -> Dict[int, ValidationError]:
        """
        Find requests whose source name is already taken by another directory.

        The first directory to use a name keeps it; later requests for a
        different directory under the same name would share its archives and
        its retention window, so they fail validation. Repeating the same
        directory is allowed.

        Returns:
            Dict of request index to the ValidationError for that request
        """
        owners = {}
        conflicts = {}

        for index, request in enumerate(requests):
            try:
                source_name = self._source_name(request)
            except InvalidSourceName:
                continue

            directory = os.path.abspath(request.source_directory)
            owner = owners.setdefault(source_name, directory)
            if owner != directory:
                conflicts[index] = ValidationError(
                    f"Source name '{source_name}' is already used by {owner} in this run; "
                    f"give {request.source_directory} a distinct source_name",
                    source_name
                )

        return conflicts

    def _run_pool(self, requests: List[BackupRequest], conflicts: Dict[int, ValidationError]) -> List[BackupOutcome]:
        """Bounded pool; cancellation is checked before each source is submitted."""
        outcomes = [None] * len(requests)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='rotaback') as pool:
            pending = {}

            for index, request in enumerate(requests):
                if len(pending) >= self.max_workers:
                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for future in done:
                        outcomes[pending.pop(future)] = future.result()

                if index in conflicts:
                    outcomes[index] = self._fail(request, conflicts[index].source_name, conflicts[index])
                    continue

                if self._is_cancelled():
                    outcomes[index] = self._cancelled(request)
                    continue

                pending[pool.submit(self.process, request)] = index

            for future in wait(pending).done:
                outcomes[pending[future]] = future.result()

        return outcomes

    def process(self, request: BackupRequest) -> BackupOutcome:
        """
        Run the full workflow for one source.

        Never raises: every failure is returned as a FAILED outcome.
        """
        try:
            return self._process(request)
        except Exception as e:
            self.logger.exception(f"Unexpected error backing up {request.source_directory}")
            error = BackupError(f"Unexpected error: {e}", source_name=request.source_name)
            return self._fail(request, request.source_name, error)

    @staticmethod
    def _source_name(request: BackupRequest) -> str:
        if request.source_name is not None:
            return sanitize_source_name(request.source_name)
        return source_name_for(request.source_directory)

    def _process(self, request: BackupRequest) -> BackupOutcome:
        try:
            source_name = self._source_name(request)
        except InvalidSourceName as e:
            return self._fail(request, None, e)

        try:
            self._validate(request, source_name)
        except ValidationError as e:
            return self._fail(request, source_name, e)

        with _lock_for(self.destination_root, source_name):
            if request.dry_run:
                return self._dry_run(request, source_name)

            try:
                record = self._create(request, source_name)
                record = self._verify(record)
            except BackupError as e:
                return self._fail(request, source_name, e)

            deleted, warnings = self._rotate(source_name, record)

        outcome = BackupOutcome(
            request=request,
            status=OutcomeStatus.CREATED,
            source_name=source_name,
            record=record,
            deleted=tuple(deleted),
            warnings=tuple(warnings)
        )
        level = logging.WARNING if outcome.partial else logging.INFO
        self._emit(level, source_name, 'backup_done', outcome.summary)
        return outcome

    def _validate(self, request: BackupRequest, source_name: str):
        """
        Raises:
            ValidationError: If the source or destination is unusable
        """
        self._emit(logging.DEBUG, source_name, 'validating', str(request.source_directory))
        source = request.source_directory

        if not source.exists():
            raise ValidationError(f"Source directory does not exist: {source}", source_name)
        if not source.is_dir():
            raise ValidationError(f"Source is not a directory: {source}", source_name)
        if not os.access(source, os.R_OK | os.X_OK):
            raise ValidationError(f"Source directory is not readable: {source}", source_name)

        try:
            self.store.validate_writable()
        except ValidationError as e:
            e.source_name = source_name
            raise

    def _now(self) -> datetime:
        now = self.clock.now()
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc).replace(tzinfo=None)
        return now.replace(microsecond=0)

    def _dry_run(self, request: BackupRequest, source_name: str) -> BackupOutcome:
        created_at = self._now()

        try:
            path, sequence = self.store.allocate_path(source_name, created_at)
            existing = self.store.list_archives(source_name)
        except StorageError as e:
            return self._fail(request, source_name, e)

        planned = ArchiveRecord(source_name, created_at, path, sequence=sequence)
        planned_deletions = self.policy.select_for_deletion(existing + [planned])

        self._emit(logging.INFO, source_name, 'dry_run_create', f"Would create {path.name} from {request.source_directory}")
        for record in planned_deletions:
            self._emit(logging.INFO, source_name, 'dry_run_delete', f"Would delete {record.filename}")

        return BackupOutcome(
            request=request,
            status=OutcomeStatus.DRY_RUN_SKIPPED,
            source_name=source_name,
            planned_record=planned,
            planned_deletions=tuple(planned_deletions)
        )

    def _create(self, request: BackupRequest, source_name: str) -> ArchiveRecord:
        """
        Raises:
            CreationError: If the creator fails or no free name can be found
            BackupCancelled: If the run was cancelled while archiving
            StorageError: If the destination cannot be listed
        """
        created_at = self._now()

        for attempt in range(1, MAX_ALLOCATION_ATTEMPTS + 1):
            path, sequence = self.store.allocate_path(source_name, created_at)
            if sequence:
                self._emit(logging.INFO, source_name, 'name_disambiguated', f"Same-second archive exists, using {path.name}")

            self._emit(logging.INFO, source_name, 'archive_creating', f"Creating {path.name} from {request.source_directory}")

            try:
                size = self.creator.create(request.source_directory, path)
            except ArchiveExistsError:
                self._emit(logging.WARNING, source_name, 'name_taken', f"{path.name} appeared during creation (attempt {attempt})")
                continue
            except (CreationError, BackupCancelled) as e:
                e.source_name = source_name
                self._discard(path, source_name)
                raise
            except Exception as e:
                self._discard(path, source_name)
                raise CreationError(f"Archive creator failed: {e}", source_name)

            self._emit(logging.INFO, source_name, 'archive_created', f"{path.name} ({size} bytes)")
            return ArchiveRecord(source_name, created_at, path, size_bytes=size, sequence=sequence)

        raise CreationError(
            f"No free archive name after {MAX_ALLOCATION_ATTEMPTS} attempts",
            source_name
        )

    def _verify(self, record: ArchiveRecord) -> ArchiveRecord:
        """
        Raises:
            VerificationError: If the archive is missing or empty
        """
        try:
            size = record.path.stat().st_size
        except FileNotFoundError:
            raise VerificationError(f"Archive missing after creation: {record.path}", record.source_name)

        if size == 0:
            self._discard(record.path, record.source_name)
            raise VerificationError(f"Archive is empty: {record.path}", record.source_name)

        return record.with_size(size)

    def _discard(self, path: Path, source_name: str):
        try:
            if self.store.remove_partial(path):
                self._emit(logging.INFO, source_name, 'partial_removed', path.name)
        except OSError as e:
            self._emit(logging.ERROR, source_name, 'partial_remove_failed', f"{path.name}: {e}")

    def _rotate(self, source_name: str, new_record: ArchiveRecord):
        """
        Delete archives beyond the retention window.

        Returns:
            Tuple of (deleted records, deletion warnings)
        """
        try:
            records = self.store.list_archives(source_name)
        except StorageError as e:
            warning = DeletionWarning(e.message, source_name=source_name)
            self._emit(logging.WARNING, source_name, 'rotation_skipped', warning.message)
            return [], [warning]

        if new_record.path not in {r.path for r in records}:
            records.append(new_record)

        excess = self.policy.select_for_deletion(records)
        self._emit(
            logging.DEBUG, source_name, 'rotation_planned',
            f"{len(records)} archive(s), keeping {self.policy.max_archives_per_source}, deleting {len(excess)}"
        )

        deleted = []
        warnings = []

        for record in excess:
            try:
                self.store.delete(record)
            except FileNotFoundError:
                self._emit(logging.INFO, source_name, 'archive_already_removed', record.filename)
                continue
            except StorageError as e:
                warning = DeletionWarning(e.message, record=record)
                warnings.append(warning)
                self._emit(logging.WARNING, source_name, 'delete_failed', warning.message)
                continue

            deleted.append(record)
            self._emit(logging.INFO, source_name, 'archive_deleted', record.filename)

        return deleted, warnings

    def _is_cancelled(self) -> bool:
        return bool(self.cancel_check and self.cancel_check())

    def _cancelled(self, request: BackupRequest) -> BackupOutcome:
        error = BackupCancelled("Run cancelled before this source started", request.source_name)
        return self._fail(request, request.source_name, error)

    def _fail(self, request: BackupRequest, source_name: Optional[str], error: BackupError) -> BackupOutcome:
        outcome = BackupOutcome(
            request=request,
            status=OutcomeStatus.FAILED,
            source_name=source_name,
            error=error
        )
        self._emit(logging.ERROR, source_name, error.kind, outcome.summary)
        return outcome

    def _emit(self, level: int, source_name: Optional[str], event: str, detail: str):
        """Record a structured event and pass it to the logger."""
        entry = {
            'timestamp': datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC'),
            'level': logging.getLevelName(level),
            'source_name': source_name,
            'event': event,
            'detail': detail
        }
        with self._events_lock:
            self.events.append(entry)

        self.logger.log(
            level,
            f"[{source_name or '-'}] {event}: {detail}",
            extra={'source_name': source_name, 'event': event, 'detail': detail}
        )
