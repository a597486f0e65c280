from __future__ import annotations

import fcntl
import logging
import os
import socket
import tempfile
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from pydantic import ValidationError

from .errors import LockExpiredError, LockHeldError
from .models import IDENTIFIER_RE, CycleReport, LockRecord, StateSnapshot, utc_now

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.  The lock file is created in the same directory as *path*
    so ``os.replace`` stays on the same filesystem.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.  A crash mid-write leaves the previous
    file untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def default_lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class LockPolicy(str, Enum):
    FAIL = "fail"
    WAIT = "wait"


# ---------------------------------------------------------------------------
# EnvironmentStateStore
# ---------------------------------------------------------------------------


class EnvironmentStateStore:
    """Filesystem state store: one snapshot and one lock record per environment.

    Snapshots are only ever replaced by an atomic rename, and only while the
    caller holds the environment lock. Each read-check-write of a lock record
    runs under an ``fcntl`` exclusive lock so runners sharing the directory
    cannot both win. A runner that dies leaves its lock to expire after
    ``stale_after_seconds``; it is then broken only by an explicit override.
    """

    def __init__(
        self,
        root: Path,
        *,
        stale_after_seconds: float = 3_600.0,
        lock_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        policy: LockPolicy = LockPolicy.FAIL,
        owner: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.root = root
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.lock_timeout_seconds = lock_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.policy = policy
        self.owner = owner or default_lock_owner()
        self._clock = clock
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def environment_dir(self, environment_id: str) -> Path:
        if not IDENTIFIER_RE.match(environment_id):
            raise ValueError(f"environment_id is not filesystem-safe: {environment_id!r}")
        return self.root / environment_id

    def snapshot_path(self, environment_id: str) -> Path:
        return self.environment_dir(environment_id) / "snapshot.json"

    def lock_path(self, environment_id: str) -> Path:
        return self.environment_dir(environment_id) / "lock.json"

    def reports_dir(self, environment_id: str) -> Path:
        return self.environment_dir(environment_id) / "reports"

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def _read_lock_unlocked(self, environment_id: str) -> LockRecord | None:
        path = self.lock_path(environment_id)
        if not path.is_file():
            return None
        text = _safe_read_json(path, "lock record")
        try:
            return LockRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"lock record at {path} failed validation: {exc}") from exc

    def read_lock(self, environment_id: str) -> LockRecord | None:
        """Return the current lock record, expired or not, or ``None``."""
        with _locked_file(self.lock_path(environment_id)):
            return self._read_lock_unlocked(environment_id)

    def _try_acquire(self, environment_id: str, *, force: bool) -> LockRecord | LockHeldError:
        path = self.lock_path(environment_id)
        with _locked_file(path):
            now = self._clock()
            current = self._read_lock_unlocked(environment_id)
            if current is not None:
                stale = current.is_expired(now)
                if not (stale and force):
                    return LockHeldError(environment_id, current, stale=stale)
                logger.warning(
                    "breaking stale lock %s on %s held by %s (expired %s)",
                    current.lock_id,
                    environment_id,
                    current.owner,
                    current.expires_at.isoformat(),
                )
            record = LockRecord(
                environment_id=environment_id,
                owner=self.owner,
                acquired_at=now,
                expires_at=now + self.stale_after,
            )
            _atomic_write_text(path, record.model_dump_json(indent=2))
            return record

    def acquire_lock(
        self,
        environment_id: str,
        *,
        policy: LockPolicy | None = None,
        force: bool = False,
    ) -> LockRecord:
        """Take the exclusive lock for *environment_id*.

        With ``LockPolicy.FAIL`` a held lock raises at once; with
        ``LockPolicy.WAIT`` the store polls until ``lock_timeout_seconds``.
        ``force`` breaks a lock only if it is already stale.

        Raises:
            LockHeldError: Another holder still owns the lock.
        """
        effective = policy or self.policy
        deadline = time.monotonic() + self.lock_timeout_seconds
        while True:
            outcome = self._try_acquire(environment_id, force=force)
            if isinstance(outcome, LockRecord):
                logger.info("acquired lock %s on %s", outcome.lock_id, environment_id)
                return outcome
            if effective == LockPolicy.FAIL or time.monotonic() >= deadline:
                raise outcome
            time.sleep(min(self.poll_interval_seconds, max(deadline - time.monotonic(), 0.0)))

    def _check_held_unlocked(self, lock: LockRecord, now: datetime) -> None:
        current = self._read_lock_unlocked(lock.environment_id)
        if current is None or current.lock_id != lock.lock_id or current.is_expired(now):
            raise LockExpiredError(lock.environment_id, lock.lock_id)

    def refresh_lock(self, lock: LockRecord) -> LockRecord:
        """Extend the expiry of a lock the caller still holds.

        Raises:
            LockExpiredError: The lock expired or was taken over.
        """
        path = self.lock_path(lock.environment_id)
        with _locked_file(path):
            now = self._clock()
            self._check_held_unlocked(lock, now)
            refreshed = lock.model_copy(update={"expires_at": now + self.stale_after})
            _atomic_write_text(path, refreshed.model_dump_json(indent=2))
            return refreshed

    def release_lock(self, lock: LockRecord) -> None:
        """Release *lock* if it is still the current record; never touches another holder."""
        path = self.lock_path(lock.environment_id)
        with _locked_file(path):
            current = self._read_lock_unlocked(lock.environment_id)
            if current is None or current.lock_id != lock.lock_id:
                logger.warning("lock %s on %s was already released or replaced", lock.lock_id, lock.environment_id)
                return
            path.unlink()
        logger.info("released lock %s on %s", lock.lock_id, lock.environment_id)

    def force_release(self, environment_id: str, *, lock_id: str | None = None) -> LockRecord | None:
        """Operator override: remove a stale lock, or a live one whose id is given.

        Returns:
            The removed record, or ``None`` if the environment was unlocked.

        Raises:
            LockHeldError: The lock is live and ``lock_id`` does not match it.
        """
        path = self.lock_path(environment_id)
        with _locked_file(path):
            current = self._read_lock_unlocked(environment_id)
            if current is None:
                return None
            stale = current.is_expired(self._clock())
            if not stale and current.lock_id != lock_id:
                raise LockHeldError(environment_id, current, stale=False)
            path.unlink()
        logger.warning("force-released lock %s on %s (owner %s)", current.lock_id, environment_id, current.owner)
        return current

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def load_snapshot(self, environment_id: str) -> StateSnapshot:
        """Return the last committed snapshot, or an empty one on first run.

        Raises:
            ValueError: If the stored file is corrupt or belongs to another environment.
        """
        path = self.snapshot_path(environment_id)
        if not path.is_file():
            return StateSnapshot.empty(environment_id)
        text = _safe_read_json(path, "state snapshot")
        try:
            snapshot = StateSnapshot.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"state snapshot at {path} failed validation: {exc}") from exc
        if snapshot.environment_id != environment_id:
            raise ValueError(
                f"state snapshot at {path} belongs to {snapshot.environment_id!r}, not {environment_id!r}"
            )
        return snapshot

    def commit_snapshot(self, environment_id: str, snapshot: StateSnapshot, lock: LockRecord) -> StateSnapshot:
        """Atomically replace the stored snapshot while *lock* is still held.

        The stored serial is bumped by one and the lineage is preserved.

        Raises:
            LockExpiredError: The caller no longer holds a valid lock; nothing is written.
        """
        if snapshot.environment_id != environment_id or lock.environment_id != environment_id:
            raise ValueError(
                f"snapshot ({snapshot.environment_id!r}) and lock ({lock.environment_id!r}) "
                f"must both belong to {environment_id!r}"
            )
        with _locked_file(self.lock_path(environment_id)):
            now = self._clock()
            self._check_held_unlocked(lock, now)
            current = self.load_snapshot(environment_id)
            committed = snapshot.model_copy(
                update={
                    "serial": current.serial + 1,
                    "lineage": current.lineage or uuid.uuid4().hex,
                    "updated_at": now,
                }
            )
            _atomic_write_text(self.snapshot_path(environment_id), committed.model_dump_json(indent=2))
        logger.info(
            "committed snapshot for %s at serial %d (%d modules)",
            environment_id,
            committed.serial,
            len(committed.modules),
        )
        return committed

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def write_report(self, report: CycleReport) -> Path:
        path = self.reports_dir(report.environment_id) / f"{report.cycle_id}.json"
        _atomic_write_text(path, report.model_dump_json(indent=2))
        return path

    def read_report(self, environment_id: str, cycle_id: str) -> CycleReport:
        path = self.reports_dir(environment_id) / f"{cycle_id}.json"
        text = _safe_read_json(path, "cycle report")
        try:
            return CycleReport.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"cycle report at {path} failed validation: {exc}") from exc

    def list_reports(self, environment_id: str) -> list[str]:
        """Return stored cycle ids, oldest first."""
        directory = self.reports_dir(environment_id)
        if not directory.is_dir():
            return []
        paths = sorted(directory.glob("*.json"), key=lambda p: (p.stat().st_mtime_ns, p.name))
        return [p.stem for p in paths]
