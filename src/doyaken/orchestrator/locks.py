"""Exclusive per-task lock files."""

from __future__ import annotations

import json
import logging
import os
import socket
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from doyaken.orchestrator.errors import LockHeld, StorageIOError
from doyaken.orchestrator.models import LockRecord
from doyaken.orchestrator.storage import from_iso, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
_UNREADABLE_GRACE_SECONDS = 30


class LockManager:
    """Create, refresh and reclaim ``<task-id>.lock`` files.

    Exclusivity comes from ``O_CREAT | O_EXCL``: of several processes racing
    for the same task exactly one creates the file.  Stale locks are moved to
    a uniquely named tombstone before the create is retried, so only one
    reclaimer can win.
    """

    def __init__(
        self,
        locks_dir: Path,
        *,
        lock_timeout_seconds: int = 10_800,
        hostname: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.locks_dir = locks_dir
        self.lock_timeout_seconds = lock_timeout_seconds
        self.hostname = hostname or socket.gethostname()
        self._clock = clock

    def path_for(self, task_id: str) -> Path:
        return self.locks_dir / f"{task_id}{LOCK_SUFFIX}"

    def acquire(self, task_id: str, agent_id: str) -> LockRecord:
        """Take the lock for ``task_id`` or raise LockHeld."""

        path = self.path_for(task_id)
        try:
            self.locks_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StorageIOError(f"Cannot create lock dir {self.locks_dir}: {error}") from error

        owner: str | None = None
        for _ in range(2):
            now = self._clock()
            record = LockRecord(
                task_id=task_id,
                agent_id=agent_id,
                pid=os.getpid(),
                hostname=self.hostname,
                locked_at=now,
                heartbeat_at=now,
            )
            if self._create_exclusive(path, record):
                logger.debug("Lock acquired task=%s agent=%s", task_id, agent_id)
                return record

            existing = self.read(task_id)
            if existing is None:
                if path.exists() and not self._unreadable_is_stale(path):
                    raise LockHeld(task_id)
                self._reclaim(path, expected=None)
                continue
            owner = existing.agent_id
            if existing.agent_id == agent_id:
                return self.refresh(task_id, agent_id)
            if not self.is_stale(existing):
                raise LockHeld(task_id, existing.agent_id)
            logger.info(
                "Reclaiming stale lock task=%s owner=%s pid=%s",
                task_id,
                existing.agent_id,
                existing.pid,
            )
            self._reclaim(path, expected=existing)
        raise LockHeld(task_id, owner)

    def refresh(self, task_id: str, agent_id: str) -> LockRecord:
        """Heartbeat: bump ``heartbeat_at`` of a lock owned by ``agent_id``."""

        existing = self.read(task_id)
        if existing is None or existing.agent_id != agent_id:
            raise LockHeld(task_id, existing.agent_id if existing else None)
        existing.heartbeat_at = self._clock()
        existing.pid = os.getpid()
        write_json_atomic(self.path_for(task_id), _record_to_payload(existing))
        return existing

    def release(self, task_id: str, agent_id: str | None = None) -> bool:
        """Delete the lock.  Missing locks and foreign owners are no-ops."""

        path = self.path_for(task_id)
        if agent_id is not None:
            existing = self.read(task_id)
            if existing is None:
                if path.exists():
                    logger.warning("Leaving unreadable lock for task %s in place", task_id)
                return False
            if existing.agent_id != agent_id:
                logger.warning(
                    "Not releasing lock for task %s owned by %s (requested by %s)",
                    task_id,
                    existing.agent_id,
                    agent_id,
                )
                return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            raise StorageIOError(f"Cannot delete lock {path}: {error}") from error
        logger.debug("Lock released task=%s", task_id)
        return True

    def read(self, task_id: str) -> LockRecord | None:
        return self._read_path(self.path_for(task_id))

    def is_stale(self, record: LockRecord, now: datetime | None = None) -> bool:
        """True when the heartbeat expired or the owner process is gone."""

        current = now or self._clock()
        if record.age_seconds(current) > self.lock_timeout_seconds:
            return True
        return record.hostname == self.hostname and not _pid_alive(record.pid)

    def is_locked(self, task_id: str) -> bool:
        """True when a live (non-stale) lock exists for ``task_id``."""

        record = self.read(task_id)
        if record is None:
            path = self.path_for(task_id)
            return path.exists() and not self._unreadable_is_stale(path)
        return not self.is_stale(record)

    def list_locks(self) -> list[LockRecord]:
        if not self.locks_dir.is_dir():
            return []
        records: list[LockRecord] = []
        for path in sorted(self.locks_dir.glob(f"*{LOCK_SUFFIX}")):
            record = self._read_path(path)
            if record is not None:
                records.append(record)
        return records

    def _create_exclusive(self, path: Path, record: LockRecord) -> bool:
        payload = json.dumps(_record_to_payload(record), indent=2, sort_keys=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as error:
            raise StorageIOError(f"Cannot create lock {path}: {error}") from error
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as error:
            path.unlink(missing_ok=True)
            raise StorageIOError(f"Cannot write lock {path}: {error}") from error
        return True

    def _reclaim(self, path: Path, *, expected: LockRecord | None) -> None:
        tombstone = path.with_name(f"{path.name}.stale-{uuid.uuid4().hex}")
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return
        except OSError as error:
            raise StorageIOError(f"Cannot reclaim lock {path}: {error}") from error

        moved = self._read_path(tombstone)
        if expected is not None and (
            moved is None
            or moved.agent_id != expected.agent_id
            or moved.locked_at != expected.locked_at
        ):
            # Another reclaimer already replaced the stale lock; put theirs back.
            try:
                os.link(tombstone, path)
            except FileExistsError:
                pass
            except OSError as error:
                raise StorageIOError(f"Cannot restore lock {path}: {error}") from error
            tombstone.unlink(missing_ok=True)
            raise LockHeld(expected.task_id, moved.agent_id if moved else None)
        tombstone.unlink(missing_ok=True)

    def _read_path(self, path: Path) -> LockRecord | None:
        try:
            payload = json.loads(path.read_text("utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(payload, dict):
            return None
        try:
            return _record_from_payload(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed lock file %s", path)
            return None

    def _unreadable_is_stale(self, path: Path) -> bool:
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return True
        except OSError as error:
            raise StorageIOError(f"Cannot stat lock {path}: {error}") from error
        return self._clock().timestamp() - mtime > _UNREADABLE_GRACE_SECONDS


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _record_to_payload(record: LockRecord) -> dict[str, Any]:
    return {
        "task_id": record.task_id,
        "agent_id": record.agent_id,
        "pid": record.pid,
        "hostname": record.hostname,
        "locked_at": record.locked_at.isoformat(),
        "heartbeat_at": record.heartbeat_at.isoformat(),
    }


def _record_from_payload(payload: dict[str, Any]) -> LockRecord:
    locked_at = from_iso(str(payload["locked_at"]))
    heartbeat = payload.get("heartbeat_at")
    return LockRecord(
        task_id=str(payload["task_id"]),
        agent_id=str(payload["agent_id"]),
        pid=int(payload["pid"]),
        hostname=str(payload.get("hostname", "")),
        locked_at=locked_at,
        heartbeat_at=from_iso(str(heartbeat)) if heartbeat else locked_at,
    )
