"""Local JSON state store with an exclusive lock file.

Writes are atomic (temp file + os.replace) and the previous snapshot is
kept as ``<state>.backup``. The lock file holds the id of the run that
owns it, so a stale lock can be inspected before ``force_unlock``.
"""

import asyncio
import json
import os
import shutil
import socket
import tempfile
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import structlog
from pydantic import ValidationError

from sitestack.core.exceptions import StateCorruptedError, StateLockedError
from sitestack.models.schemas import STATE_FORMAT_VERSION, StateSnapshot

logger = structlog.get_logger(__name__)

LOCK_POLL_INTERVAL = 0.5


class StateStore:
    """
    Persists StateSnapshot objects to a JSON file.

    Example:
        store = StateStore(Path("sitestack.state.json"), lock_timeout=30)
        async with store.lock(run_id):
            snapshot = store.load()
            ...
            store.save(snapshot)
    """

    def __init__(self, path: Path, lock_timeout: float = 0.0):
        self.path = Path(path)
        self.lock_timeout = lock_timeout

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".backup")

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> StateSnapshot:
        """
        Load the snapshot, or an empty one if no state file exists yet.

        Raises:
            StateCorruptedError: If the file is not a valid snapshot.
        """
        if not self.path.exists():
            return StateSnapshot()

        try:
            raw = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise StateCorruptedError(
                f"State file {self.path} is not valid UTF-8",
                {"position": e.start},
            ) from e

        try:
            snapshot = StateSnapshot.model_validate_json(raw)
        except ValidationError as e:
            raise StateCorruptedError(
                f"State file {self.path} is not a valid snapshot",
                {"errors": e.error_count()},
            ) from e

        if snapshot.version > STATE_FORMAT_VERSION:
            raise StateCorruptedError(
                f"State file {self.path} uses format {snapshot.version}, "
                f"this version understands {STATE_FORMAT_VERSION}"
            )
        return snapshot

    def save(self, snapshot: StateSnapshot) -> StateSnapshot:
        """Bump the serial and write the snapshot atomically."""
        snapshot.serial += 1
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            shutil.copyfile(self.path, self.backup_path)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(snapshot.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug(
            "state_saved",
            path=str(self.path),
            serial=snapshot.serial,
            resources=len(snapshot.resources),
        )
        return snapshot

    def lock_holder(self) -> dict[str, Any]:
        """Contents of the lock file, or {} if unlocked or unreadable."""
        try:
            return json.loads(self.lock_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    @asynccontextmanager
    async def lock(self, run_id: str) -> AsyncIterator[None]:
        """
        Hold the state lock for the duration of the block.

        Polls until ``lock_timeout`` seconds have passed.

        Raises:
            StateLockedError: If another run keeps the lock.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
                break
            except FileExistsError:
                if time.monotonic() >= deadline:
                    holder = self.lock_holder()
                    logger.warning("state_lock_busy", path=str(self.lock_path), holder=holder)
                    raise StateLockedError(str(self.lock_path), holder)
                await asyncio.sleep(LOCK_POLL_INTERVAL)

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "run_id": run_id,
                    "pid": os.getpid(),
                    "host": socket.gethostname(),
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
                f,
            )
        logger.debug("state_lock_acquired", path=str(self.lock_path), run_id=run_id)

        try:
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)
            logger.debug("state_lock_released", path=str(self.lock_path), run_id=run_id)

    def force_unlock(self) -> bool:
        """Remove a stale lock. Returns True if a lock was removed."""
        if not self.lock_path.exists():
            return False
        holder = self.lock_holder()
        self.lock_path.unlink(missing_ok=True)
        logger.warning("state_lock_forced", path=str(self.lock_path), holder=holder)
        return True
