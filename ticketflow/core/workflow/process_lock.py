"""
Advisory process lock.

Guards against two host processes running against the same record store.
The lock is a JSON file holding the owner's pid, start time and kind. A
lock whose pid is gone is stale and reclaimed; a live foreign lock only
produces a warning, the store tolerates concurrent readers.
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

import structlog
from pydantic import BaseModel, ValidationError

from ticketflow.core.config import settings

logger = structlog.get_logger()

ProcessKind = Literal["api", "cli", "worker"]


class LockInfo(BaseModel):
    pid: int
    started_at: datetime
    kind: ProcessKind


@dataclass
class LockCheck:
    is_locked: bool
    is_stale: bool
    info: Optional[LockInfo]
    message: str


@dataclass
class LockResult:
    acquired: bool
    message: str
    info: Optional[LockInfo] = None
    warning: Optional[str] = None


def is_process_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


class ProcessLock:
    """Lock file at ``path`` (default LOCK_FILE_PATH)."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or settings.LOCK_FILE_PATH)

    def read(self) -> Optional[LockInfo]:
        """Current lock contents; unreadable or malformed files count as no lock."""
        if not self.path.exists():
            return None
        try:
            return LockInfo.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("Unreadable lock file, treating as unlocked", path=str(self.path), error=str(e))
            return None

    def check(self) -> LockCheck:
        info = self.read()
        if info is None:
            return LockCheck(False, False, None, "No lock file found")
        if not is_process_running(info.pid):
            return LockCheck(False, True, info, f"Stale lock from {info.kind} (PID {info.pid})")
        return LockCheck(True, False, info, f"Record store locked by {info.kind} (PID {info.pid})")

    def acquire(self, kind: ProcessKind = "api") -> LockResult:
        check = self.check()
        warning = None

        if check.is_stale:
            try:
                self.path.unlink()
                logger.info("Removed stale lock file", path=str(self.path), pid=check.info.pid)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not remove stale lock file", path=str(self.path), error=str(e))

        if check.is_locked and check.info.pid != os.getpid():
            warning = f"{check.message}. Concurrent access may cause issues."
            logger.warning("Process lock held by another process", pid=check.info.pid, kind=check.info.kind)

        info = LockInfo(pid=os.getpid(), started_at=datetime.now(timezone.utc), kind=kind)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(info.model_dump_json(), encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write lock file", path=str(self.path), error=str(e))
            return LockResult(False, f"Could not write lock file: {e}", None, warning)

        logger.info("Process lock acquired", path=str(self.path), pid=info.pid, kind=kind)
        return LockResult(True, f"Lock acquired by {kind} (PID {info.pid})", info, warning)

    def release(self) -> bool:
        """Remove the lock file if this process owns it."""
        info = self.read()
        if info is None:
            return False
        if info.pid != os.getpid():
            logger.info("Lock owned by another process, leaving it", pid=info.pid)
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Could not remove lock file", path=str(self.path), error=str(e))
            return False
        logger.info("Process lock released", path=str(self.path))
        return True
