"""Per-spec run lock.

Two ``parallel-full`` invocations against the same spec would push the
same branches and race on the manifest. The lock file is created with
``O_CREAT | O_EXCL`` and records the holder's pid; a lock whose holder is
no longer alive is stale and reclaimed.
"""

from __future__ import annotations

import json
import os
import sys
import time
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

from ralph.core.errors import RunLockedError
from ralph.core.logging import get_logger

logger = get_logger(__name__)

_UNWRITTEN_GRACE_SECONDS = 5.0


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if sys.platform.startswith("win"):
        # os.kill(pid, 0) terminates the process on Windows
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_lock_pid(lock_path: Path) -> int | None:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    pid = payload.get("pid") if isinstance(payload, dict) else None
    return pid if isinstance(pid, int) else None


class SpecRunLock:
    """Exclusive lock held for the duration of one scheduler run.

    Example::

        with SpecRunLock(paths.lock_path("auth"), spec_id="auth"):
            asyncio.run(scheduler.run("auth"))
    """

    def __init__(self, lock_path: Path, spec_id: str):
        self.lock_path = lock_path
        self.spec_id = spec_id
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                holder = read_lock_pid(self.lock_path)
                if holder is not None and _pid_alive(holder):
                    raise RunLockedError(self.spec_id, str(self.lock_path), holder) from None
                if holder is None and self._recently_created():
                    # payload not written yet by a concurrent acquirer
                    raise RunLockedError(self.spec_id, str(self.lock_path), None) from None
                logger.warning("lock.stale_reclaimed", path=str(self.lock_path), holder_pid=holder)
                try:
                    self.lock_path.unlink()
                except FileNotFoundError:
                    pass
                continue

            payload = {
                "pid": os.getpid(),
                "spec": self.spec_id,
                "created_epoch": time.time(),
                "created_at": datetime.now(UTC).isoformat(),
            }
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
                f.write("\n")
            self._held = True
            logger.debug("lock.acquired", path=str(self.lock_path))
            return

    def _recently_created(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age < _UNWRITTEN_GRACE_SECONDS

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        self._held = False
        logger.debug("lock.released", path=str(self.lock_path))

    def __enter__(self) -> SpecRunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
