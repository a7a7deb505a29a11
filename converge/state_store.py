"""
StateStore - durable record of last-applied state, with locking.

The StateStore manages:
- The ObservedState snapshot (read / atomic commit)
- The LockToken (acquire / renew / release, TTL-based reclaim)
- An append-only audit log of consumed ChangeOps

Guarantees:
- At most one live LockToken at a time
- A lock whose TTL expired is reclaimable by the next caller; the new token
  records the previous owner in reclaimed_from, and that owner's apply must be
  treated as possibly partial
- commit() and renew_lock() succeed for the current token, even past its TTL
  as long as nobody reclaimed it; commit() bumps the snapshot serial

Storage backends:
- In-memory (for testing)
- File-based (local or shared filesystem)
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

from converge.errors import LockHeldError
from converge.schemas import LockToken, ObservedState
from converge.utils import generate_ulid

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = Path(".converge") / "state"

# Poll interval while blocking on a held lock
LOCK_POLL_SECONDS = 0.5


class StateStore(ABC):
    """
    Abstract base class for observed-state storage.

    Implementations provide the primitive operations (_read_lock, _write_lock,
    _read_state, _write_state, _guard); lock semantics and commit checks are
    shared here so every backend behaves the same.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self._clock = clock
        self._sleep = sleep

    # -- backend primitives -------------------------------------------------

    @abstractmethod
    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Exclusive section around lock and state read-modify-write."""
        yield

    @abstractmethod
    def _read_lock(self) -> Optional[LockToken]:
        pass

    @abstractmethod
    def _write_lock(self, token: Optional[LockToken]) -> None:
        pass

    @abstractmethod
    def _read_state(self) -> Optional[ObservedState]:
        pass

    @abstractmethod
    def _write_state(self, observed: ObservedState) -> None:
        """Persist a snapshot atomically."""
        pass

    @abstractmethod
    def append_audit(self, entry: dict[str, Any]) -> None:
        """
        Append one entry to the audit log.

        Args:
            entry: JSON-serializable record of a consumed op
        """
        pass

    @abstractmethod
    def read_audit(self) -> list[dict[str, Any]]:
        """Return all audit entries, oldest first."""
        pass

    # -- locking ------------------------------------------------------------

    def acquire_lock(self, owner: str, ttl: float, wait: float = 0.0) -> LockToken:
        """
        Acquire the state lock.

        Args:
            owner: Label of the acquiring run
            ttl: Seconds until the lock becomes reclaimable unless renewed
            wait: Seconds to block waiting for a held lock (0 = fail immediately)

        Returns:
            The new LockToken

        Raises:
            LockHeldError: If a live lock is held by someone else after waiting
        """
        deadline = self._clock() + wait
        while True:
            with self._guard():
                now = self._clock()
                current = self._read_lock()
                if current is None or current.is_expired(now):
                    token = LockToken(
                        token_id=generate_ulid(),
                        owner=owner,
                        acquired_at=now,
                        expires_at=now + ttl,
                        ttl_seconds=ttl,
                        reclaimed_from=current.owner if current is not None else None,
                    )
                    self._write_lock(token)
                    if current is not None:
                        logger.warning(
                            f"Reclaimed expired lock {current.token_id} held by {current.owner}; "
                            f"its apply may have been partial"
                        )
                    logger.debug(f"Lock {token.token_id} acquired by {owner}")
                    return token

            if self._clock() >= deadline:
                raise LockHeldError(
                    f"State is locked by {current.owner} (token {current.token_id}) "
                    f"until {time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime(current.expires_at))}Z",
                    holder=current,
                )
            self._sleep(min(LOCK_POLL_SECONDS, max(deadline - self._clock(), 0.0)))

    def renew_lock(self, token: LockToken, ttl: Optional[float] = None) -> LockToken:
        """
        Extend a held lock.

        Raises:
            LockHeldError: If token is no longer the live lock
        """
        with self._guard():
            self._check_token(token)
            renewed = token.renewed(self._clock(), ttl)
            self._write_lock(renewed)
            return renewed

    def release_lock(self, token: LockToken) -> None:
        """
        Release a held lock.

        Releasing a token that was already reclaimed by someone else is
        logged and ignored.
        """
        with self._guard():
            current = self._read_lock()
            if current is None or current.token_id != token.token_id:
                logger.warning(f"Lock {token.token_id} was not held at release time")
                return
            self._write_lock(None)
            logger.debug(f"Lock {token.token_id} released by {token.owner}")

    def current_lock(self) -> Optional[LockToken]:
        """The live lock, or None if unlocked or expired."""
        with self._guard():
            current = self._read_lock()
        if current is None or current.is_expired(self._clock()):
            return None
        return current

    def force_unlock(self, token_id: str) -> bool:
        """
        Remove a lock regardless of owner, for operator recovery.

        Args:
            token_id: Must match the current lock's id

        Returns:
            True if a lock was removed
        """
        with self._guard():
            current = self._read_lock()
            if current is None or current.token_id != token_id:
                return False
            self._write_lock(None)
        logger.warning(f"Force-unlocked {token_id} held by {current.owner}")
        return True

    def _check_token(self, token: LockToken) -> None:
        # An expired token stays valid for its holder until another caller reclaims it
        current = self._read_lock()
        if current is None or current.token_id != token.token_id:
            raise LockHeldError(
                f"Lock {token.token_id} is no longer held"
                + (f"; current holder is {current.owner}" if current else ""),
                holder=current,
            )
        if current.is_expired(self._clock()):
            logger.warning(
                f"Lock {token.token_id} expired {self._clock() - current.expires_at:.0f}s ago "
                f"but was not reclaimed; continuing"
            )

    # -- state --------------------------------------------------------------

    def read_observed(self) -> ObservedState:
        """Return the last committed snapshot (empty if none yet)."""
        with self._guard():
            observed = self._read_state()
        return observed if observed is not None else ObservedState()

    def commit(self, observed: ObservedState, token: LockToken) -> ObservedState:
        """
        Persist a new snapshot under a held lock.

        Args:
            observed: Snapshot to persist; its serial is replaced
            token: The live lock token

        Returns:
            The snapshot as persisted (serial bumped)

        Raises:
            LockHeldError: If token is not the live lock
        """
        with self._guard():
            self._check_token(token)
            previous = self._read_state()
            serial = previous.serial + 1 if previous is not None else 1
            lineage = previous.lineage if previous is not None else observed.lineage
            persisted = replace(observed, serial=serial, lineage=lineage)
            self._write_state(persisted)
        logger.debug(f"Committed observed state serial={persisted.serial}")
        return persisted


class InMemoryStateStore(StateStore):
    """
    In-memory implementation of StateStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._mutex = threading.RLock()
        self._lock: Optional[LockToken] = None
        self._state: Optional[ObservedState] = None
        self._audit: list[dict[str, Any]] = []

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._mutex:
            yield

    def _read_lock(self) -> Optional[LockToken]:
        return self._lock

    def _write_lock(self, token: Optional[LockToken]) -> None:
        self._lock = token

    def _read_state(self) -> Optional[ObservedState]:
        return self._state

    def _write_state(self, observed: ObservedState) -> None:
        self._state = observed

    def append_audit(self, entry: dict[str, Any]) -> None:
        with self._mutex:
            self._audit.append(dict(entry))

    def read_audit(self) -> list[dict[str, Any]]:
        with self._mutex:
            return [dict(e) for e in self._audit]


def _atomic_write_text(path: Path, content: str) -> None:
    """
    Write content to path atomically.

    Writes to a temporary file in the same directory, fsyncs, then renames
    into place so readers see either the old or the new file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as tmp_handle:
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


class FileStateStore(StateStore):
    """
    File-based implementation of StateStore.

    Stores artifacts in a directory:
        store_dir/
            state.json      ObservedState snapshot (atomic replace)
            lock.json       Current LockToken, absent when unlocked
            audit.jsonl     One JSON line per consumed op
            .guard          flock target serializing read-modify-write

    Safe across processes on one host and on filesystems with working
    flock semantics.
    """

    def __init__(self, store_dir: Union[Path, str], **kwargs):
        super().__init__(**kwargs)
        self._store_dir = Path(store_dir)
        self._store_dir.mkdir(parents=True, exist_ok=True)
        self._thread_mutex = threading.RLock()

    @property
    def store_dir(self) -> Path:
        return self._store_dir

    @property
    def state_path(self) -> Path:
        return self._store_dir / "state.json"

    @property
    def lock_path(self) -> Path:
        return self._store_dir / "lock.json"

    @property
    def audit_path(self) -> Path:
        return self._store_dir / "audit.jsonl"

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._thread_mutex:
            guard_path = self._store_dir / ".guard"
            with open(guard_path, "a+") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read_lock(self) -> Optional[LockToken]:
        if not self.lock_path.exists():
            return None
        with open(self.lock_path) as f:
            return LockToken.from_dict(json.load(f))

    def _write_lock(self, token: Optional[LockToken]) -> None:
        if token is None:
            if self.lock_path.exists():
                self.lock_path.unlink()
            return
        _atomic_write_text(self.lock_path, json.dumps(token.to_dict(), indent=2))

    def _read_state(self) -> Optional[ObservedState]:
        if not self.state_path.exists():
            return None
        with open(self.state_path) as f:
            return ObservedState.from_dict(json.load(f))

    def _write_state(self, observed: ObservedState) -> None:
        _atomic_write_text(self.state_path, json.dumps(observed.to_dict(), indent=2))

    def append_audit(self, entry: dict[str, Any]) -> None:
        with self._guard():
            with open(self.audit_path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")

    def read_audit(self) -> list[dict[str, Any]]:
        if not self.audit_path.exists():
            return []
        with open(self.audit_path) as f:
            return [json.loads(line) for line in f if line.strip()]
