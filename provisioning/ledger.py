import fcntl
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, NamedTuple, Optional

from provisioning.constants import LOCK_SUFFIX, RUN_LOCK_SUFFIX
from provisioning.units import Identity, UnitName
from provisioning.utils import _dump_json_atomically, _load_json


class LedgerError(Exception):
    """Raised when a ledger mutation would violate an entry's lifecycle."""


class AlreadyConfirmed(LedgerError):
    pass


class AlreadyPending(LedgerError):
    pass


class LedgerStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LedgerEntry(NamedTuple):
    """Represents the deployment state of a single unit."""

    name: UnitName
    status: LedgerStatus
    attempt: int = 0
    identity: Optional[Identity] = None
    reason: Optional[str] = None
    owner: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status is LedgerStatus.CONFIRMED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "attempt": self.attempt,
            "identity": self.identity,
            "reason": self.reason,
            "owner": self.owner,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, name: UnitName, data: dict) -> "LedgerEntry":
        return cls(
            name=name,
            status=LedgerStatus(data["status"]),
            attempt=int(data.get("attempt", 0)),
            identity=data.get("identity"),
            reason=data.get("reason"),
            owner=data.get("owner"),
            updated_at=data.get("updated_at"),
        )


class Ledger:
    """
    Durable record of per-unit deployment status, stored as a JSON file.

    Every mutation reloads the file under an exclusive lock, applies the change
    and atomically replaces the file, so concurrent instances never lose each
    other's updates and a crash never leaves a partially written ledger.
    """

    def __init__(self, filepath: Path, owner: Optional[str] = None):
        self.filepath = Path(filepath)
        self.owner = owner or uuid.uuid4().hex
        self._lock_filepath = self.filepath.with_name(self.filepath.name + LOCK_SUFFIX)
        self._run_lock_filepath = self.filepath.with_name(self.filepath.name + RUN_LOCK_SUFFIX)

    def _read(self) -> Dict[UnitName, LedgerEntry]:
        if not self.filepath.exists():
            return dict()
        data = _load_json(self.filepath)
        return {name: LedgerEntry.from_dict(name, values) for name, values in data.items()}

    def _write(self, entries: Dict[UnitName, LedgerEntry]) -> None:
        data = {name: entries[name].to_dict() for name in sorted(entries)}
        _dump_json_atomically(data, self.filepath)

    @contextmanager
    def _transaction(self) -> Iterator[Dict[UnitName, LedgerEntry]]:
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_filepath, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                entries = self._read()
                yield entries
                self._write(entries)
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def run_lock(self) -> Iterator[bool]:
        """
        Holds the ledger's run lock for the duration of an orchestrator run.
        Yields True when this instance is the only live runner for the ledger.
        """
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(self._run_lock_filepath, "a") as lock_file:
            acquired = True
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                acquired = False
            try:
                yield acquired
            finally:
                if acquired:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _check_not_held_elsewhere(self, entry: Optional[LedgerEntry]) -> None:
        if entry is None:
            return
        if entry.status is LedgerStatus.PENDING and entry.owner != self.owner:
            raise AlreadyPending(
                f"{entry.name} has an attempt in progress by another run ({entry.owner})."
            )

    def get(self, name: UnitName) -> Optional[LedgerEntry]:
        return self._read().get(name)

    def entries(self) -> List[LedgerEntry]:
        entries = self._read()
        return [entries[name] for name in sorted(entries)]

    def identities(self) -> Dict[UnitName, Identity]:
        """Returns the identities of all confirmed units."""
        return {entry.name: entry.identity for entry in self.entries() if entry.is_confirmed}

    def begin_attempt(self, name: UnitName) -> LedgerEntry:
        """Records a pending attempt for a unit and increments its attempt count."""
        with self._transaction() as entries:
            entry = entries.get(name)
            if entry is not None and entry.is_confirmed:
                raise AlreadyConfirmed(f"{name} is already confirmed at {entry.identity}.")
            self._check_not_held_elsewhere(entry)

            attempt = entry.attempt if entry is not None else 0
            entries[name] = LedgerEntry(
                name=name,
                status=LedgerStatus.PENDING,
                attempt=attempt + 1,
                owner=self.owner,
                updated_at=_now(),
            )
        return entries[name]

    def confirm(self, name: UnitName, identity: Identity) -> LedgerEntry:
        """Records the identity of a successfully deployed unit. Identities are write-once."""
        with self._transaction() as entries:
            entry = entries.get(name)
            if entry is not None and entry.is_confirmed:
                if entry.identity != identity:
                    raise AlreadyConfirmed(
                        f"{name} is already confirmed at {entry.identity}; "
                        f"refusing to record {identity}."
                    )
                return entry
            self._check_not_held_elsewhere(entry)

            entries[name] = LedgerEntry(
                name=name,
                status=LedgerStatus.CONFIRMED,
                attempt=entry.attempt if entry is not None else 0,
                identity=identity,
                owner=self.owner,
                updated_at=_now(),
            )
        return entries[name]

    def fail(self, name: UnitName, reason: str) -> LedgerEntry:
        """Records an unrecoverable failure for a unit, keeping its attempt count."""
        with self._transaction() as entries:
            entry = entries.get(name)
            if entry is not None and entry.is_confirmed:
                raise AlreadyConfirmed(f"{name} is already confirmed at {entry.identity}.")
            self._check_not_held_elsewhere(entry)

            entries[name] = LedgerEntry(
                name=name,
                status=LedgerStatus.FAILED,
                attempt=entry.attempt if entry is not None else 0,
                reason=reason,
                owner=self.owner,
                updated_at=_now(),
            )
        return entries[name]

    def reclaim(self, name: UnitName) -> Optional[LedgerEntry]:
        """Takes ownership of a pending entry left behind by an interrupted run."""
        with self._transaction() as entries:
            entry = entries.get(name)
            if entry is None or entry.status is not LedgerStatus.PENDING:
                return entry
            entries[name] = entry._replace(owner=self.owner, updated_at=_now())
        return entries[name]

    def reset(self, name: UnitName) -> Optional[LedgerEntry]:
        """Forgets a unit entirely so that the next run deploys it again."""
        with self._transaction() as entries:
            removed = entries.pop(name, None)
        return removed
