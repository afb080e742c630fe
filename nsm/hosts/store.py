"""Host roster backed by a single SQLite file.

The store owns ``hosts.db`` and a ``backups/`` directory beside it. Opening a
missing, empty or corrupt database never fails: the newest backup that opens
cleanly is restored, and if none does the roster starts empty. Logs are the
only record of what was lost.

All access goes through one reader/writer lock. Reads share it and return
fresh :class:`~nsm.hosts.models.Host` objects; writes, backups and restores
hold it exclusively until their commit (or file copy) is done.

Usage::

    store = HostStore("data/hosts.db")
    store.add(Host(ip_address="10.0.0.5", nickname="Lobby"))
    store.backup_current(max_backups=20)
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from nsm.errors import (
    BackupUnavailableError,
    HostConflictError,
    NotFoundError,
    StoreCorruptError,
    StoreIOError,
)
from nsm.hosts.changes import ChangeFeed, Subscription
from nsm.hosts.models import WIRE_FIELDS, Host, hosts_from_wire

logger = logging.getLogger(__name__)

DEFAULT_DB_FILE = "hosts.db"
LEGACY_JSON_NAME = "hosts.json"
BACKUP_DIR_NAME = "backups"
DEFAULT_MAX_BACKUPS = 20
BUSY_TIMEOUT_MS = 5000

_COLUMNS = ", ".join(WIRE_FIELDS)
_PLACEHOLDERS = ", ".join("?" for _ in WIRE_FIELDS)
_ASSIGNMENTS = ", ".join(f"{name} = ?" for name in WIRE_FIELDS)
_INTEGER_COLUMNS = {"asset_count", "asset_count_vpn"}

_SCHEMA_SQL = (
    "CREATE TABLE IF NOT EXISTS hosts (\n    "
    + ",\n    ".join(
        f"{name} INTEGER NOT NULL DEFAULT 0" if name in _INTEGER_COLUMNS else f"{name} TEXT"
        for name in WIRE_FIELDS
    )
    + "\n)"
)
_INDEX_SQL = (
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_hosts_id ON hosts(id) WHERE id <> ''",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_hosts_ip ON hosts(ip_address) WHERE ip_address <> ''",
)


@dataclass(frozen=True)
class BackupInfo:
    """A timestamped copy of the host database in the backup directory."""

    path: Path
    timestamp: int  # milliseconds since the epoch
    size: int

    @property
    def filename(self) -> str:
        return self.path.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "timestamp": datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc).isoformat(),
            "size": self.size,
        }


class _RWLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class HostStore:
    """Durable, thread-safe CRUD over the host roster."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path or DEFAULT_DB_FILE).resolve()
        self.backup_dir = self.path.parent / BACKUP_DIR_NAME
        self._prefix = self.path.stem or self.path.name
        self._ext = self.path.suffix
        self._lock = _RWLock()
        self._conn: sqlite3.Connection | None = None
        self._feed = ChangeFeed()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        self._open_or_recover()
        self._migrate_legacy_json()

    @classmethod
    def open(cls, path: str | Path | None = None) -> HostStore:
        return cls(path)

    # ── Change notifications ───────────────────────────────────────

    def updates(self) -> Subscription:
        """Subscribe to "roster changed" signals."""
        return self._feed.subscribe()

    @property
    def changes(self) -> ChangeFeed:
        return self._feed

    # ── Reads ──────────────────────────────────────────────────────

    def get_all(self) -> list[Host]:
        """All hosts in storage order."""
        with self._lock.read():
            try:
                rows = self._db.execute(
                    f"SELECT {_COLUMNS} FROM hosts ORDER BY rowid"
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreIOError(f"read hosts: {exc}") from exc
        return [_row_to_host(r) for r in rows]

    def get_by_id(self, host_id: str) -> Host:
        if not host_id:
            raise NotFoundError("host not found: empty id")
        with self._lock.read():
            row = self._fetch_one("id = ?", host_id)
        if row is None:
            raise NotFoundError(f"host not found: id {host_id}")
        return _row_to_host(row)

    def get_by_ip(self, ip: str) -> Host:
        if not ip:
            raise NotFoundError("host not found: empty ip")
        with self._lock.read():
            row = self._fetch_one("ip_address = ?", ip)
        if row is None:
            raise NotFoundError(f"host not found: {ip}")
        return _row_to_host(row)

    def __len__(self) -> int:
        with self._lock.read():
            return self._db.execute("SELECT COUNT(*) FROM hosts").fetchone()[0]

    # ── Writes ─────────────────────────────────────────────────────

    def add(self, host: Host) -> None:
        """Append a new host."""
        host.validate()
        with self._lock.write():
            with self._writing("insert host"):
                self._db.execute(
                    f"INSERT INTO hosts ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",
                    _host_to_row(host),
                )
        self._feed.publish()

    def update(self, ip: str, mutate: Callable[[Host], None]) -> Host:
        """Apply *mutate* to the host currently at *ip* and persist it.

        The callback receives a copy; whatever it leaves in the copy is
        written back, including a new ``ip_address``. Returns the stored result.
        """
        with self._lock.write():
            row = self._fetch_one("ip_address = ?", ip, with_rowid=True) if ip else None
            if row is None:
                raise NotFoundError(f"host not found: {ip}")
            rowid = row["rowid"]
            host = _row_to_host(row)
            mutate(host)
            host.validate()
            with self._writing("update host"):
                self._db.execute(
                    f"UPDATE hosts SET {_ASSIGNMENTS} WHERE rowid = ?",
                    (*_host_to_row(host), rowid),
                )
        self._feed.publish()
        return host.copy()

    def delete(self, ip: str) -> None:
        """Remove the host at *ip*."""
        if not ip:
            raise NotFoundError("host not found: empty ip")
        with self._lock.write():
            with self._writing("delete host"):
                cur = self._db.execute("DELETE FROM hosts WHERE ip_address = ?", (ip,))
            if cur.rowcount == 0:
                raise NotFoundError(f"host not found: {ip}")
        self._feed.publish()

    def delete_by_id(self, host_id: str) -> None:
        if not host_id:
            raise NotFoundError("host not found: empty id")
        with self._lock.write():
            with self._writing("delete host"):
                cur = self._db.execute("DELETE FROM hosts WHERE id = ?", (host_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"host not found: id {host_id}")
        self._feed.publish()

    def upsert(self, host: Host) -> None:
        """Insert *host*, or overwrite the record with the same id.

        Hosts without an id are matched on ``ip_address`` instead.
        """
        host.validate()
        with self._lock.write():
            row = None
            if host.id:
                row = self._fetch_one("id = ?", host.id, with_rowid=True)
            elif host.ip_address:
                row = self._fetch_one("ip_address = ?", host.ip_address, with_rowid=True)
            with self._writing("upsert host"):
                if row is None:
                    self._db.execute(
                        f"INSERT INTO hosts ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",
                        _host_to_row(host),
                    )
                else:
                    self._db.execute(
                        f"UPDATE hosts SET {_ASSIGNMENTS} WHERE rowid = ?",
                        (*_host_to_row(host), row["rowid"]),
                    )
        self._feed.publish()

    def replace_all(self, hosts: list[Host]) -> None:
        """Atomically swap the whole roster for *hosts*."""
        for host in hosts:
            host.validate()
        with self._lock.write():
            self._replace_all_locked(hosts)
        self._feed.publish()

    def rewrite(self, transform: Callable[[list[Host]], list[Host]]) -> list[Host]:
        """Replace the roster with ``transform(current roster)`` in one write.

        The roster cannot change between the read and the write.
        """
        with self._lock.write():
            try:
                rows = self._db.execute(f"SELECT {_COLUMNS} FROM hosts ORDER BY rowid").fetchall()
            except sqlite3.Error as exc:
                raise StoreIOError(f"read hosts: {exc}") from exc
            hosts = transform([_row_to_host(r) for r in rows])
            for host in hosts:
                host.validate()
            self._replace_all_locked(hosts)
        self._feed.publish()
        return [h.copy() for h in hosts]

    def _replace_all_locked(self, hosts: list[Host]) -> None:
        db = self._db
        try:
            with db:
                db.execute("DELETE FROM hosts")
                db.executemany(
                    f"INSERT INTO hosts ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",
                    [_host_to_row(h) for h in hosts],
                )
        except sqlite3.IntegrityError as exc:
            raise HostConflictError(f"replace hosts: {exc}") from exc
        except sqlite3.Error as exc:
            raise StoreIOError(f"replace hosts: {exc}") from exc

    # ── Backups ────────────────────────────────────────────────────

    def backup_current(self, max_backups: int | None = None) -> Path | None:
        """Copy the live database into the backup directory.

        Returns the new backup's path, or ``None`` if there is no live
        database file to copy. Backups beyond *max_backups* are pruned,
        oldest first.
        """
        with self._lock.write():
            return self._backup_locked(max_backups)

    def export_snapshot(self) -> bytes:
        """A consistent, self-contained copy of the database file."""
        with self._lock.write():
            if not self.path.exists():
                raise StoreIOError(f"no database file at {self.path}")
            fd, tmp_name = tempfile.mkstemp(
                prefix=f"{self._prefix}-export-", suffix=self._ext or ".db", dir=self.path.parent
            )
            os.close(fd)
            tmp = Path(tmp_name)
            try:
                self._copy_database(tmp)
                return tmp.read_bytes()
            except (OSError, sqlite3.Error) as exc:
                raise StoreIOError(f"export snapshot: {exc}") from exc
            finally:
                tmp.unlink(missing_ok=True)

    def import_snapshot(self, data: bytes, max_backups: int | None = None) -> Path | None:
        """Install a serialized database as the live store.

        The current database is backed up first; that backup's path is
        returned. Raises ``ValueError`` if *data* is not a usable database.
        """
        if not data:
            raise ValueError("snapshot data is empty")

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._prefix}-import-", suffix=self._ext or ".db", dir=self.path.parent
        )
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            _probe_file(tmp)
        except StoreCorruptError as exc:
            tmp.unlink(missing_ok=True)
            raise ValueError(f"snapshot is not a valid host database: {exc}") from exc
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StoreIOError(f"write snapshot: {exc}") from exc

        with self._lock.write():
            backup_path = self._backup_locked(max_backups)
            self._close_locked()
            self._remove_sidecars()
            try:
                os.replace(tmp, self.path)
                self._open_db(create=False)
            except (OSError, StoreCorruptError) as exc:
                tmp.unlink(missing_ok=True)
                logger.error("Snapshot import failed (%s), reverting", exc)
                self._reset_files()
                if backup_path is not None:
                    shutil.copyfile(backup_path, self.path)
                self._open_db(create=True)
                raise StoreIOError(f"activate snapshot: {exc}") from exc
        logger.info("Imported host snapshot (%d bytes), previous state at %s", len(data), backup_path)
        self._feed.publish()
        return backup_path

    def restore_from(self, backup: str | Path, max_backups: int | None = None) -> Path | None:
        """Restore a specific backup file; returns the pre-restore backup path."""
        path = Path(backup)
        if not path.is_absolute():
            path = self.backup_dir / path.name
        try:
            data = path.read_bytes()
        except FileNotFoundError as exc:
            raise BackupUnavailableError(f"backup not found: {path.name}") from exc
        except OSError as exc:
            raise BackupUnavailableError(f"backup unreadable: {path.name}: {exc}") from exc
        return self.import_snapshot(data, max_backups)

    def restore_latest(self, max_backups: int | None = None) -> BackupInfo:
        """Restore the newest backup. Raises :class:`BackupUnavailableError` if none."""
        backups = self.list_backups()
        if not backups:
            raise BackupUnavailableError("no host backups available")
        latest = backups[0]
        self.restore_from(latest.path, max_backups)
        return latest

    def list_backups(self) -> list[BackupInfo]:
        """Backups of this database, newest first."""
        with self._lock.read():
            return list(reversed(self._scan_backups()))

    # ── Lifecycle ──────────────────────────────────────────────────

    def close(self) -> None:
        with self._lock.write():
            self._close_locked()

    # ── Internal: connection ───────────────────────────────────────

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreIOError("host store is closed")
        return self._conn

    def _fetch_one(self, where: str, value: str, with_rowid: bool = False) -> sqlite3.Row | None:
        cols = f"rowid, {_COLUMNS}" if with_rowid else _COLUMNS
        try:
            return self._db.execute(
                f"SELECT {cols} FROM hosts WHERE {where} ORDER BY rowid LIMIT 1", (value,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreIOError(f"read host: {exc}") from exc

    @contextmanager
    def _writing(self, what: str) -> Iterator[None]:
        """Commit on success; map sqlite failures onto the store's errors."""
        db = self._db
        try:
            with db:
                yield
        except sqlite3.IntegrityError as exc:
            raise HostConflictError(f"{what}: {exc}") from exc
        except sqlite3.Error as exc:
            raise StoreIOError(f"{what}: {exc}") from exc

    def _open_or_recover(self) -> None:
        try:
            self._open_db(create=False)
        except StoreCorruptError as exc:
            logger.warning("Host database %s unusable (%s), attempting recovery", self.path, exc)
            self._recover()

    def _open_db(self, create: bool) -> None:
        """Connect, run the integrity probe and make sure the schema exists."""
        if not create:
            if not self.path.exists():
                raise StoreCorruptError("database file missing")
            if self.path.stat().st_size == 0:
                raise StoreCorruptError("database file empty")

        conn = sqlite3.connect(str(self.path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
            result = conn.execute("PRAGMA quick_check").fetchone()
            if result is None or result[0] != "ok":
                raise StoreCorruptError(f"integrity check failed: {result[0] if result else 'no result'}")
            conn.execute("PRAGMA journal_mode=WAL")
            _ensure_schema(conn)
        except sqlite3.DatabaseError as exc:
            conn.close()
            raise StoreCorruptError(str(exc)) from exc
        except StoreCorruptError:
            conn.close()
            raise
        self._conn = conn

    def _close_locked(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _recover(self) -> None:
        for backup in reversed(self._scan_backups()):
            self._reset_files()
            try:
                shutil.copyfile(backup.path, self.path)
                self._open_db(create=False)
            except (OSError, StoreCorruptError) as exc:
                logger.warning("Backup %s could not be restored: %s", backup.filename, exc)
                continue
            logger.warning("Recovered host database from backup %s", backup.filename)
            return

        logger.error("No usable host backups in %s; starting with an empty roster", self.backup_dir)
        self._reset_files()
        self._open_db(create=True)

    def _reset_files(self) -> None:
        self._close_locked()
        for path in (self.path, *self._sidecars()):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Could not remove %s: %s", path.name, exc)

    def _sidecars(self) -> tuple[Path, Path]:
        return (Path(f"{self.path}-wal"), Path(f"{self.path}-shm"))

    def _remove_sidecars(self) -> None:
        for path in self._sidecars():
            path.unlink(missing_ok=True)

    # ── Internal: backups ──────────────────────────────────────────

    def _backup_locked(self, max_backups: int | None) -> Path | None:
        if not self.path.exists():
            return None
        if not max_backups or max_backups <= 0:
            max_backups = DEFAULT_MAX_BACKUPS

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            target = self._unique_backup_path()
            self._copy_database(target)
        except (OSError, sqlite3.Error) as exc:
            raise StoreIOError(f"write backup: {exc}") from exc

        self._prune_backups(max_backups, keep=target)
        logger.info("Backed up host database to %s", target.name)
        return target

    def _copy_database(self, target: Path) -> None:
        """Write a consistent copy of the open database to *target*."""
        dst = sqlite3.connect(str(target))
        try:
            self._db.backup(dst)
        finally:
            dst.close()

    def _unique_backup_path(self) -> Path:
        """Next backup name; its stamp sorts after every existing backup."""
        stamp = time.time_ns() // 1_000_000
        existing = self._scan_backups()
        if existing:
            stamp = max(stamp, existing[-1].timestamp + 1)
        while True:
            candidate = self.backup_dir / f"{self._prefix}-{stamp}{self._ext}"
            if not candidate.exists():
                return candidate
            stamp += 1

    def _scan_backups(self) -> list[BackupInfo]:
        """Backups of this database, oldest first."""
        try:
            entries = list(self.backup_dir.iterdir())
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("Could not read backup directory %s: %s", self.backup_dir, exc)
            return []

        backups: list[BackupInfo] = []
        for entry in entries:
            name = entry.name
            if not name.startswith(f"{self._prefix}-"):
                continue
            if self._ext and not name.endswith(self._ext):
                continue
            try:
                stat = entry.stat()
            except OSError:
                continue
            if not entry.is_file():
                continue
            stem = name[: -len(self._ext)] if self._ext else name
            ts_part = stem[len(self._prefix) + 1 :]
            try:
                ts = int(ts_part)
            except ValueError:
                ts = int(stat.st_mtime * 1000)
            backups.append(BackupInfo(path=entry, timestamp=ts, size=stat.st_size))

        backups.sort(key=lambda b: (b.timestamp, str(b.path)))
        return backups

    def _prune_backups(self, max_backups: int, keep: Path | None = None) -> None:
        backups = [b for b in self._scan_backups() if b.path != keep]
        if keep is not None:
            max_backups -= 1
        for backup in backups[: max(0, len(backups) - max_backups)]:
            try:
                backup.path.unlink()
                logger.debug("Pruned backup %s", backup.filename)
            except OSError as exc:
                logger.warning("Could not prune backup %s: %s", backup.filename, exc)

    # ── Internal: legacy import ────────────────────────────────────

    def _migrate_legacy_json(self) -> None:
        legacy = self.path.parent / LEGACY_JSON_NAME
        if not legacy.exists():
            return
        try:
            raw = legacy.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.warning("Could not read legacy %s: %s", legacy.name, exc)
            return

        if raw in ("", "[]", "{}"):
            legacy.unlink(missing_ok=True)
            return

        try:
            hosts = hosts_from_wire(json.loads(raw))
            with self._lock.write():
                self._replace_all_locked(hosts)
        except (ValueError, HostConflictError, StoreIOError) as exc:
            logger.warning("Legacy %s not migrated: %s", legacy.name, exc)
            return

        legacy.rename(legacy.with_name(legacy.name + ".migrated"))
        logger.info("Migrated %d hosts from legacy %s", len(hosts), legacy.name)
        self._feed.publish()


# ── Row mapping ────────────────────────────────────────────────────


def _host_to_row(host: Host) -> tuple[Any, ...]:
    wire = host.to_dict()
    return tuple(wire[name] for name in WIRE_FIELDS)


def _row_to_host(row: sqlite3.Row) -> Host:
    return Host.from_dict({name: row[name] for name in WIRE_FIELDS})


def _ensure_schema(conn: sqlite3.Connection) -> None:
    """Create the hosts table, adding columns missing from older databases."""
    conn.execute(_SCHEMA_SQL)
    existing = {r[1] for r in conn.execute("PRAGMA table_info(hosts)").fetchall()}
    for name in WIRE_FIELDS:
        if name in existing:
            continue
        if name in _INTEGER_COLUMNS:
            conn.execute(f"ALTER TABLE hosts ADD COLUMN {name} INTEGER NOT NULL DEFAULT 0")
        else:
            conn.execute(f"ALTER TABLE hosts ADD COLUMN {name} TEXT")
    for stmt in _INDEX_SQL:
        conn.execute(stmt)
    conn.commit()


def _probe_file(path: Path) -> None:
    """Raise :class:`StoreCorruptError` unless *path* is a readable SQLite database."""
    if not path.exists() or path.stat().st_size == 0:
        raise StoreCorruptError("file missing or empty")
    conn = sqlite3.connect(str(path))
    try:
        result = conn.execute("PRAGMA quick_check").fetchone()
        if result is None or result[0] != "ok":
            raise StoreCorruptError("integrity check failed")
        conn.execute("SELECT name FROM sqlite_master").fetchall()
    except sqlite3.DatabaseError as exc:
        raise StoreCorruptError(str(exc)) from exc
    finally:
        conn.close()
