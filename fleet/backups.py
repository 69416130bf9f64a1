from __future__ import annotations

import os
import re
import shutil
import tarfile
from datetime import datetime
from typing import Callable, Iterable

from .errors import BackupError, RestoreError
from .state import BackupRecord

TS_FORMAT = "%Y%m%d_%H%M%S_%f"
BACKUP_RE = re.compile(r"^(?P<label>[a-z][a-z0-9_]*?)_(?P<ts>\d{8}_\d{6}_\d{6})\.tar\.gz$")
LABEL_RE = re.compile(r"^[a-z][a-z0-9_]{0,31}$")


def _tree_size(root: str, exclude: tuple[str, ...]) -> int:
    total = 0
    for entry in os.listdir(root):
        if entry in exclude:
            continue
        path = os.path.join(root, entry)
        if os.path.isdir(path) and not os.path.islink(path):
            for dirpath, _dirs, files in os.walk(path):
                for f in files:
                    fp = os.path.join(dirpath, f)
                    if not os.path.islink(fp):
                        total += os.path.getsize(fp)
        elif not os.path.islink(path):
            total += os.path.getsize(path)
    return total


def _safe_members(tar: tarfile.TarFile) -> list[tarfile.TarInfo]:
    members = tar.getmembers()
    for m in members:
        parts = m.name.replace("\\", "/").split("/")
        if m.name.startswith("/") or ".." in parts:
            raise RestoreError(f"Refusing to extract unsafe path {m.name!r}")
        if m.issym() or m.islnk():
            if os.path.isabs(m.linkname) or ".." in m.linkname.split("/"):
                raise RestoreError(f"Refusing to extract unsafe link {m.name!r} -> {m.linkname!r}")
        if not (m.isfile() or m.isdir() or m.issym() or m.islnk()):
            raise RestoreError(f"Refusing to extract special file {m.name!r}")
    return members


class BackupManager:
    """Timestamped, compressed snapshots of the vault tree.

    Archives are named <label>_<YYYYmmdd_HHMMSS_ffffff>.tar.gz; ordering and
    retention use the timestamp in the name. Top-level entries listed in
    `exclude` are neither archived nor touched by a restore.
    """

    def __init__(
        self,
        backups_dir: str,
        keep_last: int = 5,
        exclude: Iterable[str] = ("backups", "logs"),
        now: Callable[[], datetime] = datetime.now,
    ):
        self.backups_dir = backups_dir
        self.keep_last = max(1, int(keep_last))
        self.exclude = tuple(exclude)
        self._now = now

    def _record_for(self, filename: str) -> BackupRecord | None:
        m = BACKUP_RE.match(filename)
        if not m:
            return None
        path = os.path.join(self.backups_dir, filename)
        created = datetime.strptime(m.group("ts"), TS_FORMAT)
        return BackupRecord(
            backup_id=filename[: -len(".tar.gz")],
            path=path,
            created_at=created.isoformat(timespec="seconds"),
            size_bytes=os.path.getsize(path),
            label=m.group("label"),
        )

    def list(self) -> list[BackupRecord]:
        """All archives, newest first."""
        if not os.path.isdir(self.backups_dir):
            return []
        keyed: list[tuple[str, BackupRecord]] = []
        for filename in os.listdir(self.backups_dir):
            rec = self._record_for(filename)
            if rec is not None:
                ts = BACKUP_RE.match(filename).group("ts")  # type: ignore[union-attr]
                keyed.append((ts, rec))
        keyed.sort(key=lambda x: (x[0], x[1].backup_id), reverse=True)
        return [rec for _, rec in keyed]

    def get(self, backup_id: str) -> BackupRecord:
        for rec in self.list():
            if rec.backup_id == backup_id:
                return rec
        raise RestoreError(f"Unknown backup '{backup_id}'")

    def latest(self, label: str | None = None) -> BackupRecord | None:
        for rec in self.list():
            if label is None or rec.label == label:
                return rec
        return None

    def create(self, source_dir: str, label: str = "manual", protect: Iterable[str] = ()) -> BackupRecord:
        """Archive source_dir, then prune. Paths in `protect` survive the prune."""
        if not LABEL_RE.match(label):
            raise BackupError(f"Invalid backup label {label!r}")
        if not os.path.isdir(source_dir) or not os.access(source_dir, os.R_OK | os.X_OK):
            raise BackupError(f"Backup source {source_dir} is missing or unreadable")

        os.makedirs(self.backups_dir, exist_ok=True)
        try:
            needed = _tree_size(source_dir, self.exclude)
        except OSError as e:
            raise BackupError(f"Backup source {source_dir} is unreadable: {e}") from e
        free = shutil.disk_usage(self.backups_dir).free
        if free < needed:
            raise BackupError(f"Insufficient disk space for backup: need {needed} bytes, {free} free")

        stamp = self._now().strftime(TS_FORMAT)
        filename = f"{label}_{stamp}.tar.gz"
        path = os.path.join(self.backups_dir, filename)
        if os.path.exists(path):
            raise BackupError(f"Backup {filename} already exists")

        tmp = path + ".part"
        try:
            with tarfile.open(tmp, "w:gz") as tar:
                for entry in sorted(os.listdir(source_dir)):
                    if entry in self.exclude:
                        continue
                    tar.add(os.path.join(source_dir, entry), arcname=entry)
            os.replace(tmp, path)
        except (OSError, tarfile.TarError) as e:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise BackupError(f"Could not write backup {filename}: {e}") from e

        rec = self._record_for(filename)
        if rec is None:
            raise BackupError(f"Backup {filename} was written but cannot be read back")
        self.prune(protect=(rec.path, *protect))
        return rec

    def prune(self, keep_last: int | None = None, protect: Iterable[str] = ()) -> list[BackupRecord]:
        """Delete archives beyond the retention window, oldest first."""
        keep = self.keep_last if keep_last is None else max(1, int(keep_last))
        protected = {os.path.abspath(p) for p in protect}
        removed: list[BackupRecord] = []
        for rec in self.list()[keep:]:
            if os.path.abspath(rec.path) in protected:
                continue
            os.remove(rec.path)
            removed.append(rec)
        return removed

    def restore(self, record: BackupRecord, target_dir: str) -> None:
        """Replace the non-excluded contents of target_dir with the archive."""
        if not os.path.isfile(record.path):
            raise RestoreError(f"Backup archive {record.path} does not exist")
        try:
            with tarfile.open(record.path, "r:gz") as tar:
                members = _safe_members(tar)
                os.makedirs(target_dir, exist_ok=True)
                for entry in os.listdir(target_dir):
                    if entry in self.exclude:
                        continue
                    path = os.path.join(target_dir, entry)
                    if os.path.isdir(path) and not os.path.islink(path):
                        shutil.rmtree(path)
                    else:
                        os.remove(path)
                tar.extractall(target_dir, members=members)
        except (OSError, tarfile.TarError) as e:
            raise RestoreError(f"Restore of {record.backup_id} failed: {e}") from e
