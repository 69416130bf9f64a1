import io
import os
import tarfile

import pytest

from conftest import ticking_clock, vault_files
from fleet import backups as backups_mod
from fleet.backups import BackupManager
from fleet.errors import BackupError, RestoreError


def _tree(root):
    os.makedirs(os.path.join(root, "configs"), exist_ok=True)
    os.makedirs(os.path.join(root, "services", "coder"), exist_ok=True)
    os.makedirs(os.path.join(root, "logs"), exist_ok=True)
    with open(os.path.join(root, "configs", "router.yaml"), "w") as fh:
        fh.write("timeout: 30\n")
    with open(os.path.join(root, "services", "coder", "cache.bin"), "wb") as fh:
        fh.write(b"\x00\x01\x02")
    with open(os.path.join(root, "logs", "deploy.log"), "w") as fh:
        fh.write("started\n")


@pytest.fixture
def mgr(tmp_path):
    return BackupManager(str(tmp_path / "vault" / "backups"), keep_last=5, now=ticking_clock())


def test_create_names_and_lists_backups(tmp_path, mgr):
    vault = str(tmp_path / "vault")
    _tree(vault)

    rec = mgr.create(vault, label="pre_deployment")

    assert rec.backup_id == "pre_deployment_20261019_120000_000000"
    assert rec.label == "pre_deployment"
    assert rec.size_bytes > 0
    assert rec.created_at == "2026-10-19T12:00:00"
    assert mgr.list() == [rec]
    assert mgr.get(rec.backup_id) == rec
    with tarfile.open(rec.path) as tar:
        names = tar.getnames()
    assert "configs/router.yaml" in names
    assert not any(n.startswith(("logs", "backups")) for n in names)


def test_retention_keeps_five_most_recent(tmp_path, mgr):
    vault = str(tmp_path / "vault")
    _tree(vault)

    created = [mgr.create(vault) for _ in range(7)]

    remaining = mgr.list()
    assert len(remaining) == 5
    assert [r.backup_id for r in remaining] == [r.backup_id for r in reversed(created[2:])]
    assert not os.path.exists(created[0].path)
    assert not os.path.exists(created[1].path)


def test_latest_by_label(tmp_path, mgr):
    vault = str(tmp_path / "vault")
    _tree(vault)
    pre = mgr.create(vault, label="pre_deployment")
    manual = mgr.create(vault)

    assert mgr.latest() == manual
    assert mgr.latest("pre_deployment") == pre
    assert mgr.latest("pre_restore") is None


def test_restore_matches_archive_exactly(tmp_path, mgr):
    vault = str(tmp_path / "vault")
    _tree(vault)
    before = vault_files(vault)
    rec = mgr.create(vault)

    with open(os.path.join(vault, "configs", "router.yaml"), "w") as fh:
        fh.write("timeout: 999\n")
    os.remove(os.path.join(vault, "services", "coder", "cache.bin"))
    with open(os.path.join(vault, "configs", "new.yaml"), "w") as fh:
        fh.write("added later\n")
    with open(os.path.join(vault, "logs", "deploy.log"), "a") as fh:
        fh.write("failed\n")

    mgr.restore(rec, vault)

    assert vault_files(vault) == before
    # logs are not part of the snapshot and survive the restore
    with open(os.path.join(vault, "logs", "deploy.log")) as fh:
        assert fh.read() == "started\nfailed\n"


def test_missing_source_is_backup_error(tmp_path, mgr):
    with pytest.raises(BackupError):
        mgr.create(str(tmp_path / "nope"))


def test_insufficient_space_is_backup_error(tmp_path, mgr, monkeypatch):
    vault = str(tmp_path / "vault")
    _tree(vault)

    class _Usage:
        free = 1

    monkeypatch.setattr(backups_mod.shutil, "disk_usage", lambda path: _Usage())
    with pytest.raises(BackupError, match="Insufficient disk space"):
        mgr.create(vault)
    assert mgr.list() == []


def test_invalid_label_rejected(tmp_path, mgr):
    vault = str(tmp_path / "vault")
    _tree(vault)
    with pytest.raises(BackupError):
        mgr.create(vault, label="../escape")


def test_unknown_backup_is_restore_error(mgr):
    with pytest.raises(RestoreError):
        mgr.get("manual_20200101_000000_000000")


def test_restore_refuses_path_traversal(tmp_path, mgr):
    os.makedirs(mgr.backups_dir)
    path = os.path.join(mgr.backups_dir, "manual_20261019_120000_000000.tar.gz")
    with tarfile.open(path, "w:gz") as tar:
        data = b"owned"
        info = tarfile.TarInfo("../outside.txt")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))

    rec = mgr.get("manual_20261019_120000_000000")
    with pytest.raises(RestoreError):
        mgr.restore(rec, str(tmp_path / "vault"))
    assert not os.path.exists(tmp_path / "outside.txt")


def test_prune_never_deletes_protected(tmp_path, mgr):
    vault = str(tmp_path / "vault")
    _tree(vault)
    oldest = mgr.create(vault)
    for _ in range(4):
        mgr.create(vault)

    newest = mgr.create(vault, protect=(oldest.path,))

    ids = [r.backup_id for r in mgr.list()]
    assert oldest.backup_id in ids
    assert newest.backup_id in ids

    removed = mgr.prune(keep_last=2)
    assert len(removed) == 4
    assert [r.backup_id for r in mgr.list()] == ids[:2]


def test_unreadable_written_archive_is_backup_error(tmp_path, mgr, monkeypatch):
    vault = str(tmp_path / "vault")
    _tree(vault)
    monkeypatch.setattr(mgr, "_record_for", lambda filename: None)

    with pytest.raises(BackupError, match="cannot be read back"):
        mgr.create(vault)
