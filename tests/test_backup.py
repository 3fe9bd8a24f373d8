"""End-to-end backups with the real rsync binary."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Callable
from unittest.mock import patch

import pytest

import rsync_backup
from rsync_backup import VARIANTS, SourceProfile, backup, resolve_profile

pytestmark = pytest.mark.skipif(
    shutil.which("rsync") is None,
    reason="rsync is not installed",
)


def answers(*values: str) -> Callable[[str], str]:
    """Return an input function that replies with `values` in order."""
    replies = iter(values)
    return lambda _prompt: next(replies)


def snapshot(folder: Path) -> dict[str, str]:
    """Return every path below `folder` mapped to its content or link target."""
    result = {}
    for path in sorted(folder.rglob("*")):
        key = str(path.relative_to(folder))
        if path.is_symlink():
            result[key] = f"-> {os.readlink(path)}"
        elif path.is_file():
            result[key] = path.read_text()
        else:
            result[key] = "<dir>"
    return result


@pytest.fixture()
def profile(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SourceProfile:
    """A home profile with a few files and a mounted, empty backup folder."""
    monkeypatch.setattr(rsync_backup, "is_mount_point", lambda _path: True)
    home = tmp_path / "home"
    (home / "docs").mkdir(parents=True)
    (home / "a.txt").write_text("old")
    (home / "b.txt").write_text("unchanged")
    (home / "docs" / "c.txt").write_text("unchanged too")
    profile = resolve_profile(
        "home",
        home=str(home),
        mount_point=str(tmp_path / "mnt"),
    )
    Path(profile.dest_base_dir).mkdir(parents=True)
    return profile


def seed_full_backup(profile: SourceProfile, name: str) -> Path:
    """Copy the source into a full backup folder, keeping modification times."""
    full = Path(profile.dest_base_dir) / name
    shutil.copytree(profile.source, full)
    os.symlink(name, profile.latest_link)
    return full


def test_full_backup(profile: SourceProfile) -> None:
    """A full backup copies everything and becomes the latest full backup."""
    exclude_file = Path(profile.exclude_file)
    exclude_file.parent.mkdir()
    exclude_file.write_text("b.txt\nbin/\n")

    with patch("rsync_backup.now_str", return_value="2024-01-01-000000"):
        plan = backup(profile, input_fn=answers("f", ""))

    full = Path(profile.dest_base_dir) / "2024-01-01-000000_Trusty_Vaughan_Full"
    assert plan.destination == f"{full}/"
    assert snapshot(full) == {
        "a.txt": "old",
        "docs": "<dir>",
        "docs/c.txt": "unchanged too",
    }
    assert rsync_backup.resolve_symlink(profile.latest_link) == str(full.resolve())

    with patch("rsync_backup.now_str", return_value="2024-01-02-000000"):
        backup(profile, input_fn=answers("f", ""))
    newer = Path(profile.dest_base_dir) / "2024-01-02-000000_Trusty_Vaughan_Full"
    assert rsync_backup.resolve_symlink(profile.latest_link) == str(newer.resolve())


def test_rolling_differential(profile: SourceProfile, capsys: pytest.CaptureFixture) -> None:
    """Changes are merged into the full backup, overwritten files are kept aside."""
    base = Path(profile.dest_base_dir)
    seed_full_backup(profile, "2024-01-01_Trusty_Vaughan_Full")
    home = Path(profile.source)
    (home / "a.txt").write_text("new content")
    (home / "new.txt").write_text("brand new")

    with patch("rsync_backup.now_str", return_value="2024-02-02-120000"):
        backup(profile, input_fn=answers("x", "d", "5", "0", ""))
    assert "(latest)" in capsys.readouterr().out

    assert sorted(p.name for p in base.iterdir()) == [
        "2024-01-01_Trusty_Vaughan_Differential",
        "2024-02-02-120000_Trusty_Vaughan_Full",
        "latest-full-backup",
    ]
    merged = base / "2024-02-02-120000_Trusty_Vaughan_Full"
    assert snapshot(merged) == {
        "a.txt": "new content",
        "b.txt": "unchanged",
        "docs": "<dir>",
        "docs/c.txt": "unchanged too",
        "new.txt": "brand new",
    }
    assert snapshot(base / "2024-01-01_Trusty_Vaughan_Differential") == {"a.txt": "old"}
    assert rsync_backup.resolve_symlink(profile.latest_link) == str(merged.resolve())


def test_chain_differential_and_incremental(profile: SourceProfile) -> None:
    """Side-by-side backups hold only what differs from their references."""
    base = Path(profile.dest_base_dir)
    seed_full_backup(profile, "2024-01-01_Trusty_Vaughan_Full")
    home = Path(profile.source)
    (home / "a.txt").write_text("changed once")
    chain = VARIANTS["chain"]

    with patch("rsync_backup.now_str", return_value="2024-01-02-000000"):
        backup(profile, variant=chain, input_fn=answers("d", "0", ""))
    differential = base / "2024-01-02-000000_Trusty_Vaughan_Differential"
    assert snapshot(differential) == {"a.txt": "changed once"}

    (home / "docs" / "d.txt").write_text("added later")
    with patch("rsync_backup.now_str", return_value="2024-01-03-000000"):
        backup(profile, variant=chain, input_fn=answers("i", "0", ""))
    incremental = base / "2024-01-03-000000_Trusty_Vaughan_Incremental"
    assert snapshot(incremental) == {"docs": "<dir>", "docs/d.txt": "added later"}

    # The full backup and the link are left alone
    assert snapshot(base / "2024-01-01_Trusty_Vaughan_Full")["a.txt"] == "old"
    assert os.readlink(profile.latest_link) == "2024-01-01_Trusty_Vaughan_Full"


@pytest.mark.parametrize(
    ("variant", "replies"),
    [
        ("rolling", ("f", "")),
        ("rolling", ("d", "0", "")),
        ("chain", ("i", "0", "")),
    ],
)
def test_dry_run_changes_nothing(
    profile: SourceProfile,
    variant: str,
    replies: tuple[str, ...],
) -> None:
    """A dry run never creates, renames or deletes folders, nor moves the link."""
    base = Path(profile.dest_base_dir)
    seed_full_backup(profile, "2024-01-01_Trusty_Vaughan_Full")
    (Path(profile.source) / "a.txt").write_text("new content")
    before = snapshot(base)

    with patch("rsync_backup.now_str", return_value="2024-02-02-120000"):
        backup(profile, variant=VARIANTS[variant], dry_run=True, input_fn=answers(*replies))

    assert snapshot(base) == before
