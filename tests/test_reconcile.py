from __future__ import annotations

import json
from pathlib import Path

import pytest

from panel.journal import ProvisioningJournal
from panel.reconcile import FileSpec, Reconciler


@pytest.fixture()
def journal(tmp_path: Path) -> ProvisioningJournal:
    return ProvisioningJournal(directory=tmp_path / "journal")


def test_ensure_file_writes_only_on_difference(tmp_path: Path, journal: ProvisioningJournal) -> None:
    files = Reconciler(journal)
    target = tmp_path / "etc" / "site.conf"

    assert files.ensure_file(target, "server {}\n", mode=0o640) is True
    assert files.ensure_file(target, "server {}\n", mode=0o640) is False
    assert target.read_text(encoding="utf-8") == "server {}\n"
    assert target.stat().st_mode & 0o777 == 0o640
    assert [entry.description for entry in journal.entries] == [f"Created {target}"]


def test_diff_reports_content_and_mode_changes(tmp_path: Path) -> None:
    target = tmp_path / "unit.service"
    target.write_text("old\n", encoding="utf-8")
    target.chmod(0o600)
    files = Reconciler()

    pending = files.diff([FileSpec(target, "old\n", mode=0o644), FileSpec(tmp_path / "new", "x")])

    assert [spec.path for spec in pending] == [target, tmp_path / "new"]


def test_rollback_restores_updated_and_removes_created_files(tmp_path: Path, journal: ProvisioningJournal) -> None:
    existing = tmp_path / "daemon.json"
    existing.write_text('{"debug": false}\n', encoding="utf-8")
    created = tmp_path / "cron" / "server-panel-backup"
    link = tmp_path / "enabled" / "site.conf"

    journal.begin_step("docker")
    files = Reconciler(journal)
    files.ensure_file(existing, '{"debug": true}\n')
    files.ensure_file(created, "0 2 * * * root true\n")
    files.ensure_symlink(link, existing)
    journal.finish_step("docker", "succeeded")

    undone = journal.rollback(runner=None)

    assert len(undone) == 3
    assert existing.read_text(encoding="utf-8") == '{"debug": false}\n'
    assert not created.exists()
    assert not link.is_symlink()
    assert journal.steps["docker"] == "rolled_back"
    assert journal.rollback(runner=None) == []


def test_ensure_directory_removes_the_topmost_created_parent(tmp_path: Path, journal: ProvisioningJournal) -> None:
    files = Reconciler(journal)
    target = tmp_path / "a" / "b" / "c"

    assert files.ensure_directory(target, mode=0o700) is True
    assert files.ensure_directory(target, mode=0o700) is False

    journal.rollback(runner=None)
    assert not (tmp_path / "a").exists()


def test_command_undo_runs_through_the_runner(runner, journal: ProvisioningJournal) -> None:
    journal.record("Opened 80/tcp", undo={"kind": "command", "args": ["ufw", "delete", "allow", "80/tcp"]})
    journal.record("Installed packages: nginx")

    assert journal.rollback(runner) == ["Opened 80/tcp"]
    assert runner.matching("ufw", "delete") == [["ufw", "delete", "allow", "80/tcp"]]


def test_journal_is_persisted_and_loads_the_latest_run(tmp_path: Path) -> None:
    directory = tmp_path / "journal"
    first = ProvisioningJournal(directory=directory, run_id="20240101000000-aaaaaa")
    first.record("first run")
    second = ProvisioningJournal(directory=directory, run_id="20240102000000-bbbbbb")
    second.begin_step("nginx")
    second.record("Created /etc/nginx/sites-available/x.conf", undo={"kind": "remove_path", "path": "/nonexistent"})

    payload = json.loads((directory / "20240102000000-bbbbbb.json").read_text(encoding="utf-8"))
    assert payload["steps"] == {"nginx": "running"}

    loaded = ProvisioningJournal.load(directory)
    assert loaded.run_id == "20240102000000-bbbbbb"
    assert loaded.entries[0].step == "nginx"
    assert ProvisioningJournal.load(directory, "20240101000000-aaaaaa").entries[0].description == "first run"

    with pytest.raises(ValueError):
        ProvisioningJournal.load(directory, "missing")


def test_dry_run_touches_nothing(tmp_path: Path, journal: ProvisioningJournal) -> None:
    files = Reconciler(journal, dry_run=True)
    target = tmp_path / "dry" / "file.txt"

    assert files.ensure_file(target, "content") is True
    assert files.ensure_directory(tmp_path / "dry-dir") is True
    assert not target.exists()
    assert not (tmp_path / "dry-dir").exists()
    assert journal.entries == []
