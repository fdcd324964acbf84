"""File manager, monitoring, backups and the panel's own containers."""

from __future__ import annotations

import os
import tarfile
import time

import httpx
import pytest
import yaml

from panel.components.backup import BackupManager, prune_backups
from panel.components.filemanager import ADD_USER_SCRIPT, CONTAINER, FileManager
from panel.components.monitoring import GRAFANA_PORT, MonitoringStack, alertmanager_config
from panel.components.panel_services import BACKEND, FRONTEND, IMAGE, PanelServices, probe_health


def test_filemanager_creates_the_admin_user_once(make_context, runner, settings) -> None:
    ctx = make_context(["nginx", "filemanager"])
    manager = FileManager()

    first = manager.install(ctx)
    second = manager.install(ctx)

    assert first.changed is True
    assert second.changed is False
    assert runner.filebrowser_users == ["admin"]
    assert runner.containers[CONTAINER]["state"] == "running"
    assert (settings.data_root / "filemanager" / "settings.json").exists()
    add = [call for call in runner.matching("docker", "exec") if ADD_USER_SCRIPT in call]
    assert "--perm.admin" in add[0]
    assert "FILEBROWSER_PASSWORD=filemanager-password-value" in add[0]
    assert not any("filemanager-password-value" == part for part in add[0])


def test_filemanager_users_are_scoped_to_their_directory(make_context, runner, settings) -> None:
    ctx = make_context(["nginx", "filemanager"])
    manager = FileManager()

    created = manager.run_action(ctx, "create-user", "alice", "s3cret")

    assert created.details["scope"] == "/srv/users/alice"
    assert (settings.users_dir / "alice").is_dir()
    assert manager.list_users(ctx).details["users"] == ["alice"]
    assert manager.remove_user(ctx, "alice").changed is True
    assert manager.remove_user(ctx, "alice").changed is False
    with pytest.raises(ValueError):
        manager.remove_user(ctx, "admin")
    with pytest.raises(ValueError):
        manager.create_user(ctx, "Bad Name", "pw")


def test_monitoring_writes_configuration_and_starts_compose(make_context, runner, settings) -> None:
    ctx = make_context(["nginx", "monitoring"])
    stack = MonitoringStack()

    assert stack.status(ctx).message == "not installed"
    result = stack.install(ctx)

    directory = settings.data_root / "monitoring"
    compose = yaml.safe_load((directory / "docker-compose.yml").read_text())
    assert compose["services"]["grafana"]["ports"] == [f"{GRAFANA_PORT}:3000"]
    assert compose["services"]["grafana"]["environment"]["GF_SECURITY_ADMIN_PASSWORD"] == "grafana-password-value"
    assert compose["networks"] == {"server-panel": {"external": True}}
    assert (directory / "docker-compose.yml").stat().st_mode & 0o777 == 0o600
    rules = yaml.safe_load((directory / "rules" / "server-panel.yml").read_text())
    assert {rule["alert"] for rule in rules["groups"][0]["rules"]} >= {"HighCPUUsage", "LowDiskSpace"}
    assert yaml.safe_load((directory / "alertmanager.yml").read_text()) == alertmanager_config()
    assert result.details["ports"] == [3002, 9090, 9093]

    up = [call for call in runner.matching("docker", "compose") if call[-2:] == ["up", "-d"]]
    assert len(up) == 1
    status = stack.status(ctx)
    assert status.details["services"] == {"grafana": "running", "prometheus": "running", "alertmanager": "running"}

    ctx.journal.rollback(runner)
    assert runner.matching("docker", "compose")[-1][-1] == "down"


def test_monitoring_reinstall_leaves_a_running_stack_alone(make_context, runner) -> None:
    stack = MonitoringStack()
    stack.install(make_context(["nginx", "monitoring"]))
    rerun = make_context(["nginx", "monitoring"])

    result = stack.install(rerun)
    rerun.journal.rollback(runner)

    assert result.changed is False
    assert len([call for call in runner.matching("docker", "compose") if call[-2:] == ["up", "-d"]]) == 1
    assert [call for call in runner.matching("docker", "compose") if call[-1] == "down"] == []
    assert runner.compose_up is True


def test_backup_install_schedules_cron(make_context, settings) -> None:
    ctx = make_context(["nginx", "mysql", "backup"])

    result = BackupManager().install(ctx)

    cron = (settings.cron_dir / "server-panel-backup").read_text()
    assert "component backup backup full" in cron
    assert "component backup backup databases" in cron
    assert result.details["retention_days"] == 30
    assert (settings.backups_dir / "archives").stat().st_mode & 0o777 == 0o700


def test_full_backup_and_restore_of_user_files(make_context, runner, settings) -> None:
    ctx = make_context(["nginx", "mysql", "backup"])
    page = settings.users_dir / "admin" / "site" / "index.html"
    page.parent.mkdir(parents=True)
    page.write_text("<h1>hello</h1>")
    backup = BackupManager()

    result = backup.run_action(ctx, "backup", "full")

    created = result.details["created"]
    assert any(path.endswith(".sql.gz") for path in created)
    archive = next(path for path in created if "/archives/full_" in path)
    with tarfile.open(archive, "r:gz") as bundle:
        top = {name.split("/")[0] for name in bundle.getnames()}
    assert top == {"databases", "files", "configs"}

    page.unlink()
    restored = backup.restore(ctx, os.path.basename(archive))

    assert restored.changed is True
    assert page.read_text() == "<h1>hello</h1>"
    assert "archives: full_" in backup.list(ctx).message


def test_backup_rejects_unknown_kind_and_archive(make_context) -> None:
    ctx = make_context(["nginx", "backup"])
    backup = BackupManager()

    with pytest.raises(ValueError):
        backup.backup(ctx, "everything")
    with pytest.raises(ValueError, match="not found"):
        backup.restore(ctx, "missing.tar.gz")


def test_prune_removes_only_expired_backups(tmp_path) -> None:
    old = tmp_path / "files_old.tar.gz"
    new = tmp_path / "files_new.tar.gz"
    old.write_text("old")
    new.write_text("new")
    now = time.time()
    os.utime(old, (now - 40 * 86400, now - 40 * 86400))

    assert prune_backups(tmp_path, 30, now=now) == [old]
    assert new.exists()
    assert prune_backups(tmp_path / "absent", 30) == []


def test_panel_image_is_rebuilt_only_when_sources_change(make_context, runner, settings) -> None:
    settings.install_root.mkdir(parents=True)
    (settings.install_root / "main.py").write_text("print('v1')\n")
    ctx = make_context()
    panel = PanelServices()

    panel.install(ctx)
    assert (settings.install_root / "Dockerfile").exists()
    assert len(runner.matching("docker", "build")) == 1
    assert {BACKEND, FRONTEND} <= set(runner.containers)
    assert "serve-api" in runner.containers[BACKEND]["args"]

    second = panel.install(ctx)
    assert second.changed is False
    assert len(runner.matching("docker", "build")) == 1

    (settings.install_root / "main.py").write_text("print('v2')\n")
    panel.install(ctx)
    assert len(runner.matching("docker", "build")) == 2
    assert runner.matching("docker", "rm", "-f", BACKEND)
    assert IMAGE in runner.images


def test_probe_health_interprets_responses() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.port == 3001:
            return httpx.Response(200, json={"status": "ok"})
        if request.url.port == 3000:
            return httpx.Response(500)
        raise httpx.ConnectError("refused", request=request)

    transport = httpx.MockTransport(handler)

    assert probe_health("http://127.0.0.1:3001/health", transport=transport) == "ok"
    assert probe_health("http://127.0.0.1:3000/health", transport=transport) == "http 500"
    assert probe_health("http://127.0.0.1:9999/health", transport=transport) == "unreachable"


def test_panel_status_combines_container_state_and_health(make_context, runner) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "ok"}))
    ctx = make_context()
    panel = PanelServices(transport=transport)
    panel.install(ctx)

    status = panel.status(ctx)

    assert status.details["containers"] == {BACKEND: "running", FRONTEND: "running"}
    assert status.details["health"] == {BACKEND: "ok", FRONTEND: "ok"}
