"""Secrets, credentials, tokens, host metrics and logging helpers."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from panel.components.databases import MySQLServer
from panel.components.filemanager import FileManager
from panel.credentials import (
    SECRET_KEYS,
    load_or_create_secrets,
    load_secrets,
    render_credentials,
    write_credentials_once,
)
from panel.logging_setup import LOG_FILE_NAME, setup_logging
from panel.sessions import TokenStore
from panel.shell import REDACTED, CommandRunner, format_command
from panel.sysinfo import collect_system_info, parse_loadavg, parse_meminfo, parse_uptime
from panel.templating import list_templates, render

from conftest import SECRETS


def test_secrets_are_generated_once_and_never_rotated(tmp_path) -> None:
    path = tmp_path / "data" / ".secrets.json"

    first = load_or_create_secrets(path)
    second = load_or_create_secrets(path)

    assert set(first) == set(SECRET_KEYS)
    assert first == second
    assert path.stat().st_mode & 0o777 == 0o600
    assert len(first["admin_password"]) == 24


def test_missing_secrets_are_filled_in(tmp_path) -> None:
    path = tmp_path / ".secrets.json"
    path.write_text(json.dumps({"admin_password": "kept"}))

    secrets = load_or_create_secrets(path)

    assert secrets["admin_password"] == "kept"
    assert load_secrets(path) == secrets


def test_dry_run_does_not_persist_secrets(tmp_path) -> None:
    path = tmp_path / ".secrets.json"

    assert set(load_or_create_secrets(path, dry_run=True)) == set(SECRET_KEYS)
    assert not path.exists()
    assert load_secrets(path) == {}


def test_secrets_file_must_hold_an_object(tmp_path) -> None:
    path = tmp_path / ".secrets.json"
    path.write_text("[]")

    with pytest.raises(ValueError):
        load_secrets(path)


def test_credentials_are_written_once(tmp_path, settings, environment) -> None:
    path = tmp_path / "admin-credentials.txt"

    assert write_credentials_once(path, settings, environment, SECRETS) is True
    content = path.read_text()
    assert "http://panel.example.com:3000/" in content
    assert SECRETS["admin_password"] in content
    assert path.stat().st_mode & 0o777 == 0o600

    changed = dict(SECRETS, admin_password="rotated")
    assert write_credentials_once(path, settings, environment, changed) is False
    assert path.read_text() == content
    assert "rotated" in render_credentials(settings, environment, changed)


def test_token_store_issues_and_revokes() -> None:
    store = TokenStore()
    issued = store.issue(7)

    assert issued.user_id == 7
    assert store.resolve(issued.value) == 7
    assert store.resolve("unknown") is None
    assert store.revoke(issued.value) is True
    assert store.revoke(issued.value) is False
    assert store.resolve(issued.value) is None


def test_tokens_expire_at_a_fixed_time() -> None:
    now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
    store = TokenStore(ttl=timedelta(minutes=10), clock=lambda: now[0])
    issued = store.issue(1)
    assert issued.expires_at == now[0] + timedelta(minutes=10)

    now[0] += timedelta(minutes=9)
    assert store.resolve(issued.value) == 1
    now[0] += timedelta(minutes=1)
    assert store.resolve(issued.value) is None
    assert len(store) == 0


def test_revoking_a_user_drops_all_of_their_tokens() -> None:
    store = TokenStore()
    first, second, other = store.issue(1), store.issue(1), store.issue(2)

    assert store.revoke_user(1) == 2
    assert store.resolve(first.value) is None
    assert store.resolve(second.value) is None
    assert store.resolve(other.value) == 2
    assert len(store) == 1


def test_proc_parsers() -> None:
    assert parse_loadavg("0.50 0.25 0.10 1/123 4567\n") == {"one": 0.5, "five": 0.25, "fifteen": 0.1}
    assert parse_loadavg("garbage") is None
    assert parse_uptime("3600.25 7200.00\n") == 3600.25
    assert parse_uptime("") is None

    memory = parse_meminfo("MemTotal:       2000 kB\nMemFree:         500 kB\nMemAvailable:   1000 kB\n")
    assert memory == {
        "total_bytes": 2048000,
        "used_bytes": 1024000,
        "available_bytes": 1024000,
        "usage_percent": 50.0,
    }
    assert parse_meminfo("MemFree: 10 kB\n") is None


def test_collect_system_info_from_a_fake_proc(tmp_path) -> None:
    (tmp_path / "loadavg").write_text("1.00 2.00 3.00 1/1 1\n")
    (tmp_path / "uptime").write_text("42.0 0.0\n")

    info = collect_system_info(proc=tmp_path, disk_path=tmp_path)

    assert info["load"] == {"one": 1.0, "five": 2.0, "fifteen": 3.0}
    assert info["uptime_seconds"] == 42.0
    assert info["memory"] is None
    assert info["disk"]["path"] == str(tmp_path)


def test_setup_logging_writes_install_log(tmp_path) -> None:
    log_file = setup_logging(tmp_path / "log", level=logging.DEBUG)

    logging.getLogger("serverpanel.test").info("provisioning started")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_file == tmp_path / "log" / LOG_FILE_NAME
    assert "[INFO] provisioning started" in log_file.read_text()
    assert log_file.stat().st_mode & 0o777 == 0o600
    assert setup_logging(None) is None


def test_templates_render_strictly() -> None:
    from jinja2 import UndefinedError

    assert "apps/nodejs/express/package.json.j2" in list_templates("apps/nodejs/")
    context = {
        "site": "blog-admin",
        "upstream": "blog_admin",
        "domain": "blog.example.com",
        "port": 7000,
        "webroot": "/var/www/html",
        "certificate": "/etc/ssl/blog.pem",
        "private_key": "/etc/ssl/blog.key",
    }
    assert "server 127.0.0.1:7000;" in render("nginx/proxy.conf.j2", **context)

    del context["webroot"]
    with pytest.raises(UndefinedError):
        render("nginx/proxy.conf.j2", **context)


def test_format_command_masks_credentials() -> None:
    printable = format_command(
        ["docker", "run", "-e", "MYSQL_ROOT_PASSWORD=hunter2", "-e", "MYSQL_DATABASE=panel", "--label", "api_token=abc"]
    )

    assert "hunter2" not in printable
    assert "abc" not in printable
    assert f"MYSQL_ROOT_PASSWORD={REDACTED}" in printable
    assert "MYSQL_DATABASE=panel" in printable


def test_credentials_never_reach_the_command_log(make_context, caplog) -> None:
    ctx = make_context(["nginx", "mysql", "filemanager"]).evolve(runner=CommandRunner(dry_run=True))
    caplog.set_level(logging.INFO)

    MySQLServer().install(ctx)
    FileManager().create_user(ctx, "alice", "alice-file-password")

    assert "-> docker run" in caplog.text
    assert "MYSQL_PWD=" in caplog.text
    for secret in (SECRETS["mysql_root_password"], SECRETS["database_password"], "alice-file-password"):
        assert secret not in caplog.text
