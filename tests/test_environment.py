from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from panel.config import PanelSettings
from panel.environment import (
    EnvironmentCheckError,
    check_root,
    detect_environment,
    detect_os,
    fetch_public_address,
    is_ip_or_localhost,
    resolve_public_address,
)


def _os_release(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "os-release"
    path.write_text(content, encoding="utf-8")
    return path


@pytest.mark.parametrize(
    "content, expected",
    [
        ('ID=ubuntu\nVERSION_ID="22.04"\n', ("ubuntu", "debian", "22.04", "apt-get")),
        ('ID="centos"\nVERSION_ID="7"\n', ("centos", "rhel", "7", "yum")),
        ("ID=rocky\nVERSION_ID=9.3\n", ("rocky", "rhel", "9.3", "dnf")),
        ('ID=linuxmint\nID_LIKE="ubuntu debian"\nVERSION_ID=21\n', ("linuxmint", "debian", "21", "apt-get")),
    ],
)
def test_detect_os(tmp_path: Path, content: str, expected) -> None:
    assert detect_os(_os_release(tmp_path, content)) == expected


def test_unsupported_or_missing_os_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(EnvironmentCheckError, match="arch"):
        detect_os(_os_release(tmp_path, "ID=arch\n"))
    with pytest.raises(EnvironmentCheckError):
        detect_os(tmp_path / "missing")


def test_check_root() -> None:
    check_root(0)
    with pytest.raises(EnvironmentCheckError):
        check_root(1000)


def test_fetch_public_address_skips_bad_services() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "ifconfig.me":
            return httpx.Response(503)
        if request.url.host == "ipinfo.io":
            return httpx.Response(200, text="<html>rate limited</html>")
        return httpx.Response(200, text="198.51.100.7\n")

    transport = httpx.MockTransport(handler)
    urls = ["https://ifconfig.me", "https://ipinfo.io/ip", "https://icanhazip.com"]

    assert fetch_public_address(urls, transport=transport) == "198.51.100.7"
    assert fetch_public_address(urls, version=6, transport=transport) is None


def test_resolve_public_address_falls_back_to_route_then_loopback(runner) -> None:
    runner.binaries.add("ip")

    def no_echo(urls, *, version=4):
        return None

    assert resolve_public_address(runner, fetch=no_echo) == ("127.0.0.1", "loopback")

    runner.route_output = "8.8.8.8 via 10.0.0.1 dev eth0 src 10.0.0.5 uid 0\n"
    assert resolve_public_address(runner, fetch=no_echo) == ("10.0.0.5", "local")


def test_resolve_public_address_prefers_ipv4_then_ipv6(runner) -> None:
    def ipv6_only(urls, *, version=4):
        return "2001:db8::1" if version == 6 else None

    assert resolve_public_address(runner, fetch=lambda urls, version=4: "203.0.113.5") == ("203.0.113.5", "ipv4")
    assert resolve_public_address(runner, fetch=ipv6_only) == ("2001:db8::1", "ipv6")


def test_detect_environment_defaults_domain_and_email(tmp_path: Path, runner) -> None:
    release = _os_release(tmp_path, 'ID=debian\nVERSION_ID="12"\n')

    environment = detect_environment(
        PanelSettings(),
        runner,
        os_release_path=release,
        fetch=lambda urls, version=4: "203.0.113.5",
        hostname="web01",
    )

    assert environment.os_family == "debian"
    assert environment.domain == "203.0.113.5"
    assert environment.email == "admin@web01"
    assert environment.domain_is_address is True

    configured = detect_environment(
        PanelSettings(domain="Panel.Example.com", email="ops@example.com"),
        runner,
        os_release_path=release,
        fetch=lambda urls, version=4: "203.0.113.5",
        hostname="web01",
    )
    assert configured.domain == "panel.example.com"
    assert configured.email == "ops@example.com"


def test_is_ip_or_localhost() -> None:
    assert is_ip_or_localhost("localhost")
    assert is_ip_or_localhost("192.0.2.1")
    assert is_ip_or_localhost("[2001:db8::1]")
    assert not is_ip_or_localhost("example.com")
