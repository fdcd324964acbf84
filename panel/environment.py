"""Host environment detection: OS family, reachable address and hostname."""
from __future__ import annotations

import ipaddress
import logging
import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple

import httpx

from .config import PanelSettings

logger = logging.getLogger("serverpanel.environment")

OS_RELEASE_PATH = Path("/etc/os-release")

IPV4_ECHO_SERVICES: Tuple[str, ...] = (
    "https://ifconfig.me",
    "https://ipinfo.io/ip",
    "https://icanhazip.com",
)
IPV6_ECHO_SERVICES: Tuple[str, ...] = (
    "https://ifconfig.me",
    "https://icanhazip.com",
)
LOOPBACK_ADDRESS = "127.0.0.1"
DEFAULT_HOSTNAME = "panelo"

# os-release ID -> (family, package manager)
OS_FAMILIES: Dict[str, Tuple[str, str]] = {
    "ubuntu": ("debian", "apt-get"),
    "debian": ("debian", "apt-get"),
    "centos": ("rhel", "yum"),
    "rhel": ("rhel", "yum"),
    "rocky": ("rhel", "dnf"),
    "almalinux": ("rhel", "dnf"),
    "fedora": ("fedora", "dnf"),
}


class EnvironmentCheckError(RuntimeError):
    """Raised when the host cannot be provisioned at all."""


@dataclass(frozen=True)
class Environment:
    """Facts about the host that every later step consumes."""

    os_id: str
    os_family: str
    os_version: str
    package_manager: str
    public_address: str
    address_kind: str
    hostname: str
    domain: str
    email: str

    @property
    def domain_is_address(self) -> bool:
        return is_ip_or_localhost(self.domain)


def is_ip_or_localhost(value: str) -> bool:
    candidate = value.strip().strip("[]").lower()
    if candidate == "localhost":
        return True
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return False
    return True


def check_root(euid: Optional[int] = None) -> None:
    effective = os.geteuid() if euid is None else euid
    if effective != 0:
        raise EnvironmentCheckError("This installer must be run as root (try: sudo python3 main.py install)")


def read_os_release(path: Path = OS_RELEASE_PATH) -> Dict[str, str]:
    if not path.exists():
        raise EnvironmentCheckError(f"Cannot detect the operating system: {path} is missing")
    values: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def detect_os(path: Path = OS_RELEASE_PATH) -> Tuple[str, str, str, str]:
    """Return ``(os_id, family, version, package_manager)``."""

    release = read_os_release(path)
    os_id = release.get("ID", "").lower()
    family = OS_FAMILIES.get(os_id)
    if family is None:
        for candidate in release.get("ID_LIKE", "").lower().split():
            if candidate in OS_FAMILIES:
                family = OS_FAMILIES[candidate]
                break
    if family is None:
        raise EnvironmentCheckError(f"Unsupported operating system: {os_id or 'unknown'}")
    return os_id, family[0], release.get("VERSION_ID", ""), family[1]


def _parse_address(text: str, version: int) -> Optional[str]:
    try:
        address = ipaddress.ip_address(text.strip())
    except ValueError:
        return None
    if address.version != version:
        return None
    return str(address)


def fetch_public_address(
    urls: Sequence[str],
    *,
    version: int = 4,
    transport: httpx.BaseTransport | None = None,
    timeout: float = 5.0,
) -> Optional[str]:
    """Ask each echo service in turn for this host's address."""

    if transport is None:
        local_address = "0.0.0.0" if version == 4 else "::"
        transport = httpx.HTTPTransport(local_address=local_address, retries=0)

    with httpx.Client(transport=transport, timeout=timeout, follow_redirects=True) as client:
        for url in urls:
            try:
                response = client.get(url, headers={"User-Agent": "curl/8"})
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.debug("Echo service %s unavailable: %s", url, exc)
                continue
            address = _parse_address(response.text, version)
            if address is not None:
                return address
            logger.debug("Echo service %s returned an unexpected body", url)
    return None


def local_route_address(runner) -> Optional[str]:
    """Return the source address of the default route, if any."""

    if runner.which("ip") is None:
        return None
    result = runner.run(["ip", "-4", "route", "get", "8.8.8.8"], check=False)
    if result.exit_status != 0:
        return None
    tokens = result.stdout.split()
    if "src" in tokens:
        index = tokens.index("src")
        if index + 1 < len(tokens):
            return _parse_address(tokens[index + 1], 4)
    return None


def resolve_public_address(
    runner,
    *,
    fetch: Callable[..., Optional[str]] = fetch_public_address,
) -> Tuple[str, str]:
    """Resolve ``(address, kind)``; never fails thanks to the loopback fallback."""

    address = fetch(IPV4_ECHO_SERVICES, version=4)
    if address:
        return address, "ipv4"

    address = local_route_address(runner)
    if address:
        logger.warning("Public IPv4 lookup failed; using local route address %s", address)
        return address, "local"

    address = fetch(IPV6_ECHO_SERVICES, version=6)
    if address:
        logger.warning("No IPv4 address found; using IPv6 address %s", address)
        return address, "ipv6"

    logger.warning("Could not determine a reachable address; falling back to %s", LOOPBACK_ADDRESS)
    return LOOPBACK_ADDRESS, "loopback"


def detect_hostname() -> str:
    name = socket.getfqdn() or socket.gethostname()
    name = name.strip()
    if not name or name == "localhost" or name.startswith("localhost."):
        return DEFAULT_HOSTNAME
    return name


def detect_environment(
    settings: PanelSettings,
    runner,
    *,
    os_release_path: Path = OS_RELEASE_PATH,
    fetch: Callable[..., Optional[str]] = fetch_public_address,
    hostname: Optional[str] = None,
) -> Environment:
    os_id, family, version, package_manager = detect_os(os_release_path)
    address, kind = resolve_public_address(runner, fetch=fetch)
    host = hostname or detect_hostname()

    domain = (settings.domain or address).strip().lower()
    email = (settings.email or f"admin@{host}").strip()

    environment = Environment(
        os_id=os_id,
        os_family=family,
        os_version=version,
        package_manager=package_manager,
        public_address=address,
        address_kind=kind,
        hostname=host,
        domain=domain,
        email=email,
    )
    logger.info(
        "Detected %s %s (%s), address %s (%s), hostname %s",
        os_id,
        version,
        family,
        address,
        kind,
        host,
    )
    return environment


__all__ = [
    "Environment",
    "EnvironmentCheckError",
    "IPV4_ECHO_SERVICES",
    "IPV6_ECHO_SERVICES",
    "LOOPBACK_ADDRESS",
    "check_root",
    "detect_environment",
    "detect_hostname",
    "detect_os",
    "fetch_public_address",
    "is_ip_or_localhost",
    "local_route_address",
    "read_os_release",
    "resolve_public_address",
]
