"""Host metrics reported by the placeholder API."""
from __future__ import annotations

import platform
import shutil
import socket
from pathlib import Path
from typing import Dict, Optional

PROC = Path("/proc")


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None


def parse_loadavg(text: str) -> Optional[Dict[str, float]]:
    parts = text.strip().split()
    if len(parts) < 3:
        return None
    try:
        return {
            "one": float(parts[0]),
            "five": float(parts[1]),
            "fifteen": float(parts[2]),
        }
    except ValueError:
        return None


def parse_meminfo(text: str) -> Optional[Dict[str, object]]:
    """Summarise ``/proc/meminfo`` (values in kB) as byte counts."""

    stats: Dict[str, int] = {}
    for line in text.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        fields = value.split()
        if not fields:
            continue
        try:
            stats[key.strip()] = int(fields[0]) * 1024
        except ValueError:
            continue

    total = stats.get("MemTotal")
    if not total:
        return None
    available = stats.get("MemAvailable", stats.get("MemFree", 0))
    used = total - available
    return {
        "total_bytes": total,
        "used_bytes": used,
        "available_bytes": available,
        "usage_percent": round((used / total) * 100, 2),
    }


def parse_uptime(text: str) -> Optional[float]:
    parts = text.strip().split()
    if not parts:
        return None
    try:
        return float(parts[0])
    except ValueError:
        return None


def disk_usage(path: Path = Path("/")) -> Optional[Dict[str, object]]:
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return None
    return {
        "path": str(path),
        "total_bytes": usage.total,
        "used_bytes": usage.used,
        "free_bytes": usage.free,
        "usage_percent": round((usage.used / usage.total) * 100, 2) if usage.total else None,
    }


def collect_system_info(proc: Path = PROC, disk_path: Path = Path("/")) -> Dict[str, object]:
    loadavg = _read(proc / "loadavg")
    meminfo = _read(proc / "meminfo")
    uptime = _read(proc / "uptime")
    return {
        "hostname": socket.gethostname(),
        "platform": platform.platform(),
        "python": platform.python_version(),
        "uptime_seconds": parse_uptime(uptime) if uptime else None,
        "load": parse_loadavg(loadavg) if loadavg else None,
        "memory": parse_meminfo(meminfo) if meminfo else None,
        "disk": disk_usage(disk_path),
    }


__all__ = ["collect_system_info", "disk_usage", "parse_loadavg", "parse_meminfo", "parse_uptime"]
