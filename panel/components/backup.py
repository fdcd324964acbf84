"""Scheduled backups of databases, user files and configuration."""
from __future__ import annotations

import logging
import tarfile
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from ..context import ProvisionContext
from ..templating import render
from .base import STANDARD_ACTIONS, Component, StepResult

logger = logging.getLogger("serverpanel.backup")

BACKUP_KINDS = ("full", "databases", "files", "configs")
BACKUP_SUBDIRS = ("databases", "files", "configs", "archives")
CRON_FILE_NAME = "server-panel-backup"


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def _tar_directories(target: Path, sources: Dict[str, Path]) -> Path:
    """Write ``sources`` (arcname -> directory) into a gzip tarball."""

    target.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(target, "w:gz") as archive:
        for arcname, source in sources.items():
            if source.exists():
                archive.add(str(source), arcname=arcname)
    target.chmod(0o600)
    return target


def prune_backups(directory: Path, retention_days: int, *, now: Optional[float] = None) -> List[Path]:
    """Delete backups older than ``retention_days``; return the removed paths."""

    if not directory.is_dir():
        return []
    cutoff = (now if now is not None else time.time()) - retention_days * 86400
    removed = []
    for path in sorted(directory.iterdir()):
        if path.is_file() and path.stat().st_mtime < cutoff:
            path.unlink()
            removed.append(path)
    return removed


class BackupManager(Component):
    name = "backup"
    actions = STANDARD_ACTIONS + ("backup", "restore", "list")

    def directory(self, ctx: ProvisionContext, subdir: str) -> Path:
        return ctx.settings.backups_dir / subdir

    def install(self, ctx: ProvisionContext) -> StepResult:
        changed = ctx.files.ensure_directory(ctx.settings.backups_dir, mode=0o700)
        for subdir in BACKUP_SUBDIRS:
            changed |= ctx.files.ensure_directory(self.directory(ctx, subdir), mode=0o700)

        cron = render(
            "cron/backup.j2",
            full_command=" ".join(ctx.cli_command("component", "backup", "backup", "full")),
            database_command=" ".join(ctx.cli_command("component", "backup", "backup", "databases")),
            log_dir=str(ctx.settings.log_dir),
        )
        changed |= ctx.files.ensure_file(ctx.settings.cron_dir / CRON_FILE_NAME, cron, mode=0o644)
        retention = ctx.settings.backup_retention_days
        return self.result("install", changed, f"Backups scheduled, kept for {retention} days", retention_days=retention)

    # ------------------------------------------------------------------
    # Backup kinds
    # ------------------------------------------------------------------
    def _backup_databases(self, ctx: ProvisionContext) -> List[Path]:
        paths = []
        for name in ("mysql", "postgres"):
            if ctx.is_enabled(name):
                dumped = ctx.component(name).backup(ctx)  # type: ignore[attr-defined]
                paths.append(Path(str(dumped.details["path"])))
        return paths

    def _backup_files(self, ctx: ProvisionContext, stamp: str) -> Path:
        target = self.directory(ctx, "files") / f"files_{stamp}.tar.gz"
        return _tar_directories(
            target,
            {"users": ctx.settings.users_dir, "apps": ctx.settings.data_root / "apps"},
        )

    def _backup_configs(self, ctx: ProvisionContext, stamp: str) -> Path:
        sources: Dict[str, Path] = {
            "config": ctx.settings.install_root / "config",
            "monitoring": ctx.settings.data_root / "monitoring",
            "filemanager": ctx.settings.data_root / "filemanager",
        }
        webserver = ctx.webserver()
        if webserver is not None:
            sources["webserver"] = webserver.sites_available(ctx)
        target = self.directory(ctx, "configs") / f"configs_{stamp}.tar.gz"
        return _tar_directories(target, sources)

    def backup(self, ctx: ProvisionContext, kind: str = "full") -> StepResult:
        if kind not in BACKUP_KINDS:
            raise ValueError(f"Unknown backup kind '{kind}'. Choose from: {', '.join(BACKUP_KINDS)}")

        stamp = _timestamp()
        created: List[Path] = []
        if kind in ("full", "databases"):
            created += self._backup_databases(ctx)
        if kind in ("full", "files"):
            created.append(self._backup_files(ctx, stamp))
        if kind in ("full", "configs"):
            created.append(self._backup_configs(ctx, stamp))

        if kind == "full":
            archive = self.directory(ctx, "archives") / f"full_{stamp}.tar.gz"
            archive.parent.mkdir(parents=True, exist_ok=True)
            with tarfile.open(archive, "w:gz") as bundle:
                for path in created:
                    bundle.add(str(path), arcname=f"{path.parent.name}/{path.name}")
            archive.chmod(0o600)
            created.append(archive)

        removed: List[Path] = []
        for subdir in BACKUP_SUBDIRS:
            removed += prune_backups(self.directory(ctx, subdir), ctx.settings.backup_retention_days)
        if removed:
            logger.info("Pruned %d backup(s) older than %d days", len(removed), ctx.settings.backup_retention_days)

        message = f"{kind} backup written: " + ", ".join(path.name for path in created)
        return self.result(
            "backup",
            True,
            message,
            created=[str(path) for path in created],
            pruned=[str(path) for path in removed],
        )

    # ------------------------------------------------------------------
    # Restore and listing
    # ------------------------------------------------------------------
    def _resolve_archive(self, ctx: ProvisionContext, archive: str) -> Path:
        candidate = Path(archive)
        if candidate.is_absolute():
            if candidate.is_file():
                return candidate
        else:
            for subdir in ("archives", "files"):
                path = self.directory(ctx, subdir) / candidate
                if path.is_file():
                    return path
        raise ValueError(f"Backup archive '{archive}' not found")

    def restore(self, ctx: ProvisionContext, archive: str) -> StepResult:
        """Extract user and application files from a files or full backup."""

        path = self._resolve_archive(ctx, archive)
        destination = ctx.settings.data_root
        with tarfile.open(path, "r:gz") as outer:
            names = outer.getnames()
            if any(name.split("/", 1)[0] in ("users", "apps") for name in names):
                outer.extractall(destination, filter="data")
            else:
                nested = next((name for name in names if name.startswith("files/")), None)
                if nested is None:
                    raise ValueError(f"{path.name} does not contain user files")
                handle = outer.extractfile(nested)
                if handle is None:
                    raise ValueError(f"{path.name} does not contain user files")
                with tarfile.open(fileobj=handle, mode="r:gz") as inner:
                    inner.extractall(destination, filter="data")
        logger.info("Restored user files from %s into %s", path, destination)
        return self.result("restore", True, f"Restored files from {path.name}", archive=str(path))

    def _archives(self, ctx: ProvisionContext) -> Dict[str, List[str]]:
        listing: Dict[str, List[str]] = {}
        for subdir in BACKUP_SUBDIRS:
            directory = self.directory(ctx, subdir)
            listing[subdir] = sorted(p.name for p in directory.iterdir() if p.is_file()) if directory.is_dir() else []
        return listing

    def list(self, ctx: ProvisionContext) -> StepResult:
        listing = self._archives(ctx)
        lines = [f"{subdir}: {', '.join(names) or '-'}" for subdir, names in listing.items()]
        return self.result("list", False, "\n".join(lines), backups=listing)

    def status(self, ctx: ProvisionContext) -> StepResult:
        listing = self._archives(ctx)
        archives = listing.get("archives", [])
        latest = archives[-1] if archives else "none"
        total = sum(len(names) for names in listing.values())
        return self.result("status", False, f"{total} backup file(s), latest full backup: {latest}", latest=latest)


__all__ = ["BACKUP_KINDS", "BackupManager", "prune_backups"]
