"""Desired-state file reconciliation.

Generated configuration is rendered in full and compared with what is on disk;
only differences are written. Each write is recorded in the provisioning
journal together with the action that reverts it.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from .journal import ProvisioningJournal

logger = logging.getLogger("serverpanel.reconcile")


@dataclass(frozen=True)
class FileSpec:
    """Desired content for a managed file."""

    path: Path
    content: str
    mode: Optional[int] = None


class Reconciler:
    """Applies :class:`FileSpec` objects, touching only what differs."""

    def __init__(self, journal: ProvisioningJournal | None = None, *, dry_run: bool = False) -> None:
        self._journal = journal
        self._dry_run = dry_run

    def _record(self, description: str, undo: Optional[dict]) -> None:
        if self._journal is not None:
            self._journal.record(description, undo=undo)

    def diff(self, specs: Iterable[FileSpec]) -> List[FileSpec]:
        """Return the specs whose content or mode differs from disk."""

        pending: List[FileSpec] = []
        for spec in specs:
            if not spec.path.exists():
                pending.append(spec)
                continue
            current = spec.path.read_text(encoding="utf-8")
            if current != spec.content:
                pending.append(spec)
                continue
            if spec.mode is not None and (spec.path.stat().st_mode & 0o777) != spec.mode:
                pending.append(spec)
        return pending

    def apply(self, specs: Iterable[FileSpec]) -> List[Path]:
        """Write every pending spec and return the changed paths."""

        changed: List[Path] = []
        for spec in self.diff(list(specs)):
            self._write(spec)
            changed.append(spec.path)
        return changed

    def ensure_file(self, path: Path, content: str, *, mode: Optional[int] = None) -> bool:
        return bool(self.apply([FileSpec(path=path, content=content, mode=mode)]))

    def _write(self, spec: FileSpec) -> None:
        if self._dry_run:
            logger.info("Would write %s", spec.path)
            return

        existed = spec.path.exists()
        backup = self._journal.stash_file(spec.path) if (existed and self._journal is not None) else None
        spec.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = spec.path.with_name(f".{spec.path.name}.tmp")
        tmp_path.write_text(spec.content, encoding="utf-8")
        if spec.mode is not None:
            tmp_path.chmod(spec.mode)
        os.replace(tmp_path, spec.path)

        if existed:
            logger.info("Updated %s", spec.path)
            undo = {"kind": "restore_file", "path": str(spec.path), "backup": str(backup)} if backup else None
            self._record(f"Updated {spec.path}", undo)
        else:
            logger.info("Wrote %s", spec.path)
            self._record(f"Created {spec.path}", {"kind": "remove_path", "path": str(spec.path)})

    def ensure_directory(self, path: Path, *, mode: Optional[int] = None) -> bool:
        if path.is_dir():
            if mode is not None and (path.stat().st_mode & 0o777) != mode and not self._dry_run:
                path.chmod(mode)
            return False
        if self._dry_run:
            logger.info("Would create directory %s", path)
            return True

        missing_root = path
        while not missing_root.parent.exists():
            missing_root = missing_root.parent
        path.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            path.chmod(mode)
        self._record(f"Created directory {path}", {"kind": "remove_path", "path": str(missing_root)})
        return True

    def ensure_symlink(self, link: Path, target: Path) -> bool:
        if link.is_symlink() and Path(os.readlink(link)) == target:
            return False
        if self._dry_run:
            logger.info("Would link %s -> %s", link, target)
            return True

        if link.is_symlink() or link.exists():
            link.unlink()
        link.parent.mkdir(parents=True, exist_ok=True)
        link.symlink_to(target)
        self._record(f"Linked {link} -> {target}", {"kind": "remove_path", "path": str(link)})
        return True

    def remove(self, path: Path) -> bool:
        if not (path.exists() or path.is_symlink()):
            return False
        if self._dry_run:
            logger.info("Would remove %s", path)
            return True

        backup = self._journal.stash_file(path) if (self._journal is not None and path.is_file()) else None
        path.unlink()
        undo = {"kind": "restore_file", "path": str(path), "backup": str(backup)} if backup else None
        self._record(f"Removed {path}", undo)
        return True


__all__ = ["FileSpec", "Reconciler"]
