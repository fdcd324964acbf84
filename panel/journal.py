"""Recorded provisioning log with compensating undo actions."""
from __future__ import annotations

import json
import logging
import shutil
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Literal, Optional

from .shell import CommandError

logger = logging.getLogger("serverpanel.journal")

StepStatus = Literal["running", "succeeded", "failed", "rolled_back"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JournalEntry:
    """A single recorded change and the action that reverts it."""

    sequence: int
    step: str
    description: str
    timestamp: datetime
    undo: Optional[Dict[str, object]] = None
    undone: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "sequence": self.sequence,
            "step": self.step,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
            "undo": self.undo,
            "undone": self.undone,
        }

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "JournalEntry":
        return JournalEntry(
            sequence=int(data["sequence"]),  # type: ignore[arg-type]
            step=str(data["step"]),
            description=str(data["description"]),
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            undo=data.get("undo"),  # type: ignore[arg-type]
            undone=bool(data.get("undone", False)),
        )


@dataclass
class ProvisioningJournal:
    """Tracks every change made during one provisioning run.

    The journal is persisted after each record so that an interrupted run can
    still be rolled back with ``main.py rollback``. Undo actions are plain data
    (``remove_path``, ``restore_file`` or ``command``) rather than callables.
    """

    directory: Optional[Path] = None
    run_id: str = field(default_factory=lambda: _utcnow().strftime("%Y%m%d%H%M%S") + "-" + uuid.uuid4().hex[:6])
    entries: List[JournalEntry] = field(default_factory=list)
    steps: Dict[str, str] = field(default_factory=dict)
    current_step: str = "setup"
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def path(self) -> Optional[Path]:
        if self.directory is None:
            return None
        return self.directory / f"{self.run_id}.json"

    @property
    def backup_dir(self) -> Optional[Path]:
        if self.directory is None:
            return None
        return self.directory / self.run_id

    def begin_step(self, step: str) -> None:
        with self._lock:
            self.current_step = step
            self.steps[step] = "running"
            self.save()

    def finish_step(self, step: str, status: StepStatus) -> None:
        with self._lock:
            self.steps[step] = status
            self.save()

    def record(self, description: str, *, undo: Optional[Dict[str, object]] = None) -> JournalEntry:
        with self._lock:
            entry = JournalEntry(
                sequence=len(self.entries) + 1,
                step=self.current_step,
                description=description,
                timestamp=_utcnow(),
                undo=undo,
            )
            self.entries.append(entry)
            logger.debug("Journal #%s [%s] %s", entry.sequence, entry.step, description)
            self.save()
            return entry

    def stash_file(self, path: Path) -> Optional[Path]:
        """Copy ``path`` aside so a later rollback can restore it."""

        backup_root = self.backup_dir
        if backup_root is None or not path.is_file():
            return None
        backup_root.mkdir(parents=True, exist_ok=True)
        target = backup_root / f"{len(self.entries) + 1:04d}-{path.name}"
        shutil.copy2(path, target)
        return target

    def changes(self, *, step: Optional[str] = None) -> List[JournalEntry]:
        return [entry for entry in self.entries if step is None or entry.step == step]

    def rollback(self, runner, *, step: Optional[str] = None) -> List[str]:
        """Undo recorded changes in reverse order and return their descriptions."""

        undone: List[str] = []
        with self._lock:
            for entry in reversed(self.entries):
                if entry.undone or entry.undo is None:
                    continue
                if step is not None and entry.step != step:
                    continue
                try:
                    self._apply_undo(entry.undo, runner)
                except (OSError, CommandError) as exc:
                    logger.error("Failed to undo '%s': %s", entry.description, exc)
                    continue
                entry.undone = True
                undone.append(entry.description)
                logger.info("Reverted: %s", entry.description)
            for name, status in list(self.steps.items()):
                if step is None or name == step:
                    if status in ("succeeded", "failed"):
                        self.steps[name] = "rolled_back"
            self.save()
        return undone

    def _apply_undo(self, undo: Dict[str, object], runner) -> None:
        kind = undo.get("kind")
        if kind == "remove_path":
            target = Path(str(undo["path"]))
            if target.is_symlink() or target.is_file():
                target.unlink()
            elif target.is_dir():
                shutil.rmtree(target)
        elif kind == "restore_file":
            source = Path(str(undo["backup"]))
            target = Path(str(undo["path"]))
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        elif kind == "command":
            args = [str(part) for part in undo.get("args", [])]  # type: ignore[union-attr]
            runner.run(args, check=False)
        else:
            raise ValueError(f"Unknown undo action: {kind!r}")

    def to_dict(self) -> Dict[str, object]:
        return {
            "run_id": self.run_id,
            "steps": dict(self.steps),
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def save(self) -> None:
        path = self.path
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        tmp_path.replace(path)

    @classmethod
    def load(cls, directory: Path, run_id: Optional[str] = None) -> "ProvisioningJournal":
        """Load a persisted journal, the most recent one when ``run_id`` is omitted."""

        if run_id is None:
            candidates = sorted(directory.glob("*.json"))
            if not candidates:
                raise ValueError(f"No provisioning journals found in {directory}")
            path = candidates[-1]
        else:
            path = directory / f"{run_id}.json"
            if not path.exists():
                raise ValueError(f"Provisioning journal not found: {path}")

        data = json.loads(path.read_text(encoding="utf-8"))
        return cls(
            directory=directory,
            run_id=str(data["run_id"]),
            entries=[JournalEntry.from_dict(item) for item in data.get("entries", [])],
            steps={str(key): str(value) for key, value in data.get("steps", {}).items()},
        )


__all__ = ["JournalEntry", "ProvisioningJournal"]
