"""
Rollback script generation.

Before a run mutates anything, `prepare` writes a rollback script built from the
registered steps' undo commands. Every time a file is about to be overwritten,
`before_write` saves its first pre-image for this run and rewrites the script,
so the script on disk is runnable no matter where the run stops.
"""

import os
import shlex
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from waha_provisioner.config import Config, RunContext
from waha_provisioner.errors import ArtifactWriteError
from waha_provisioner.logger import get_logger
from waha_provisioner.steps import StepRegistry


@dataclass
class BackupRecord:
    """Pre-image of a path captured before its first write in a run."""

    path: Path
    backup: Optional[Path]
    run_id: str
    step: Optional[str] = None

    @property
    def existed(self) -> bool:
        return self.backup is not None


SCRIPT_PRELUDE = """\
set -u

restore_file() {
    mkdir -p -- "$(dirname -- "$2")" && cp -p -- "$1" "$2" && echo "restored $2"
}

remove_file() {
    rm -f -- "$1" && echo "removed $1"
}

if [ "$(id -u)" -ne 0 ]; then
    echo "Run this script as root." >&2
    exit 1
fi
"""


class RollbackGenerator:
    def __init__(self, config: Config, run_id: str):
        self.config = config
        self.run_id = run_id
        self.backup_dir = config.backup_dir / run_id
        self.script_path = config.rollback_script
        self.records: Dict[Path, BackupRecord] = {}
        self.current_step: Optional[str] = None
        self._step_order: List[str] = []
        self._undo: Dict[str, List[str]] = {}
        self._epilogue: List[str] = []
        self._context: Optional[RunContext] = None

    # ----------------------------------------------------------------
    # Static part
    # ----------------------------------------------------------------
    def prepare(
        self, registry: StepRegistry, context: RunContext, epilogue: Optional[List[str]] = None
    ) -> Path:
        """Collect every step's undo commands and write the initial script."""
        self._context = context
        self._step_order = registry.names()
        self._undo = {
            step.name: list(step.rollback(context)) if step.rollback else [] for step in registry
        }
        self._epilogue = list(epilogue or [])
        return self.write_script()

    def begin_step(self, name: Optional[str]) -> None:
        self.current_step = name

    # ----------------------------------------------------------------
    # Backups
    # ----------------------------------------------------------------
    def before_write(self, path: Union[str, Path]) -> BackupRecord:
        """
        Record the pre-image of `path` unless this run already did.

        Only the first pre-image is kept: later writes to the same path were
        made by this run, not by whoever owned the file before.
        """
        path = Path(path)
        if path in self.records:
            return self.records[path]

        backup: Optional[Path] = None
        if path.is_file():
            backup = self.backup_dir / path.relative_to(path.anchor)
            try:
                backup.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, backup)
            except OSError as e:
                raise ArtifactWriteError(f"Could not back up {path}: {e}") from e
            get_logger().debug(f"Backed up {path} to {backup}")
        elif path.exists():
            raise ArtifactWriteError(f"Refusing to overwrite non-file path {path}")

        record = BackupRecord(path=path, backup=backup, run_id=self.run_id, step=self.current_step)
        self.records[path] = record
        if self._context is not None:
            self.write_script()
        return record

    # ----------------------------------------------------------------
    # Script
    # ----------------------------------------------------------------
    def _restore_line(self, record: BackupRecord) -> str:
        if record.existed:
            return f"restore_file {shlex.quote(str(record.backup))} {shlex.quote(str(record.path))}"
        return f"remove_file {shlex.quote(str(record.path))}"

    def _sections(self) -> List[Tuple[str, List[str], List[BackupRecord]]]:
        by_step: Dict[Optional[str], List[BackupRecord]] = {}
        for record in self.records.values():
            by_step.setdefault(record.step, []).append(record)

        sections = []
        for name in reversed(self._step_order):
            restores = list(reversed(by_step.pop(name, [])))
            sections.append((name, self._undo.get(name, []), restores))
        # Writes made outside any registered step
        leftovers = [r for records in by_step.values() for r in records]
        if leftovers:
            sections.append(("unscoped writes", [], list(reversed(leftovers))))
        return sections

    def emit_rollback_script(self, context: RunContext) -> str:
        """Render the rollback script for the current state of the run."""
        lines = [
            "#!/usr/bin/env bash",
            "# WAHA provisioner rollback script",
            f"# Run: {self.run_id}  Domain: {context.domain}",
            f"# Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"# Backups: {self.backup_dir}",
            "",
            SCRIPT_PRELUDE,
        ]
        for name, undo, restores in self._sections():
            if not undo and not restores:
                continue
            lines.append(f'echo "==> Undoing {name}"')
            lines.extend(undo)
            lines.extend(self._restore_line(r) for r in restores)
            lines.append("")
        if self._epilogue:
            lines.append('echo "==> Reloading services"')
            lines.extend(self._epilogue)
            lines.append("")
        lines.append('echo "Rollback complete."')
        return "\n".join(lines) + "\n"

    def write_script(self) -> Path:
        if self._context is None:
            raise ArtifactWriteError("Rollback script written before prepare()")
        content = self.emit_rollback_script(self._context)
        try:
            self.script_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.script_path.with_name(self.script_path.name + ".tmp")
            tmp.write_text(content)
            os.chmod(tmp, 0o700)
            os.replace(tmp, self.script_path)
        except OSError as e:
            raise ArtifactWriteError(f"Could not write rollback script {self.script_path}: {e}") from e
        return self.script_path
