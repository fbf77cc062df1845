"""
Configuration artifacts and the writer that puts them on disk.
"""

import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from waha_provisioner.config import RunContext
from waha_provisioner.errors import ArtifactWriteError
from waha_provisioner.logger import get_logger
from waha_provisioner.rollback import RollbackGenerator


class Phase(Enum):
    PRE_TLS = "pre-tls"
    POST_TLS = "post-tls"
    STATIC = "static"


@dataclass
class ConfigArtifact:
    """A rendered configuration file."""

    path: Path
    content: str
    mode: int = 0o644
    phase: Phase = Phase.STATIC
    domain: Optional[str] = None
    owner: Optional[str] = None
    group: Optional[str] = None

    def matches_disk(self) -> bool:
        """True when the file on disk already has exactly this content."""
        try:
            return self.path.is_file() and self.path.read_text() == self.content
        except OSError:
            return False


class ArtifactWriter:
    """
    Writes artifacts atomically, taking a rollback backup first.

    A post-tls artifact for a domain is refused until the run has recorded a
    successful certificate issuance for that domain.
    """

    def __init__(self, rollback: RollbackGenerator):
        self.rollback = rollback

    def prepare_path(self, path: Union[str, Path]) -> None:
        """Back up a path that an external tool is about to write."""
        self.rollback.before_write(path)

    def write(self, artifact: ConfigArtifact, context: RunContext) -> Path:
        if artifact.phase is Phase.POST_TLS and artifact.domain not in context.issued_domains:
            raise ArtifactWriteError(
                f"Refusing to write post-tls artifact {artifact.path}: "
                f"no certificate has been issued for {artifact.domain} in this run"
            )

        self.rollback.before_write(artifact.path)

        path = artifact.path
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # The temp file never exists with wider permissions than the target
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, artifact.mode)
            with os.fdopen(fd, "w") as f:
                f.write(artifact.content)
            os.chmod(tmp, artifact.mode)
            if artifact.owner or artifact.group:
                shutil.chown(tmp, user=artifact.owner, group=artifact.group)
            os.replace(tmp, path)
        except (OSError, LookupError) as e:
            if tmp.exists():
                tmp.unlink()
            raise ArtifactWriteError(f"Could not write {path}: {e}") from e

        get_logger().debug(f"Wrote {path} ({artifact.phase.value}, mode {oct(artifact.mode)})")
        return path
