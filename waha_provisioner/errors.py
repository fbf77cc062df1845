"""
Exception hierarchy for a provisioning run.

Every error raised here is fatal to the run it occurs in. The engine records the
failing step and stops; the CLI prints one terminal message and exits with 1.
"""

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from waha_provisioner.tools import ToolResult


class ProvisionError(Exception):
    """Base class for all orchestrator errors."""


class PreconditionError(ProvisionError):
    """An input or environment requirement is not met. Raised before any mutation."""

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        super().__init__(message)
        self.reasons = reasons or []


class DependencyError(ProvisionError):
    """The step graph is malformed (unknown prerequisite or duplicate name)."""


class ToolInvocationError(ProvisionError):
    """An external command exited non-zero, timed out, or could not be started."""

    def __init__(self, result: "ToolResult"):
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip() or "no output"
        super().__init__(
            f"'{result.command_line}' exited with code {result.exit_code}: {detail}"
        )


class ReadinessTimeoutError(ProvisionError):
    """The workload did not answer with an accepted status before the deadline."""

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.diagnostics = diagnostics


class ArtifactWriteError(ProvisionError):
    """A configuration artifact could not be written, or was written out of phase."""


class RunLockError(ProvisionError):
    """Another provisioning run holds the run lock."""
