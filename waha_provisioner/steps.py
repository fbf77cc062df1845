"""
Step registry.

A Step is a named, idempotent unit of provisioning work. Registration order is
the execution order, and a step can only be registered once all of its
prerequisites are, so the registry is always a valid topological order.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

from waha_provisioner.config import RunContext
from waha_provisioner.errors import DependencyError
from waha_provisioner.tools import ToolResult


class StepStatus(Enum):
    SKIPPED = "skipped-already-applied"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class Step:
    """
    A unit of provisioning work.

    Attributes:
        name: Unique identifier.
        description: Human-readable action, shown while the step runs.
        apply: Performs the work. Raises on failure.
        is_applied: True when the desired end state already holds.
        requires: Names of steps that must be registered (and run) first.
        rollback: Returns shell commands that undo the step, for the rollback script.
    """

    name: str
    description: str
    apply: Callable[[RunContext], None]
    is_applied: Callable[[RunContext], bool]
    requires: List[str] = field(default_factory=list)
    rollback: Optional[Callable[[RunContext], List[str]]] = None


@dataclass
class StepResult:
    """Outcome of one step in one run."""

    name: str
    status: StepStatus
    message: str = ""
    tool_results: List[ToolResult] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)
    duration: float = 0.0
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status is not StepStatus.FAILED

    def to_dict(self) -> Dict[str, object]:
        return {
            "step": self.name,
            "status": self.status.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "duration": round(self.duration, 3),
            "commands": [
                {"command": r.command_line, "exit_code": r.exit_code} for r in self.tool_results
            ],
        }


class StepRegistry:
    """Ordered collection of steps with registration-time dependency checks."""

    def __init__(self) -> None:
        self._steps: Dict[str, Step] = {}

    def register(self, step: Step) -> Step:
        if step.name in self._steps:
            raise DependencyError(f"Step '{step.name}' is already registered")
        missing = [name for name in step.requires if name not in self._steps]
        if missing:
            raise DependencyError(
                f"Step '{step.name}' requires unregistered step(s): {', '.join(missing)}"
            )
        self._steps[step.name] = step
        return step

    def names(self) -> List[str]:
        return list(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __iter__(self) -> Iterator[Step]:
        return iter(list(self._steps.values()))

    def __len__(self) -> int:
        return len(self._steps)
