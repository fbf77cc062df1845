"""
Execution engine: runs registered steps in order, fail-fast.

The engine guarantees ordering, the skip/dry-run/apply decision, and that no
step runs after a failure. Idempotency belongs to each step's
`is_applied`/`apply` pair.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

from waha_provisioner.config import RunContext
from waha_provisioner.errors import RunLockError
from waha_provisioner.logger import get_logger
from waha_provisioner.rollback import RollbackGenerator
from waha_provisioner.steps import Step, StepRegistry, StepResult, StepStatus
from waha_provisioner.tools import ToolAdapter

StepRunner = Callable[[str, Callable[..., Any], RunContext], Any]


def _direct(description: str, func: Callable[..., Any], context: RunContext) -> Any:
    return func(context)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RunLock:
    """Exclusive lock file holding the pid of the running provisioner."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._held = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self._holder()
                if holder is not None and _pid_alive(holder):
                    raise RunLockError(
                        f"Another provisioning run (pid {holder}) holds {self.path}"
                    )
                get_logger().warning(f"Removing stale run lock {self.path} (pid {holder})")
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self._held = True
            return
        raise RunLockError(f"Could not acquire run lock {self.path}")

    def _holder(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


class ExecutionEngine:
    def __init__(
        self,
        registry: StepRegistry,
        tools: ToolAdapter,
        rollback: Optional[RollbackGenerator] = None,
        lock: Optional[RunLock] = None,
        rollback_epilogue: Optional[List[str]] = None,
        step_runner: StepRunner = _direct,
    ):
        self.registry = registry
        self.tools = tools
        self.rollback = rollback
        self.lock = lock
        self.rollback_epilogue = rollback_epilogue or []
        self.step_runner = step_runner

    def run(self, context: RunContext, dry_run: Optional[bool] = None) -> List[StepResult]:
        """
        Execute every registered step in registration order.

        Returns the results of the steps that ran. On the first failure the
        list ends with that step's `failed` result and no later step is run.
        """
        if dry_run is None:
            dry_run = context.dry_run
        if self.lock is not None and not dry_run:
            self.lock.acquire()
        try:
            if self.rollback is not None and not dry_run:
                script = self.rollback.prepare(self.registry, context, self.rollback_epilogue)
                get_logger().info(f"Rollback script: {script}")
            return self._run_steps(context, dry_run)
        finally:
            if self.lock is not None and not dry_run:
                self.lock.release()

    def _run_steps(self, context: RunContext, dry_run: bool) -> List[StepResult]:
        logger = get_logger()
        results: List[StepResult] = []
        for step in self.registry:
            result = self._run_step(step, context, dry_run)
            results.append(result)
            self._log_result(result)
            if not result.ok:
                remaining = self.registry.names()[len(results):]
                if remaining:
                    logger.error(f"Stopping after failed step '{step.name}'; not run: {', '.join(remaining)}")
                break
        return results

    def _run_step(self, step: Step, context: RunContext, dry_run: bool) -> StepResult:
        logger = get_logger()
        mark = len(self.tools.history)
        start = time.monotonic()
        if self.rollback is not None:
            self.rollback.begin_step(step.name)

        try:
            if step.is_applied(context):
                status, message = StepStatus.SKIPPED, "Already applied"
            elif dry_run:
                logger.info(f"[dry-run] Would run: {step.description}")
                status, message = StepStatus.SUCCEEDED, f"Dry run: {step.description}"
            else:
                self.step_runner(step.description, step.apply, context)
                status, message = StepStatus.SUCCEEDED, "Applied"
        except Exception as e:
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                message=str(e),
                tool_results=self.tools.history[mark:],
                duration=time.monotonic() - start,
                error=e,
            )

        return StepResult(
            name=step.name,
            status=status,
            message=message,
            tool_results=self.tools.history[mark:],
            duration=time.monotonic() - start,
        )

    def _log_result(self, result: StepResult) -> None:
        logger = get_logger()
        level = logging.ERROR if result.status is StepStatus.FAILED else logging.INFO
        logger.log(level, f"Step {result.name}: {result.status.value} ({result.duration:.2f}s) {result.message}")
        logger.debug(f"Step result: {json.dumps(result.to_dict())}")
