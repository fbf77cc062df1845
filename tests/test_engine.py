import os

import pytest

from waha_provisioner.engine import ExecutionEngine, RunLock
from waha_provisioner.errors import DependencyError, RunLockError
from waha_provisioner.steps import Step, StepRegistry, StepStatus


class Recorder:
    """Step functions that record their calls."""

    def __init__(self):
        self.applied = []
        self.state = set()

    def step(self, name, requires=(), fails=False, applied=False, check_fails=False):
        if applied:
            self.state.add(name)

        def apply(context):
            self.applied.append(name)
            if fails:
                raise RuntimeError(f"{name} exploded")
            self.state.add(name)

        def is_applied(context):
            if check_fails:
                raise RuntimeError(f"cannot inspect {name}")
            return name in self.state

        return Step(name, f"Run {name}", apply, is_applied, requires=list(requires))


def test_registration_order_is_execution_order(context, tools):
    rec = Recorder()
    registry = StepRegistry()
    for name in ["a", "b", "c"]:
        registry.register(rec.step(name))
    results = ExecutionEngine(registry, tools).run(context)
    assert [r.name for r in results] == ["a", "b", "c"]
    assert rec.applied == ["a", "b", "c"]


def test_unknown_prerequisite_is_rejected():
    registry = StepRegistry()
    registry.register(Recorder().step("a"))
    with pytest.raises(DependencyError):
        registry.register(Recorder().step("b", requires=["missing"]))
    assert registry.names() == ["a"]


def test_prerequisite_registered_later_is_rejected():
    registry = StepRegistry()
    with pytest.raises(DependencyError):
        registry.register(Recorder().step("b", requires=["a"]))


def test_duplicate_name_is_rejected():
    registry = StepRegistry()
    registry.register(Recorder().step("a"))
    with pytest.raises(DependencyError):
        registry.register(Recorder().step("a"))


def test_fail_fast_stops_after_failed_step(context, tools):
    rec = Recorder()
    registry = StepRegistry()
    registry.register(rec.step("a"))
    registry.register(rec.step("b", requires=["a"], fails=True))
    registry.register(rec.step("c", requires=["b"]))

    results = ExecutionEngine(registry, tools).run(context)

    assert [(r.name, r.status) for r in results] == [
        ("a", StepStatus.SUCCEEDED),
        ("b", StepStatus.FAILED),
    ]
    assert "b exploded" in results[-1].message
    assert isinstance(results[-1].error, RuntimeError)
    assert rec.applied == ["a", "b"]


def test_failing_is_applied_is_a_failure(context, tools):
    rec = Recorder()
    registry = StepRegistry()
    registry.register(rec.step("a", check_fails=True))
    registry.register(rec.step("b"))
    results = ExecutionEngine(registry, tools).run(context)
    assert [(r.name, r.status) for r in results] == [("a", StepStatus.FAILED)]
    assert rec.applied == []


def test_applied_steps_are_skipped(context, tools):
    rec = Recorder()
    registry = StepRegistry()
    registry.register(rec.step("a", applied=True))
    registry.register(rec.step("b"))
    results = ExecutionEngine(registry, tools).run(context)
    assert [r.status for r in results] == [StepStatus.SKIPPED, StepStatus.SUCCEEDED]
    assert rec.applied == ["b"]


def test_second_run_skips_everything(context, tools):
    rec = Recorder()
    registry = StepRegistry()
    registry.register(rec.step("a"))
    registry.register(rec.step("b"))
    engine = ExecutionEngine(registry, tools)
    engine.run(context)
    results = engine.run(context)
    assert {r.status for r in results} == {StepStatus.SKIPPED}
    assert rec.applied == ["a", "b"]


def test_dry_run_has_no_side_effects(context, tools, config, rollback):
    rec = Recorder()
    registry = StepRegistry()
    registry.register(rec.step("a"))
    registry.register(rec.step("b", applied=True))
    engine = ExecutionEngine(registry, tools, rollback=rollback, lock=RunLock(config.lock_file))

    results = engine.run(context, dry_run=True)

    assert [r.status for r in results] == [StepStatus.SUCCEEDED, StepStatus.SKIPPED]
    assert results[0].message.startswith("Dry run")
    assert rec.applied == []
    assert not config.rollback_script.exists()
    assert not config.lock_file.exists()


def test_step_results_carry_their_tool_results(context, host, tools):
    registry = StepRegistry()
    registry.register(Step("one", "one", lambda ctx: tools.invoke("true"), lambda ctx: False))
    registry.register(Step("two", "two", lambda ctx: tools.invoke("ls", ["-l"]), lambda ctx: False))
    results = ExecutionEngine(registry, tools).run(context)
    assert [r.command_line for r in results[0].tool_results] == ["true"]
    assert [r.command_line for r in results[1].tool_results] == ["ls -l"]
    assert results[1].to_dict()["commands"] == [{"command": "ls -l", "exit_code": 0}]


def test_rollback_script_written_before_first_step(context, tools, config, rollback):
    seen = []
    registry = StepRegistry()
    registry.register(
        Step("check", "check", lambda ctx: seen.append(config.rollback_script.exists()), lambda ctx: False)
    )
    ExecutionEngine(registry, tools, rollback=rollback).run(context)
    assert seen == [True]


def test_step_runner_wraps_apply(context, tools):
    wrapped = []

    def runner(description, func, ctx):
        wrapped.append(description)
        return func(ctx)

    rec = Recorder()
    registry = StepRegistry()
    registry.register(rec.step("a"))
    ExecutionEngine(registry, tools, step_runner=runner).run(context)
    assert wrapped == ["Run a"]


def test_lock_refuses_concurrent_run(config):
    first = RunLock(config.lock_file)
    first.acquire()
    try:
        with pytest.raises(RunLockError):
            RunLock(config.lock_file).acquire()
    finally:
        first.release()
    assert not config.lock_file.exists()


def test_stale_lock_is_replaced(config):
    config.lock_file.parent.mkdir(parents=True)
    config.lock_file.write_text("999999999")
    with RunLock(config.lock_file):
        assert config.lock_file.read_text() == str(os.getpid())
    assert not config.lock_file.exists()


def test_lock_released_after_failed_run(context, tools, config):
    rec = Recorder()
    registry = StepRegistry()
    registry.register(rec.step("a", fails=True))
    ExecutionEngine(registry, tools, lock=RunLock(config.lock_file)).run(context)
    assert not config.lock_file.exists()
