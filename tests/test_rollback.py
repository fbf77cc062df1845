import os

import pytest

from waha_provisioner.artifacts import ArtifactWriter, ConfigArtifact, Phase
from waha_provisioner.errors import ArtifactWriteError
from waha_provisioner.steps import Step, StepRegistry


def registry_with(*steps):
    registry = StepRegistry()
    for name, undo in steps:
        registry.register(
            Step(name, name, lambda ctx: None, lambda ctx: False,
                 rollback=(lambda ctx, undo=undo: list(undo)) if undo else None)
        )
    return registry


def test_first_pre_image_wins(config, context, rollback, tmp_path):
    target = tmp_path / "etc" / "app.conf"
    target.parent.mkdir(parents=True)
    target.write_text("original")

    rollback.prepare(registry_with(("write", None)), context)
    rollback.begin_step("write")
    first = rollback.before_write(target)
    target.write_text("changed by this run")
    second = rollback.before_write(target)

    assert first is second
    assert first.backup.read_text() == "original"
    assert first.backup.is_relative_to(config.backup_dir / context.run_id)


def test_exactly_one_action_per_path(config, context, rollback, tmp_path):
    existing = tmp_path / "existing.conf"
    existing.write_text("before")
    created = tmp_path / "created.conf"

    rollback.prepare(registry_with(("a", None), ("b", None)), context)
    rollback.begin_step("a")
    rollback.before_write(existing)
    rollback.before_write(created)
    rollback.begin_step("b")
    rollback.before_write(existing)
    rollback.before_write(created)

    script = rollback.emit_rollback_script(context)
    restore_lines = [l for l in script.splitlines() if l.startswith(("restore_file ", "remove_file "))]
    assert len(restore_lines) == 2
    assert sum(str(existing) in l for l in restore_lines) == 1
    assert f"remove_file {created}" in restore_lines


def test_sections_run_in_reverse_registration_order(context, rollback, tmp_path):
    registry = registry_with(("first", ["echo undo-first"]), ("second", ["echo undo-second"]))
    rollback.prepare(registry, context, epilogue=["systemctl reload nginx || true"])
    rollback.begin_step("second")
    rollback.before_write(tmp_path / "second.conf")

    script = rollback.emit_rollback_script(context)
    assert script.index("Undoing second") < script.index("Undoing first")
    assert script.index("echo undo-second") < script.index(f"remove_file {tmp_path / 'second.conf'}")
    assert script.index("Undoing first") < script.index("systemctl reload nginx")
    assert script.rstrip().endswith('echo "Rollback complete."')


def test_script_on_disk_tracks_every_backup(config, context, rollback, tmp_path):
    path = rollback.prepare(registry_with(("a", None)), context)
    assert path == config.rollback_script
    assert os.stat(path).st_mode & 0o777 == 0o700
    assert "new.conf" not in path.read_text()

    rollback.begin_step("a")
    rollback.before_write(tmp_path / "new.conf")
    assert f"remove_file {tmp_path / 'new.conf'}" in path.read_text()


def test_writes_outside_steps_are_kept(context, rollback, tmp_path):
    rollback.prepare(registry_with(("a", None)), context)
    rollback.before_write(tmp_path / "stray.conf")
    assert "Undoing unscoped writes" in rollback.emit_rollback_script(context)


def test_directory_cannot_be_overwritten(rollback, tmp_path):
    with pytest.raises(ArtifactWriteError):
        rollback.before_write(tmp_path)


def test_writer_refuses_post_tls_before_issuance(context, rollback, tmp_path):
    writer = ArtifactWriter(rollback)
    artifact = ConfigArtifact(tmp_path / "site", "server {}\n", phase=Phase.POST_TLS, domain=context.domain)
    with pytest.raises(ArtifactWriteError):
        writer.write(artifact, context)
    assert not artifact.path.exists()
    assert artifact.path not in rollback.records

    context.issued_domains.add(context.domain)
    writer.write(artifact, context)
    assert artifact.matches_disk()


def test_writer_replaces_atomically_with_mode(context, rollback, tmp_path):
    writer = ArtifactWriter(rollback)
    target = tmp_path / "conf" / ".env"
    writer.write(ConfigArtifact(target, "A=1\n", mode=0o600), context)
    writer.write(ConfigArtifact(target, "A=2\n", mode=0o600), context)
    assert target.read_text() == "A=2\n"
    assert os.stat(target).st_mode & 0o777 == 0o600
    assert sorted(p.name for p in target.parent.iterdir()) == [".env"]
    assert not rollback.records[target].existed
